"""initial conversation, ledger, escrow, payment and notification schema

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=True, unique=True),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("role", sa.String(20), server_default="influencer", nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "conversations",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column(
            "brand_owner_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "influencer_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("campaign_id", sa.Integer(), nullable=True),
        sa.Column("bid_id", sa.Integer(), nullable=True),
        sa.Column("pair_key", sa.String(128), nullable=False, unique=True),
        sa.Column("chat_status", sa.String(20), server_default="automated", nullable=False),
        sa.Column("flow_state", sa.String(40), server_default="initial", nullable=False),
        sa.Column("awaiting_role", sa.String(20), nullable=True),
        sa.Column("flow_data", sa.JSON(), nullable=False),
        sa.Column(
            "last_transition_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=True,
        ),
        *_timestamps(),
    )
    op.create_index("ix_conversations_brand_owner_id", "conversations", ["brand_owner_id"])
    op.create_index("ix_conversations_influencer_id", "conversations", ["influencer_id"])
    op.create_index("ix_conversations_campaign_id", "conversations", ["campaign_id"])
    op.create_index("ix_conversations_bid_id", "conversations", ["bid_id"])

    op.create_table(
        "messages",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column(
            "conversation_id",
            sa.Integer(),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "sender_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "receiver_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("media_url", sa.String(1024), nullable=True),
        sa.Column("message_type", sa.String(20), server_default="user_input", nullable=True),
        sa.Column("action_required", sa.Boolean(), server_default=sa.false(), nullable=True),
        sa.Column("action_data", sa.JSON(none_as_null=True), nullable=True),
        sa.Column("transition", sa.JSON(none_as_null=True), nullable=True),
        sa.Column("client_nonce", sa.String(64), nullable=True),
        sa.Column("seen", sa.Boolean(), server_default=sa.false(), nullable=True),
        sa.Column("seen_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_messages_receiver_id", "messages", ["receiver_id"])
    op.create_index(
        "ix_messages_conversation_created", "messages", ["conversation_id", "created_at"]
    )
    op.create_index(
        "ix_messages_conversation_nonce",
        "messages",
        ["conversation_id", "sender_id", "client_nonce"],
    )

    op.create_table(
        "wallets",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("balance_total_paise", sa.BigInteger(), server_default="0", nullable=False),
        sa.Column("balance_frozen_paise", sa.BigInteger(), server_default="0", nullable=False),
        *_timestamps(),
        sa.CheckConstraint("balance_frozen_paise >= 0", name="frozen_non_negative"),
        sa.CheckConstraint(
            "balance_frozen_paise <= balance_total_paise", name="frozen_within_total"
        ),
    )

    op.create_table(
        "escrow_holds",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column(
            "conversation_id",
            sa.Integer(),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount_paise", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(20), server_default="held", nullable=False),
        sa.Column("reason", sa.String(255), nullable=True),
        sa.Column("release_reason", sa.String(255), nullable=True),
        sa.Column("external_payment_id", sa.String(64), nullable=True, unique=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_escrow_holds_conversation_id", "escrow_holds", ["conversation_id"])
    op.create_index("ix_escrow_holds_user_id", "escrow_holds", ["user_id"])
    op.create_index(
        "uq_escrow_holds_conversation_held",
        "escrow_holds",
        ["conversation_id"],
        unique=True,
        postgresql_where=sa.text("status = 'held'"),
        sqlite_where=sa.text("status = 'held'"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column(
            "wallet_id",
            sa.Integer(),
            sa.ForeignKey("wallets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount_paise", sa.BigInteger(), nullable=False),
        sa.Column("direction", sa.String(10), nullable=False),
        sa.Column("stage", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), server_default="completed", nullable=False),
        sa.Column(
            "conversation_id",
            sa.Integer(),
            sa.ForeignKey("conversations.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "escrow_hold_id",
            sa.Integer(),
            sa.ForeignKey("escrow_holds.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("external_payment_id", sa.String(64), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount_paise > 0", name="amount_positive"),
    )
    op.create_index("ix_transactions_user_id", "transactions", ["user_id"])
    op.create_index("ix_transactions_conversation_id", "transactions", ["conversation_id"])
    op.create_index(
        "ix_transactions_wallet_created", "transactions", ["wallet_id", "created_at"]
    )

    op.create_table(
        "payment_orders",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column(
            "conversation_id",
            sa.Integer(),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "payer_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount_paise", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(10), server_default="INR", nullable=True),
        sa.Column("status", sa.String(20), server_default="created", nullable=False),
        sa.Column("external_order_id", sa.String(64), nullable=False, unique=True),
        sa.Column("external_payment_id", sa.String(64), nullable=True, unique=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("verified_via", sa.String(20), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_payment_orders_conversation_id", "payment_orders", ["conversation_id"])
    op.create_index(
        "ix_payment_orders_status_created", "payment_orders", ["status", "created_at"]
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=True),
        sa.Column("action_url", sa.String(512), nullable=True),
        sa.Column("conversation_id", sa.Integer(), nullable=True),
        sa.Column("sender_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(20), server_default="pending", nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_notifications_user_created", "notifications", ["user_id", "created_at"]
    )
    op.create_index(
        "ix_notifications_dedupe",
        "notifications",
        ["user_id", "type", "conversation_id", "sender_id"],
    )

    op.create_table(
        "device_tokens",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("token", sa.String(512), nullable=False, unique=True),
        sa.Column("platform", sa.String(20), nullable=False),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=True),
        sa.Column("active", sa.Boolean(), server_default=sa.true(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_device_tokens_user_id", "device_tokens", ["user_id"])

    op.create_table(
        "action_receipts",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column(
            "conversation_id",
            sa.Integer(),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("action", sa.String(40), nullable=False),
        sa.Column("action_hash", sa.String(64), nullable=False),
        sa.Column("from_state", sa.String(40), nullable=False),
        sa.Column("to_state", sa.String(40), nullable=False),
        sa.Column("result", sa.JSON(), nullable=False),
        *_timestamps(),
    )
    op.create_index(
        "ix_action_receipts_conversation", "action_receipts", ["conversation_id", "id"]
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=True),
        sa.Column("conversation_id", sa.Integer(), nullable=True),
        sa.Column("details", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_audit_logs_user_id", "audit_logs", ["user_id"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_conversation_id", "audit_logs", ["conversation_id"])
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"])


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("action_receipts")
    op.drop_table("device_tokens")
    op.drop_table("notifications")
    op.drop_table("payment_orders")
    op.drop_table("transactions")
    op.drop_table("escrow_holds")
    op.drop_table("wallets")
    op.drop_table("messages")
    op.drop_table("conversations")
    op.drop_table("users")
