from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from collab.db.base import Base


class Wallet(Base):
    __tablename__ = "wallets"

    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    # Cached denormalisations of the transaction log
    balance_total_paise: Mapped[int] = mapped_column(
        BigInteger, default=0, server_default="0", nullable=False
    )
    balance_frozen_paise: Mapped[int] = mapped_column(
        BigInteger, default=0, server_default="0", nullable=False
    )

    user = relationship("User", lazy="selectin")

    __table_args__ = (
        CheckConstraint("balance_frozen_paise >= 0", name="frozen_non_negative"),
        CheckConstraint(
            "balance_frozen_paise <= balance_total_paise", name="frozen_within_total"
        ),
    )

    @property
    def available_paise(self) -> int:
        return self.balance_total_paise - self.balance_frozen_paise


class Transaction(Base):
    """Append-only ledger entry. Rows tagged with a conversation are escrow rows."""

    __tablename__ = "transactions"

    wallet_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("wallets.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount_paise: Mapped[int] = mapped_column(BigInteger, nullable=False)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)  # credit / debit
    stage: Mapped[str] = mapped_column(
        String(20), nullable=False
    )  # deposit / freeze / unfreeze / release / refund / withdraw
    status: Mapped[str] = mapped_column(
        String(20), default="completed", server_default="completed", nullable=False
    )  # completed / reversed
    conversation_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("conversations.id", ondelete="SET NULL"), nullable=True, index=True
    )
    escrow_hold_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("escrow_holds.id", ondelete="SET NULL"), nullable=True
    )
    external_payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("amount_paise > 0", name="amount_positive"),
        Index("ix_transactions_wallet_created", "wallet_id", "created_at"),
    )
