from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from collab.db.base import Base


class Message(Base):
    """Append-only conversation entry.

    ``action_data`` holds the action envelope rendered by clients;
    ``transition`` records the flow step a system message represents so the
    state machine can be replayed from the log.
    """

    __tablename__ = "messages"

    conversation_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    sender_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    receiver_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    text: Mapped[str] = mapped_column(Text, nullable=False)
    media_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    message_type: Mapped[str] = mapped_column(
        String(20), default="user_input", server_default="user_input"
    )  # user_input / system / automated
    action_required: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false"
    )
    action_data: Mapped[dict | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    transition: Mapped[dict | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    client_nonce: Mapped[str | None] = mapped_column(String(64), nullable=True)
    seen: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    sender = relationship("User", foreign_keys=[sender_id], lazy="selectin")

    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
        Index("ix_messages_conversation_nonce", "conversation_id", "sender_id", "client_nonce"),
    )
