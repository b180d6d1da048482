from datetime import datetime

from sqlalchemy import JSON, BigInteger, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from collab.db.base import Base


class PaymentOrder(Base):
    """Intent to pay for a conversation, mirrored from the gateway order."""

    __tablename__ = "payment_orders"

    conversation_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    payer_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    amount_paise: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), default="INR", server_default="INR")
    status: Mapped[str] = mapped_column(
        String(20), default="created", server_default="created", nullable=False
    )  # created / verified / failed
    external_order_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    external_payment_id: Mapped[str | None] = mapped_column(
        String(64), unique=True, nullable=True
    )
    verified_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    verified_via: Mapped[str | None] = mapped_column(
        String(20), nullable=True
    )  # client / webhook / reconciler / admin
    meta: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    __table_args__ = (
        Index("ix_payment_orders_status_created", "status", "created_at"),
    )
