from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from collab.db.base import Base, utcnow


class Conversation(Base):
    __tablename__ = "conversations"

    brand_owner_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    influencer_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # Source: at most one of campaign_id / bid_id; neither means "direct"
    campaign_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    bid_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    # One row per (brand_owner, influencer, source); see conversation.pair_key()
    pair_key: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)

    chat_status: Mapped[str] = mapped_column(
        String(20), default="automated", server_default="automated", nullable=False
    )  # automated / real_time / closed / cancelled
    flow_state: Mapped[str] = mapped_column(
        String(40), default="initial", server_default="initial", nullable=False
    )
    awaiting_role: Mapped[str | None] = mapped_column(
        String(20), default="brand_owner", nullable=True
    )
    flow_data: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    last_transition_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        default=utcnow,
    )

    brand_owner = relationship("User", foreign_keys=[brand_owner_id], lazy="selectin")
    influencer = relationship("User", foreign_keys=[influencer_id], lazy="selectin")

    def party_ids(self) -> tuple[int, int]:
        return self.brand_owner_id, self.influencer_id

    def other_party(self, user_id: int) -> int:
        return self.influencer_id if user_id == self.brand_owner_id else self.brand_owner_id
