from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from collab.db.base import Base


class User(Base):
    """An authenticated principal. Profiles live elsewhere; only the
    fields the conversation engine reads are mapped here."""

    __tablename__ = "users"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    role: Mapped[str] = mapped_column(
        String(20), default="influencer", server_default="influencer"
    )  # brand_owner / influencer / admin

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
