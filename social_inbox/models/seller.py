from sqlalchemy import Boolean, Column, DateTime, String

from social_inbox.database import Base
from social_inbox.timeutils import utc_now


class Seller(Base):
    __tablename__ = "sellers"

    id = Column(String(24), primary_key=True)
    name = Column(String(255), default="")
    first_name = Column(String(255), default="")
    last_name = Column(String(255), default="")
    email = Column(String(255), nullable=False, unique=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    @property
    def display_name(self) -> str:
        full = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return (self.name or "").strip() or full or (self.email or "").strip() or "Seller"
