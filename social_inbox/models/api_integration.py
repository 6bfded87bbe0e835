from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, UniqueConstraint

from social_inbox.database import Base
from social_inbox.timeutils import utc_now


class ApiIntegration(Base):
    __tablename__ = "api_integrations"
    __table_args__ = (UniqueConstraint("platform", "page_id", name="uniq_platform_page"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    platform = Column(String(16), nullable=False)  # facebook, instagram, whatsapp
    page_id = Column(String(128), nullable=False, default="")
    page_name = Column(String(255), nullable=False, default="")
    page_token = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)
