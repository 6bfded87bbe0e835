from sqlalchemy import BigInteger, Column, DateTime, Integer, String, Text

from social_inbox.database import Base
from social_inbox.timeutils import utc_now

TEMPLATE_SCOPES = ("global", "seller")
TEMPLATE_TYPES = ("text", "media")


class SavedTemplate(Base):
    __tablename__ = "saved_templates"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    scope = Column(String(16), nullable=False, default="seller", index=True)  # global, seller
    seller_id = Column(String(24), index=True)
    title = Column(String(255), nullable=False, default="")
    type = Column(String(16), nullable=False, index=True)  # text, media
    text = Column(Text)
    media_urls_json = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)
