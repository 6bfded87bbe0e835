from sqlalchemy import Column, DateTime, String

from social_inbox.database import Base
from social_inbox.timeutils import utc_now

DELIVERY_STATUSES = ("confirmed", "hold", "cancel", "delivered")


class ConversationLock(Base):
    """One row per conversation: owner, delivery status and read/receipt markers."""

    __tablename__ = "conversation_locks"

    conversation_id = Column(String(128), primary_key=True)  # "{page_id}_{customer_id}"
    seller_id = Column(String(24), nullable=True, index=True)
    locked_at = Column(DateTime, nullable=False, default=utc_now)
    seller_last_read_at = Column(DateTime)
    admin_last_read_at = Column(DateTime)
    customer_last_delivered_at = Column(DateTime)
    customer_last_read_at = Column(DateTime)
    delivery_status = Column(String(16), nullable=False, default="confirmed", index=True)
    assigned_by = Column(String(24))
    assigned_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)
