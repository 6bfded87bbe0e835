from sqlalchemy import BigInteger, Column, DateTime, Index, Integer, String, Text

from social_inbox.database import Base
from social_inbox.timeutils import utc_now


class SocialChatMessage(Base):
    __tablename__ = "social_chat_messages"
    __table_args__ = (Index("idx_conv_time", "conversation_id", "timestamp"),)

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    conversation_id = Column(String(128), nullable=False)
    customer_name = Column(String(255), default="")
    customer_profile_pic = Column(Text, default="")
    sender = Column(String(16), nullable=False)  # customer, bot
    sender_role = Column(String(16), default="customer")  # customer, admin, seller, ai
    sender_name = Column(String(255), default="")
    message = Column(Text, nullable=False)
    reply_to_message_id = Column(String(36), index=True)
    platform = Column(String(16), nullable=False)  # facebook, instagram
    page_id = Column(String(64), nullable=False)
    timestamp = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
