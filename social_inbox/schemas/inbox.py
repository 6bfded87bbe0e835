from dataclasses import dataclass
from typing import Optional, Union

from pydantic import BaseModel

from social_inbox.services.errors import ValidationError
from social_inbox.timeutils import to_iso

UNASSIGN_VALUES = ("", "unassign", "null", "none")


class MessageOut(BaseModel):
    id: int
    conversationId: str
    customerName: str = ""
    customerProfilePic: str = ""
    sender: str
    senderRole: str = "customer"
    senderName: str = ""
    message: str
    replyToMessageId: Optional[str] = None
    platform: str
    pageId: str
    timestamp: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "MessageOut":
        return cls(
            id=row.id,
            conversationId=row.conversation_id,
            customerName=row.customer_name or "",
            customerProfilePic=row.customer_profile_pic or "",
            sender=row.sender,
            senderRole=row.sender_role or "customer",
            senderName=row.sender_name or "",
            message=row.message,
            replyToMessageId=row.reply_to_message_id,
            platform=row.platform,
            pageId=row.page_id,
            timestamp=to_iso(row.timestamp),
        )


class ConversationOut(BaseModel):
    conversationId: str
    customerName: str
    customerProfilePic: str
    platform: str
    pageId: str
    lastMessage: str
    lastTime: Optional[str] = None
    assignedSellerId: Optional[str] = None
    deliveryStatus: str = "confirmed"
    assignedAt: Optional[str] = None
    unreadCount: int = 0
    isUnread: bool = False

    @classmethod
    def from_summary(cls, summary) -> "ConversationOut":
        return cls(
            conversationId=summary.conversation_id,
            customerName=summary.customer_name,
            customerProfilePic=summary.customer_profile_pic,
            platform=summary.platform,
            pageId=summary.page_id,
            lastMessage=summary.last_message,
            lastTime=to_iso(summary.last_time),
            assignedSellerId=summary.assigned_seller_id,
            deliveryStatus=summary.delivery_status,
            assignedAt=to_iso(summary.assigned_at),
            unreadCount=summary.unread_count,
            isUnread=summary.is_unread,
        )


class MessagesResponse(BaseModel):
    data: list[MessageOut]
    readAt: Optional[str] = None
    customerDeliveredAt: Optional[str] = None
    customerReadAt: Optional[str] = None


class ReadStateResponse(BaseModel):
    conversationId: str
    unreadCount: int
    isUnread: bool
    readAt: Optional[str] = None


class ConversationMetaOut(BaseModel):
    conversationId: str
    assignedSellerId: Optional[str] = None
    deliveryStatus: str = "confirmed"
    assignedAt: Optional[str] = None

    @classmethod
    def from_meta(cls, meta) -> "ConversationMetaOut":
        return cls(
            conversationId=meta.conversation_id,
            assignedSellerId=meta.assigned_seller_id,
            deliveryStatus=meta.delivery_status,
            assignedAt=to_iso(meta.assigned_at),
        )


@dataclass(frozen=True)
class AssignOwner:
    seller_id: Optional[str]


@dataclass(frozen=True)
class SetDeliveryStatus:
    status: str


class ConversationMetaPatch(BaseModel):
    sellerId: Optional[Union[str, int]] = None
    deliveryStatus: Optional[str] = None

    def to_command(self) -> Union[AssignOwner, SetDeliveryStatus]:
        """Exactly one of sellerId / deliveryStatus may be sent."""
        has_seller = "sellerId" in self.model_fields_set
        status = (self.deliveryStatus or "").strip().lower()
        if has_seller and status:
            raise ValidationError("Send either sellerId or deliveryStatus, not both")
        if has_seller:
            raw = "" if self.sellerId is None else str(self.sellerId).strip()
            return AssignOwner(seller_id=None if raw.lower() in UNASSIGN_VALUES else raw)
        if status:
            return SetDeliveryStatus(status=status)
        raise ValidationError("Nothing to update")


def _clean_reference(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class ManualReplyRequest(BaseModel):
    conversationId: str = ""
    message: str = ""
    sendAs: Optional[str] = None
    replyToMessageId: Optional[Union[int, str]] = None

    @property
    def reply_to(self) -> Optional[str]:
        return _clean_reference(self.replyToMessageId)


class ForwardRequest(BaseModel):
    targetConversationId: str = ""
    message: str = ""


class ReplyResponse(BaseModel):
    success: bool = True
    data: MessageOut
