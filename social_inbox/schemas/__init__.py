from social_inbox.schemas.inbox import ConversationOut, ManualReplyRequest, MessageOut, ReplyResponse
from social_inbox.schemas.webhook import InboundMessage, ParsedWebhook, ReceiptEvent

__all__ = [
    "ConversationOut",
    "InboundMessage",
    "ManualReplyRequest",
    "MessageOut",
    "ParsedWebhook",
    "ReceiptEvent",
    "ReplyResponse",
]
