from social_inbox.models.api_integration import ApiIntegration
from social_inbox.models.chat_message import SocialChatMessage
from social_inbox.models.conversation_lock import DELIVERY_STATUSES, ConversationLock
from social_inbox.models.saved_template import TEMPLATE_SCOPES, TEMPLATE_TYPES, SavedTemplate
from social_inbox.models.seller import Seller

__all__ = [
    "ApiIntegration",
    "ConversationLock",
    "DELIVERY_STATUSES",
    "SavedTemplate",
    "Seller",
    "SocialChatMessage",
    "TEMPLATE_SCOPES",
    "TEMPLATE_TYPES",
]
