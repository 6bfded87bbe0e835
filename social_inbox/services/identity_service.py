import re
from dataclasses import dataclass

from sqlalchemy.orm import Session

from social_inbox.logging_config import get_logger
from social_inbox.services import ledger_service
from social_inbox.services.graph_client import MetaGraphClient
from social_inbox.services.page_token_cache import PageTokenCache

logger = get_logger("identity_service")

PLACEHOLDER_NAME = "Customer"
LIST_REFRESH_LIMIT = 25

_NUMERIC_ID = re.compile(r"^\d{6,}$")
_HAS_LETTER = re.compile(r"[a-zA-Z]")


@dataclass
class CustomerIdentity:
    name: str
    profile_pic: str = ""


def looks_like_id(value: str | None) -> bool:
    """True for empty strings and raw platform ids (numeric or long letter-free tokens)."""
    s = (value or "").strip()
    if not s:
        return True
    if _NUMERIC_ID.match(s):
        return True
    return len(s) >= 16 and not _HAS_LETTER.search(s)


def split_conversation_id(conversation_id: str) -> tuple[str, str]:
    """'{page_id}_{customer_id}' -> (page_id, customer_id); customer ids may contain underscores."""
    raw = (conversation_id or "").strip()
    page_id, sep, customer_id = raw.partition("_")
    if not sep:
        return "", raw
    return page_id, customer_id


def needs_refresh(name: str | None, customer_id: str) -> bool:
    return looks_like_id(name) or name == customer_id or name == PLACEHOLDER_NAME


class IdentityResolver:
    def __init__(self, graph: MetaGraphClient, tokens: PageTokenCache):
        self.graph = graph
        self.tokens = tokens

    async def resolve(self, db: Session, conversation_id: str, customer_id: str, page_id: str) -> CustomerIdentity:
        """
        Best available display name and avatar for a customer.

        Starts from what the ledger already knows so a failed lookup never
        regresses a good name back to a raw id.
        """
        last_name, last_pic = ledger_service.last_known_name(db, conversation_id)
        name = last_name or customer_id
        pic = last_pic
        token = self.tokens.get(page_id)
        instagram = self.tokens.is_instagram_page(page_id)

        if token and customer_id:
            if instagram:
                profile = await self.graph.fetch_instagram_profile(customer_id, token)
            else:
                profile = await self.graph.fetch_facebook_profile(customer_id, token)
            if profile:
                name = profile.get("name") or name
                pic = profile.get("profile_pic") or pic

        if needs_refresh(name, customer_id) and token and customer_id:
            if not instagram:
                participant = await self.graph.fetch_participant_name(page_id, customer_id, token)
                if participant:
                    name = participant
            if needs_refresh(name, customer_id):
                profile = await self.graph.fetch_facebook_profile(customer_id, token)
                if profile:
                    name = profile.get("name") or name
                    pic = profile.get("profile_pic") or pic

        if looks_like_id(name) or name == customer_id:
            name = PLACEHOLDER_NAME
        return CustomerIdentity(name=name, profile_pic=pic or "")

    async def refresh_conversation(self, db: Session, conversation_id: str, page_id: str, current_name: str):
        """Re-resolve a conversation still showing an id-like name; returns the new identity or None."""
        _, customer_id = split_conversation_id(conversation_id)
        if not self.tokens.get(page_id) or not needs_refresh(current_name, customer_id):
            return None

        identity = await self.resolve(db, conversation_id, customer_id, page_id)
        if not identity.name or identity.name == PLACEHOLDER_NAME:
            return None

        ledger_service.backfill_customer_identity(db, conversation_id, identity.name, identity.profile_pic)
        return identity

    async def refresh_summaries(self, db: Session, summaries: list, limit: int = LIST_REFRESH_LIMIT) -> dict:
        """Light-touch pass over a conversation list. Returns {conversation_id: CustomerIdentity}."""
        refreshed: dict[str, CustomerIdentity] = {}
        for summary in summaries:
            if len(refreshed) >= limit:
                break
            try:
                identity = await self.refresh_conversation(
                    db, summary.conversation_id, summary.page_id, summary.customer_name
                )
            except Exception as e:
                logger.warning(
                    "Identity refresh failed",
                    extra={"context": {"conversation_id": summary.conversation_id, "error": str(e)}},
                )
                continue
            if identity:
                refreshed[summary.conversation_id] = identity
        return refreshed
