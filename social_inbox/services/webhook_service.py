from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from social_inbox.logging_config import conversation_logger, get_logger
from social_inbox.schemas.inbox import MessageOut
from social_inbox.schemas.webhook import InboundMessage, ParsedWebhook, ReceiptEvent
from social_inbox.services import ledger_service, media_service
from social_inbox.services.dedup_cache import DedupStore, facebook_message_key, instagram_message_key
from social_inbox.services.identity_service import IdentityResolver
from social_inbox.services.ledger_service import NewMessage
from social_inbox.services.page_token_cache import PageTokenCache
from social_inbox.services.realtime import Broadcaster
from social_inbox.services.receipt_service import DELIVERED, READ, ReceiptTracker
from social_inbox.timeutils import from_epoch_millis, utc_now

logger = get_logger("webhook_service")

ECHO_SENDER_NAME = "AI Bot"


def _s(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _attachment_urls(attachments: list) -> list[str]:
    urls = []
    for attachment in attachments or []:
        if not isinstance(attachment, dict):
            continue
        url = _s((attachment.get("payload") or {}).get("url"))
        if url:
            urls.append(url)
    return urls


def _parse_messaging(page_id: str, platform: str, event: dict, parsed: ParsedWebhook) -> None:
    sender_id = _s((event.get("sender") or {}).get("id"))
    recipient_id = _s((event.get("recipient") or {}).get("id"))

    # Receipt watermarks: sender is the customer, recipient the page.
    if sender_id:
        for kind, key in ((DELIVERED, "delivery"), (READ, "read")):
            watermark = (event.get(key) or {}).get("watermark")
            ts = from_epoch_millis(watermark) if watermark else None
            if ts is not None:
                parsed.receipts.append(
                    ReceiptEvent(conversation_id=f"{page_id}_{sender_id}", page_id=page_id, kind=kind, ts=ts)
                )

    message = event.get("message")
    if not isinstance(message, dict):
        return

    is_echo = bool(message.get("is_echo"))
    # Echo: the page is the sender, the customer the recipient.
    customer_id = recipient_id if is_echo else sender_id
    if not customer_id:
        return

    attachments = message.get("attachments") or []
    parsed.messages.append(
        InboundMessage(
            page_id=page_id,
            customer_id=customer_id,
            conversation_id=f"{page_id}_{customer_id}",
            platform=platform,
            text=_s(message.get("text")),
            media_urls=_attachment_urls(attachments),
            attachments=attachments,
            is_echo=is_echo,
            mid=_s(message.get("mid")) or None,
            timestamp=utc_now(),
        )
    )


def _parse_change(page_id: str, change: dict, parsed: ParsedWebhook) -> None:
    value = change.get("value") or {}
    for message in value.get("messages") or []:
        if not isinstance(message, dict):
            continue
        sender = message.get("from") or message.get("sender")
        sender_id = _s(sender.get("id") if isinstance(sender, dict) else sender)
        if not sender_id:
            continue

        attachments = message.get("attachments") or []
        parsed.messages.append(
            InboundMessage(
                page_id=page_id,
                customer_id=sender_id,
                conversation_id=f"{page_id}_{sender_id}",
                platform="instagram",
                text=_s(message.get("text")),
                media_urls=_attachment_urls(attachments),
                attachments=attachments,
                is_echo=bool(message.get("is_echo")),
                mid=_s(message.get("id")) or None,
                timestamp=utc_now(),
            )
        )


def parse_webhook_payload(
    body: Any,
    is_instagram_page: Optional[Callable[[str], bool]] = None,
    has_credentials: Optional[Callable[[str], bool]] = None,
) -> ParsedWebhook:
    """
    Flatten a Messenger/Instagram delivery into messages and receipt events.

    Meta batches several entries (and several messages per entry) in one call,
    so every entry and every item is visited.
    """
    parsed = ParsedWebhook()
    entries = body.get("entry") if isinstance(body, dict) else None
    if not isinstance(entries, list):
        return parsed

    for entry in entries:
        if not isinstance(entry, dict):
            continue
        page_id = _s(entry.get("id"))
        if not page_id or (has_credentials is not None and not has_credentials(page_id)):
            logger.warning("Unknown page or missing token, entry skipped", extra={"context": {"page_id": page_id}})
            continue

        platform = "instagram" if is_instagram_page and is_instagram_page(page_id) else "facebook"
        for event in entry.get("messaging") or []:
            if isinstance(event, dict):
                _parse_messaging(page_id, platform, event, parsed)
        for change in entry.get("changes") or []:
            if isinstance(change, dict):
                _parse_change(page_id, change, parsed)

    return parsed


def dedup_key(message: InboundMessage) -> str:
    if message.platform == "instagram":
        return instagram_message_key(
            message.page_id, message.mid, message.customer_id, message.text, message.attachments
        )
    return facebook_message_key(message.page_id, message.mid)


def compose_body(text: str, media_urls: list[str]) -> str:
    """Media is stored as one URL per line; any caption goes first."""
    if not media_urls:
        return text
    return "\n".join(([text] if text else []) + media_urls)


class WebhookProcessor:
    """Inbound pipeline: receipts, dedupe, identity, media, ledger, fan-out."""

    def __init__(
        self,
        dedup: DedupStore,
        tokens: PageTokenCache,
        identity: IdentityResolver,
        broadcaster: Broadcaster,
        receipts: ReceiptTracker | None = None,
        upload_dir: str | None = None,
    ):
        self.dedup = dedup
        self.tokens = tokens
        self.identity = identity
        self.broadcaster = broadcaster
        self.receipts = receipts or ReceiptTracker()
        self.upload_dir = upload_dir

    async def handle(self, db: Session, body: Any) -> int:
        """Process one webhook body; returns the number of stored messages. Never raises."""
        try:
            parsed = parse_webhook_payload(
                body,
                is_instagram_page=self.tokens.is_instagram_page,
                has_credentials=lambda page_id: bool(self.tokens.get(page_id)),
            )
        except Exception:
            logger.exception("Webhook payload parsing failed")
            return 0

        for receipt in parsed.receipts:
            try:
                self.receipts.record_receipt(db, receipt.conversation_id, receipt.kind, receipt.ts)
            except Exception as e:
                db.rollback()
                logger.warning(
                    "Receipt update failed",
                    extra={"context": {"conversation_id": receipt.conversation_id, "error": str(e)}},
                )

        stored = 0
        for message in parsed.messages:
            try:
                if await self.handle_message(db, message):
                    stored += 1
            except Exception:
                db.rollback()
                logger.exception(
                    "Webhook message processing failed",
                    extra={"context": {"conversation_id": message.conversation_id, "mid": message.mid}},
                )
        return stored

    async def handle_message(self, db: Session, message: InboundMessage) -> bool:
        log = conversation_logger(logger, message.conversation_id, mid=message.mid)
        if self.dedup.check_and_mark(dedup_key(message)):
            log.info("Duplicate webhook delivery skipped")
            return False

        media_urls = message.media_urls
        if media_urls:
            media_urls = await media_service.normalize_media_urls(media_urls, upload_dir=self.upload_dir)

        body = compose_body(message.text, media_urls)
        if not body:
            return False

        identity = await self.identity.resolve(db, message.conversation_id, message.customer_id, message.page_id)

        if message.is_echo:
            sender, sender_role, sender_name = "bot", "ai", ECHO_SENDER_NAME
        else:
            sender, sender_role, sender_name = "customer", "customer", identity.name

        row = ledger_service.append(
            db,
            NewMessage(
                conversation_id=message.conversation_id,
                sender=sender,
                sender_role=sender_role,
                sender_name=sender_name,
                customer_name=identity.name,
                customer_profile_pic=identity.profile_pic,
                message=body,
                platform=message.platform,
                page_id=message.page_id,
                timestamp=message.timestamp,
            ),
        )

        # Answering means the customer has seen the thread.
        if not message.is_echo:
            try:
                self.receipts.record_receipt(db, message.conversation_id, READ, row.timestamp)
            except Exception as e:
                db.rollback()
                log.warning("Implicit read receipt failed", extra={"context": {"error": str(e)}})

        await self.broadcaster.new_message(db, MessageOut.from_row(row).model_dump())

        log.info(
            "Inbound message stored",
            extra={"context": {"platform": message.platform, "is_echo": message.is_echo, "message_id": row.id}},
        )
        return True
