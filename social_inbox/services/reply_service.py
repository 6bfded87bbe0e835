import re
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import unquote, urlparse

from sqlalchemy import select
from sqlalchemy.orm import Session

from social_inbox.logging_config import conversation_logger, get_logger
from social_inbox.models import Seller, SocialChatMessage
from social_inbox.schemas.inbox import MessageOut
from social_inbox.services import ledger_service, lock_service, media_service
from social_inbox.services.actor import Actor
from social_inbox.services.errors import UnauthorizedError, ValidationError
from social_inbox.services.graph_client import MetaGraphClient
from social_inbox.services.identity_service import split_conversation_id
from social_inbox.services.ledger_service import NewMessage
from social_inbox.services.page_token_cache import PageTokenCache
from social_inbox.services.realtime import Broadcaster

logger = get_logger("reply_service")

AGENT_MODE = "agent"
CUSTOMER_MODE = "customer"

_URL_PATTERN = re.compile(r"(https?://\S+|/uploads/[\w%\-.+~@]+(?:\.[\w%\-.+~@]+)?)")


def media_bubble(urls: list[str], kinds: list[str]) -> str:
    """One ledger body for a multi-file send, in the format the inbox UI renders as a gallery."""
    if len(urls) == 1:
        if kinds[0] == "video":
            return f"🎥 Video: {urls[0]}"
        if kinds[0] == "image":
            return f"📷 Image: {urls[0]}"
        return urls[0]
    joined = "\n".join(urls)
    if all(kind == "image" for kind in kinds):
        return f"📷 Images:\n{joined}"
    if all(kind == "video" for kind in kinds):
        return f"🎥 Videos:\n{joined}"
    return f"📎 Attachments:\n{joined}"


def extract_urls(text: str) -> list[str]:
    return _URL_PATTERN.findall(text or "")


def upload_filename_from_url(url: str) -> str:
    """Bare file name of a '/uploads/<name>' link (relative or absolute), or '' if it is not one."""
    raw = (url or "").strip()
    if not raw:
        return ""
    pathname = urlparse(raw).path if media_service.is_http_url(raw) else raw
    idx = pathname.find(media_service.UPLOADS_PREFIX)
    if idx < 0:
        return ""
    name = unquote(pathname[idx + len(media_service.UPLOADS_PREFIX):])
    base = Path(name).name
    if not base or ".." in base or base != name:
        return ""
    return base


@dataclass(frozen=True)
class ReplyContext:
    """Target conversation facts every outbound path needs."""

    conversation_id: str
    page_id: str
    recipient_id: str
    platform: str
    customer_name: str
    customer_profile_pic: str


class ReplyService:
    def __init__(
        self,
        graph: MetaGraphClient,
        tokens: PageTokenCache,
        broadcaster: Broadcaster,
        upload_dir: str | None = None,
        public_base_url: str | None = None,
    ):
        self.graph = graph
        self.tokens = tokens
        self.broadcaster = broadcaster
        self.upload_dir = upload_dir
        self.public_base_url = public_base_url

    def sender_label(self, db: Session, actor: Actor) -> tuple[str, str]:
        if actor.is_admin:
            return "admin", "Admin"
        if actor.role == "seller":
            seller = None
            if actor.seller_id:
                seller = db.execute(select(Seller).where(Seller.id == actor.seller_id)).scalar_one_or_none()
            return "seller", seller.display_name if seller else "Seller"
        return "ai", "AI Bot"

    def resolve_mode(self, db: Session, send_as: str | None, reply_to: str | None) -> str:
        """Replying to a customer message speaks as the agent, replying to an agent message as the customer."""
        mode = CUSTOMER_MODE if (send_as or "").strip().lower() == CUSTOMER_MODE else AGENT_MODE
        if reply_to:
            ref = ledger_service.get_message(db, reply_to)
            if ref is not None:
                is_customer = (ref.sender or "").lower() == "customer" or (ref.sender_role or "").lower() == "customer"
                mode = AGENT_MODE if is_customer else CUSTOMER_MODE
        return mode

    def _context(self, db: Session, conversation_id: str) -> ReplyContext:
        page_id, recipient_id = split_conversation_id(conversation_id)
        if not page_id or not recipient_id:
            raise ValidationError("Invalid conversationId")
        last = ledger_service.last_message(db, conversation_id)
        platform = (last.platform if last else None) or self.tokens.platform_for(page_id)
        name = (last.customer_name if last else "") or recipient_id
        pic = (last.customer_profile_pic if last else "") or ""
        return ReplyContext(conversation_id, page_id, recipient_id, platform, name, pic)

    def _token(self, ctx: ReplyContext) -> str:
        token = self.tokens.get(ctx.page_id)
        if not token:
            raise ValidationError("Page token not found")
        return token

    def _enforce_lock(self, db: Session, actor: Actor, conversation_id: str) -> None:
        if actor.role != "seller":
            return
        if not actor.seller_id:
            raise UnauthorizedError("Unauthorized. Please login again.")
        lock_service.enforce(db, conversation_id, actor.seller_id)

    async def _record(
        self, db: Session, ctx: ReplyContext, actor: Actor, mode: str, body: str, reply_to: str | None
    ) -> SocialChatMessage:
        if mode == CUSTOMER_MODE:
            sender, role, name = "customer", "customer", ctx.customer_name or "Customer"
        else:
            role, name = self.sender_label(db, actor)
            sender = "bot"

        row = ledger_service.append(
            db,
            NewMessage(
                conversation_id=ctx.conversation_id,
                sender=sender,
                sender_role=role,
                sender_name=name,
                customer_name=ctx.customer_name,
                customer_profile_pic=ctx.customer_profile_pic,
                message=body,
                reply_to_message_id=reply_to,
                platform=ctx.platform,
                page_id=ctx.page_id,
            ),
        )
        await self.broadcaster.new_message(db, MessageOut.from_row(row).model_dump())
        return row

    async def _send_text(self, ctx: ReplyContext, text: str, token: str) -> None:
        await self.graph.send_text(ctx.platform, ctx.page_id, ctx.recipient_id, text, token)

    async def _send_file(self, ctx: ReplyContext, path: Path, public_path: str, kind: str, mime: str, token: str):
        if ctx.platform == "instagram":
            # Instagram only accepts a publicly reachable URL.
            url = media_service.public_url(public_path, self.public_base_url)
            await self.graph.send_instagram_attachment(ctx.page_id, ctx.recipient_id, kind, url, token)
        else:
            attachment_id = await self.graph.upload_attachment(kind, path, mime, token)
            await self.graph.send_attachment_by_id(ctx.recipient_id, kind, attachment_id, token)

    async def send_text_reply(
        self,
        db: Session,
        actor: Actor,
        conversation_id: str,
        message: str,
        send_as: str | None = None,
        reply_to: str | None = None,
    ) -> SocialChatMessage:
        text = (message or "").strip()
        cid = (conversation_id or "").strip()
        if not cid or not text:
            raise ValidationError("conversationId and message required")

        mode = self.resolve_mode(db, send_as, reply_to)
        self._enforce_lock(db, actor, cid)
        ctx = self._context(db, cid)

        if mode == AGENT_MODE:
            # Nothing is recorded unless the platform accepted the send.
            await self._send_text(ctx, text, self._token(ctx))

        row = await self._record(db, ctx, actor, mode, text, reply_to)
        logger.info(
            "Manual reply stored",
            extra={"context": {"conversation_id": cid, "mode": mode, "actor": actor.actor_id, "message_id": row.id}},
        )
        return row

    async def send_media_reply(
        self,
        db: Session,
        actor: Actor,
        conversation_id: str,
        uploads: list,
        send_as: str | None = None,
        reply_to: str | None = None,
    ) -> SocialChatMessage:
        """
        Send every uploaded file and record a single combined bubble.

        Files are sent one request at a time. A file that fails to send is
        logged and still listed in the bubble; earlier sends are not undone.
        """
        cid = (conversation_id or "").strip()
        if not cid:
            raise ValidationError("conversationId required")

        mode = self.resolve_mode(db, send_as, reply_to)
        self._enforce_lock(db, actor, cid)
        ctx = self._context(db, cid)
        token = self._token(ctx) if mode == AGENT_MODE else ""

        uploads = [upload for upload in uploads or [] if upload is not None and upload.filename]
        if not uploads:
            raise ValidationError("No files uploaded")

        log = conversation_logger(logger, cid, actor=actor.actor_id)

        # Size limits are checked for every file before anything is sent.
        saved = await media_service.save_uploads(uploads, upload_dir=self.upload_dir)

        urls: list[str] = []
        kinds: list[str] = []
        for stored in saved:
            if mode == AGENT_MODE:
                try:
                    await self._send_file(ctx, stored.path, stored.public_path, stored.kind, stored.mime, token)
                except Exception as e:
                    log.error("Media send failed", extra={"context": {"file": stored.filename, "error": str(e)}})
            urls.append(stored.public_path)
            kinds.append(stored.kind)

        return await self._record(db, ctx, actor, mode, media_bubble(urls, kinds), reply_to)

    async def forward(
        self, db: Session, actor: Actor, target_conversation_id: str, raw_message: str
    ) -> tuple[SocialChatMessage, bool]:
        """Forward an existing bubble. Returns (stored row, forwarded_as_text)."""
        cid = (target_conversation_id or "").strip()
        raw = (raw_message or "").strip()
        if not cid or not raw:
            raise ValidationError("targetConversationId and message required")

        self._enforce_lock(db, actor, cid)
        ctx = self._context(db, cid)
        token = self._token(ctx)

        urls = extract_urls(raw)
        upload_urls = [u for u in urls if upload_filename_from_url(u)]
        remote_urls = [u for u in urls if media_service.is_http_url(u) and not upload_filename_from_url(u)]

        stored_urls: list[str] = []
        kinds: list[str] = []
        for url in upload_urls:
            filename = upload_filename_from_url(url)
            local_path = media_service.resolve_upload(filename, self.upload_dir)
            if local_path is None:
                continue
            mime = media_service.guess_mime(filename) or "application/octet-stream"
            kind = media_service.attachment_kind(filename, mime)
            public_path = f"{media_service.UPLOADS_PREFIX}{filename}"
            try:
                await self._send_file(ctx, local_path, public_path, kind, mime, token)
            except Exception as e:
                logger.error("Forward media send failed", extra={"context": {"conversation_id": cid, "error": str(e)}})
            stored_urls.append(public_path)
            kinds.append(kind)

        for url in remote_urls:
            basename = Path(urlparse(url).path).name
            mime = media_service.guess_mime(basename) or await self.graph.fetch_content_type(url)
            kind = media_service.attachment_kind("", mime or "application/octet-stream")
            try:
                if ctx.platform == "instagram":
                    await self.graph.send_instagram_attachment(ctx.page_id, ctx.recipient_id, kind, url, token)
                else:
                    await self.graph.send_attachment_by_url(ctx.recipient_id, kind, url, token)
            except Exception as e:
                logger.error("Forward remote send failed", extra={"context": {"conversation_id": cid, "error": str(e)}})
            stored_urls.append(url)
            kinds.append(kind)

        if not stored_urls:
            await self._send_text(ctx, raw, token)
            return await self._record(db, ctx, actor, AGENT_MODE, raw, None), True

        return await self._record(db, ctx, actor, AGENT_MODE, media_bubble(stored_urls, kinds), None), False
