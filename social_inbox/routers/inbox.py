from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from sqlalchemy.orm import Session

from social_inbox.database import get_db
from social_inbox.dependencies import (
    get_broadcaster,
    get_current_actor,
    get_identity_resolver,
    get_receipt_tracker,
    get_reply_service,
)
from social_inbox.logging_config import get_logger
from social_inbox.schemas.inbox import (
    AssignOwner,
    ConversationMetaOut,
    ConversationMetaPatch,
    ConversationOut,
    ForwardRequest,
    ManualReplyRequest,
    MessageOut,
    MessagesResponse,
    ReadStateResponse,
    ReplyResponse,
)
from social_inbox.services import ledger_service, lock_service, media_service
from social_inbox.services.actor import Actor
from social_inbox.services.errors import ConversationLockedError, InboxError
from social_inbox.services.identity_service import IdentityResolver
from social_inbox.services.realtime import Broadcaster
from social_inbox.services.receipt_service import ReceiptTracker, get_read_at, mark_read, mark_unread
from social_inbox.services.reply_service import ReplyService
from social_inbox.timeutils import to_iso

logger = get_logger("inbox")

router = APIRouter()

TRUTHY = {"1", "true", "yes"}


def _http_error(e: InboxError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)


def _read_state(db: Session, conversation_id: str, role: str) -> ReadStateResponse:
    unread = ledger_service.unread_count(db, conversation_id, role)
    return ReadStateResponse(
        conversationId=conversation_id,
        unreadCount=unread,
        isUnread=unread > 0,
        readAt=to_iso(get_read_at(db, conversation_id, role)),
    )


@router.get("/conversations", response_model=list[ConversationOut])
async def list_conversations(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    identity: IdentityResolver = Depends(get_identity_resolver),
):
    summaries = ledger_service.latest_summary_per_conversation(db, actor.role, seller_id=actor.seller_id)
    items = [ConversationOut.from_summary(summary) for summary in summaries]

    refreshed = await identity.refresh_summaries(db, summaries)
    for item in items:
        found = refreshed.get(item.conversationId)
        if found:
            item.customerName = found.name
            item.customerProfilePic = found.profile_pic or item.customerProfilePic
    return items


@router.get("/messages/{conversation_id}", response_model=MessagesResponse)
async def get_messages(
    conversation_id: str,
    markRead: Optional[str] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    identity: IdentityResolver = Depends(get_identity_resolver),
    tracker: ReceiptTracker = Depends(get_receipt_tracker),
):
    if actor.role == "seller":
        owner = lock_service.get_owner(db, conversation_id)
        if owner and owner != actor.seller_id:
            raise _http_error(ConversationLockedError(conversation_id, owner))

    rows = ledger_service.list_by_conversation(db, conversation_id)
    data = [MessageOut.from_row(row) for row in rows]

    if rows:
        last = rows[-1]
        try:
            found = await identity.refresh_conversation(db, conversation_id, last.page_id, last.customer_name)
        except Exception as e:
            found = None
            logger.warning(
                "Identity refresh failed", extra={"context": {"conversation_id": conversation_id, "error": str(e)}}
            )
        if found:
            for item in data:
                item.customerName = found.name
                item.customerProfilePic = found.profile_pic or item.customerProfilePic

    # Preloading threads must not clear unread dots; only an explicit open does.
    if (markRead or "").strip().lower() in TRUTHY:
        mark_read(db, conversation_id, actor.role)

    receipts = tracker.get_receipts(db, conversation_id)
    return MessagesResponse(
        data=data,
        readAt=to_iso(get_read_at(db, conversation_id, actor.role)),
        customerDeliveredAt=to_iso(receipts.delivered_at),
        customerReadAt=to_iso(receipts.read_at),
    )


@router.post("/conversations/{conversation_id}/mark-read", response_model=ReadStateResponse)
def mark_conversation_read(
    conversation_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    mark_read(db, conversation_id, actor.role)
    return _read_state(db, conversation_id, actor.role)


@router.post("/conversations/{conversation_id}/mark-unread", response_model=ReadStateResponse)
def mark_conversation_unread(
    conversation_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    mark_unread(db, conversation_id, actor.role)
    return _read_state(db, conversation_id, actor.role)


@router.patch("/conversations/{conversation_id}/meta", response_model=ConversationMetaOut)
async def update_conversation_meta(
    conversation_id: str,
    request: ConversationMetaPatch,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    try:
        command = request.to_command()
        if isinstance(command, AssignOwner):
            previous_owner = lock_service.assign(db, conversation_id, command.seller_id, actor)
        else:
            previous_owner = lock_service.get_owner(db, conversation_id)
            lock_service.set_delivery_status(db, conversation_id, command.status, actor)
    except InboxError as e:
        raise _http_error(e)

    meta = ConversationMetaOut.from_meta(lock_service.get_meta(db, conversation_id))
    await broadcaster.conversation_meta(meta.model_dump(), previous_owner=previous_owner)
    return meta


@router.post("/manual-reply", response_model=ReplyResponse)
async def manual_reply(
    request: ManualReplyRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    replies: ReplyService = Depends(get_reply_service),
):
    try:
        row = await replies.send_text_reply(
            db, actor, request.conversationId, request.message, request.sendAs, request.reply_to
        )
    except InboxError as e:
        raise _http_error(e)
    return ReplyResponse(data=MessageOut.from_row(row))


@router.post("/manual-media-reply", response_model=ReplyResponse)
async def manual_media_reply(
    conversationId: str = Form(""),
    sendAs: Optional[str] = Form(None),
    replyToMessageId: Optional[str] = Form(None),
    files: Optional[List[UploadFile]] = File(None),
    file: Optional[UploadFile] = File(None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    replies: ReplyService = Depends(get_reply_service),
):
    try:
        uploads = media_service.collect_uploads(files, file)
        row = await replies.send_media_reply(
            db, actor, conversationId, uploads, sendAs, (replyToMessageId or "").strip() or None
        )
    except InboxError as e:
        raise _http_error(e)
    return ReplyResponse(data=MessageOut.from_row(row))


@router.post("/forward-message")
async def forward_message(
    request: ForwardRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
    replies: ReplyService = Depends(get_reply_service),
):
    try:
        row, as_text = await replies.forward(db, actor, request.targetConversationId, request.message)
    except InboxError as e:
        raise _http_error(e)
    return {"success": True, "forwardedAsText": as_text, "data": MessageOut.from_row(row).model_dump()}
