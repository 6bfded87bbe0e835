from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import DateTime, func, literal, or_, select, update
from sqlalchemy.orm import Session, aliased

from social_inbox.logging_config import get_logger
from social_inbox.models import ConversationLock, SocialChatMessage
from social_inbox.services.receipt_service import read_marker_column
from social_inbox.timeutils import EPOCH, utc_now

logger = get_logger("ledger_service")

DEFAULT_HISTORY_LIMIT = 500
DEFAULT_SUMMARY_LIMIT = 200


@dataclass
class NewMessage:
    conversation_id: str
    sender: str
    message: str
    platform: str
    page_id: str
    sender_role: str = "customer"
    sender_name: str = ""
    customer_name: str = ""
    customer_profile_pic: str = ""
    reply_to_message_id: str | None = None
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class ConversationSummary:
    conversation_id: str
    customer_name: str
    customer_profile_pic: str
    platform: str
    page_id: str
    last_message: str
    last_time: datetime
    assigned_seller_id: str | None
    delivery_status: str
    assigned_at: datetime | None
    unread_count: int

    @property
    def is_unread(self) -> bool:
        return self.unread_count > 0


def append(db: Session, message: NewMessage) -> SocialChatMessage:
    row = SocialChatMessage(
        conversation_id=message.conversation_id,
        customer_name=message.customer_name or "",
        customer_profile_pic=message.customer_profile_pic or "",
        sender=message.sender,
        sender_role=message.sender_role,
        sender_name=message.sender_name or "",
        message=message.message,
        reply_to_message_id=message.reply_to_message_id or None,
        platform=message.platform,
        page_id=message.page_id,
        timestamp=message.timestamp,
        created_at=utc_now(),
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def list_by_conversation(db: Session, conversation_id: str, limit: int = DEFAULT_HISTORY_LIMIT) -> list[SocialChatMessage]:
    return list(
        db.execute(
            select(SocialChatMessage)
            .where(SocialChatMessage.conversation_id == conversation_id)
            .order_by(SocialChatMessage.timestamp.asc(), SocialChatMessage.id.asc())
            .limit(limit)
        ).scalars()
    )


def get_message(db: Session, message_id) -> SocialChatMessage | None:
    try:
        mid = int(str(message_id).strip())
    except (TypeError, ValueError):
        return None
    return db.get(SocialChatMessage, mid)


def last_message(db: Session, conversation_id: str) -> SocialChatMessage | None:
    return db.execute(
        select(SocialChatMessage)
        .where(SocialChatMessage.conversation_id == conversation_id)
        .order_by(SocialChatMessage.timestamp.desc(), SocialChatMessage.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def last_known_name(db: Session, conversation_id: str) -> tuple[str, str]:
    """Most recent customer name and avatar stored for the conversation."""
    row = db.execute(
        select(SocialChatMessage.customer_name, SocialChatMessage.customer_profile_pic)
        .where(SocialChatMessage.conversation_id == conversation_id)
        .order_by(SocialChatMessage.timestamp.desc(), SocialChatMessage.id.desc())
        .limit(1)
    ).first()
    if row is None:
        return "", ""
    return row.customer_name or "", row.customer_profile_pic or ""


def _read_watermark(role: str):
    return func.coalesce(read_marker_column(role), literal(EPOCH, DateTime))


def unread_count(db: Session, conversation_id: str, role: str) -> int:
    """Customer messages newer than the role's read marker; a missing lock row counts as never read."""
    count = db.execute(
        select(func.count(SocialChatMessage.id))
        .select_from(SocialChatMessage)
        .outerjoin(ConversationLock, ConversationLock.conversation_id == SocialChatMessage.conversation_id)
        .where(
            SocialChatMessage.conversation_id == conversation_id,
            SocialChatMessage.sender == "customer",
            SocialChatMessage.timestamp > _read_watermark(role),
        )
    ).scalar()
    return int(count or 0)


def latest_summary_per_conversation(
    db: Session,
    role: str,
    seller_id: str | None = None,
    limit: int = DEFAULT_SUMMARY_LIMIT,
) -> list[ConversationSummary]:
    msg = SocialChatMessage
    ranked = select(
        msg.id,
        msg.conversation_id,
        msg.customer_name,
        msg.customer_profile_pic,
        msg.platform,
        msg.page_id,
        msg.message,
        msg.timestamp,
        func.row_number()
        .over(partition_by=msg.conversation_id, order_by=(msg.timestamp.desc(), msg.id.desc()))
        .label("rn"),
    ).subquery("ranked")

    counted = aliased(SocialChatMessage)
    unread = (
        select(func.count(counted.id))
        .where(
            counted.conversation_id == ranked.c.conversation_id,
            counted.sender == "customer",
            counted.timestamp > _read_watermark(role),
        )
        .correlate(ranked, ConversationLock)
        .scalar_subquery()
    )

    stmt = (
        select(
            ranked,
            ConversationLock.seller_id,
            ConversationLock.delivery_status,
            ConversationLock.assigned_at,
            unread.label("unread_count"),
        )
        .select_from(ranked.outerjoin(ConversationLock, ConversationLock.conversation_id == ranked.c.conversation_id))
        .where(ranked.c.rn == 1)
    )
    if role != "admin":
        stmt = stmt.where(
            or_(
                ConversationLock.seller_id.is_(None),
                ConversationLock.seller_id == "",
                ConversationLock.seller_id == (seller_id or ""),
            )
        )
    stmt = stmt.order_by(ranked.c.timestamp.desc(), ranked.c.id.desc()).limit(limit)

    return [
        ConversationSummary(
            conversation_id=row.conversation_id,
            customer_name=row.customer_name or "",
            customer_profile_pic=row.customer_profile_pic or "",
            platform=row.platform,
            page_id=row.page_id,
            last_message=row.message,
            last_time=row.timestamp,
            assigned_seller_id=row.seller_id or None,
            delivery_status=row.delivery_status or "confirmed",
            assigned_at=row.assigned_at,
            unread_count=int(row.unread_count or 0),
        )
        for row in db.execute(stmt)
    ]


def backfill_customer_identity(db: Session, conversation_id: str, name: str, profile_pic: str = "") -> int:
    """Rewrite the customer name/avatar on every customer row of a conversation after a better lookup."""
    values = {"customer_name": name}
    if profile_pic:
        values["customer_profile_pic"] = profile_pic
    result = db.execute(
        update(SocialChatMessage)
        .where(SocialChatMessage.conversation_id == conversation_id, SocialChatMessage.sender == "customer")
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    logger.info(
        "Customer identity backfilled",
        extra={"context": {"conversation_id": conversation_id, "rows": result.rowcount}},
    )
    return result.rowcount
