from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import insert, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from social_inbox.logging_config import get_logger
from social_inbox.models import DELIVERY_STATUSES, ConversationLock, Seller
from social_inbox.services.actor import Actor
from social_inbox.services.errors import (
    ConversationLockedError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from social_inbox.timeutils import utc_now

logger = get_logger("lock_service")


@dataclass(frozen=True)
class ClaimResult:
    owner_id: str | None
    created: bool

    def is_owner(self, seller_id: str) -> bool:
        return bool(seller_id) and self.owner_id == seller_id


@dataclass(frozen=True)
class ConversationMeta:
    conversation_id: str
    assigned_seller_id: str | None
    delivery_status: str
    assigned_at: datetime | None


def insert_ignore(db: Session, model, values: dict, index_elements: list[str]) -> bool:
    """INSERT that silently does nothing on a key conflict. Returns True if a row was written."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    elif dialect in ("mysql", "mariadb"):
        stmt = insert(model).values(**values).prefix_with("IGNORE")
    else:
        raise RuntimeError(f"insert-ignore not supported for dialect {dialect}")
    result = db.execute(stmt)
    return result.rowcount > 0


def _clean(value: str | None) -> str:
    return str(value or "").strip()


def ensure_conversation(db: Session, conversation_id: str) -> bool:
    """Get-or-create a bare conversation row. Returns True when it was created."""
    cid = _clean(conversation_id)
    if not cid:
        raise ValidationError("conversationId required")
    now = utc_now()
    return insert_ignore(
        db,
        ConversationLock,
        {"conversation_id": cid, "locked_at": now, "created_at": now, "updated_at": now},
        ["conversation_id"],
    )


def _claim_if_unowned(db: Session, conversation_id: str, seller_id: str) -> bool:
    now = utc_now()
    stmt = (
        update(ConversationLock)
        .where(
            ConversationLock.conversation_id == conversation_id,
            or_(ConversationLock.seller_id.is_(None), ConversationLock.seller_id == ""),
        )
        .values(seller_id=seller_id, locked_at=now, assigned_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount > 0


def get_owner(db: Session, conversation_id: str) -> str | None:
    cid = _clean(conversation_id)
    if not cid:
        return None
    owner = db.execute(
        select(ConversationLock.seller_id).where(ConversationLock.conversation_id == cid)
    ).scalar_one_or_none()
    return owner or None


def claim(db: Session, conversation_id: str, seller_id: str) -> ClaimResult:
    """
    First responder wins.

    The primary key on conversation_id serializes concurrent inserts, so at
    most one caller creates the row with itself as owner. A row that already
    exists without an owner is taken with a conditional update.
    """
    cid, sid = _clean(conversation_id), _clean(seller_id)
    if not cid:
        raise ValidationError("conversationId required")
    if not sid:
        raise ValidationError("sellerId required")

    now = utc_now()
    created = insert_ignore(
        db,
        ConversationLock,
        {
            "conversation_id": cid,
            "seller_id": sid,
            "locked_at": now,
            "assigned_at": now,
            "created_at": now,
            "updated_at": now,
        },
        ["conversation_id"],
    )
    if not created:
        _claim_if_unowned(db, cid, sid)
    db.commit()

    owner = get_owner(db, cid)
    logger.info(
        "Conversation claim",
        extra={"context": {"conversation_id": cid, "seller_id": sid, "owner_id": owner, "created": created}},
    )
    return ClaimResult(owner_id=owner, created=created)


def enforce(db: Session, conversation_id: str, seller_id: str) -> None:
    """Make sure seller_id owns the conversation before it replies, claiming it when unowned."""
    cid, sid = _clean(conversation_id), _clean(seller_id)
    if not sid:
        raise ForbiddenError("Forbidden")

    owner = get_owner(db, cid)
    if owner == sid:
        return
    if owner:
        raise ConversationLockedError(cid, owner)

    ensure_conversation(db, cid)
    _claim_if_unowned(db, cid, sid)
    db.commit()

    # One re-check closes the window between the read and the conditional update.
    owner = get_owner(db, cid)
    if owner != sid:
        logger.info(
            "Conversation lost to another seller",
            extra={"context": {"conversation_id": cid, "seller_id": sid, "owner_id": owner}},
        )
        raise ConversationLockedError(cid, owner)


def get_meta(db: Session, conversation_id: str) -> ConversationMeta:
    cid = _clean(conversation_id)
    row = db.execute(
        select(ConversationLock.seller_id, ConversationLock.delivery_status, ConversationLock.assigned_at).where(
            ConversationLock.conversation_id == cid
        )
    ).first()
    if row is None:
        return ConversationMeta(cid, None, "confirmed", None)
    return ConversationMeta(
        conversation_id=cid,
        assigned_seller_id=row.seller_id or None,
        delivery_status=row.delivery_status or "confirmed",
        assigned_at=row.assigned_at,
    )


def assign(db: Session, conversation_id: str, seller_id: str | None, actor: Actor) -> str | None:
    """
    Set or clear the owner. Admin authority overrides the first-responder lock.

    Returns the previous owner so callers can notify it.
    """
    if not actor.is_admin:
        raise ForbiddenError("Forbidden")

    cid = _clean(conversation_id)
    sid = _clean(seller_id) or None
    if sid is not None:
        exists = db.execute(select(Seller.id).where(Seller.id == sid)).scalar_one_or_none()
        if exists is None:
            raise NotFoundError("Seller not found")

    previous = get_owner(db, cid)
    ensure_conversation(db, cid)
    now = utc_now()
    db.execute(
        update(ConversationLock)
        .where(ConversationLock.conversation_id == cid)
        .values(
            seller_id=sid,
            assigned_at=now if sid else None,
            assigned_by=actor.actor_id,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()

    logger.info(
        "Conversation assigned",
        extra={"context": {"conversation_id": cid, "seller_id": sid, "previous_owner": previous}},
    )
    return previous


def set_delivery_status(db: Session, conversation_id: str, status: str, actor: Actor) -> None:
    if not actor.is_seller:
        raise ForbiddenError("Forbidden")
    if status not in DELIVERY_STATUSES:
        raise ValidationError("Invalid deliveryStatus")

    cid = _clean(conversation_id)
    ensure_conversation(db, cid)
    # Owner condition lives in the UPDATE so a concurrent claim cannot slip in between.
    result = db.execute(
        update(ConversationLock)
        .where(
            ConversationLock.conversation_id == cid,
            or_(
                ConversationLock.seller_id.is_(None),
                ConversationLock.seller_id == "",
                ConversationLock.seller_id == actor.seller_id,
            ),
        )
        .values(delivery_status=status, updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount == 0:
        raise ConversationLockedError(cid, get_owner(db, cid))
