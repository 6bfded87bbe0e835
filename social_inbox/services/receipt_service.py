import threading
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import case, inspect, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from social_inbox.logging_config import get_logger
from social_inbox.models import ConversationLock
from social_inbox.services.lock_service import ensure_conversation
from social_inbox.timeutils import utc_now

logger = get_logger("receipt_service")

DELIVERED = "delivered"
READ = "read"

RECEIPT_COLUMNS = {
    DELIVERED: "customer_last_delivered_at",
    READ: "customer_last_read_at",
}


@dataclass(frozen=True)
class Receipts:
    delivered_at: datetime | None = None
    read_at: datetime | None = None


def read_marker_column(role: str):
    """Agent read marker for a role: admins share one marker, sellers another."""
    if role == "admin":
        return ConversationLock.admin_last_read_at
    return ConversationLock.seller_last_read_at


class ReceiptTracker:
    """
    Customer delivery/read watermarks per conversation.

    Older databases may lack the receipt columns; presence is detected once per
    database and every operation becomes a no-op when they are missing.
    """

    def __init__(self):
        self._columns: dict[str, set[str]] = {}
        self._lock = threading.Lock()

    def _available(self, db: Session) -> set[str]:
        bind = db.get_bind()
        key = str(bind.url)
        cached = self._columns.get(key)
        if cached is not None:
            return cached

        with self._lock:
            if key in self._columns:
                return self._columns[key]
            try:
                names = {col["name"] for col in inspect(bind).get_columns(ConversationLock.__tablename__)}
            except SQLAlchemyError as e:
                logger.warning("Receipt column detection failed", extra={"context": {"error": str(e)}})
                names = set()
            available = {kind for kind, column in RECEIPT_COLUMNS.items() if column in names}
            self._columns[key] = available
            return available

    def reset(self) -> None:
        with self._lock:
            self._columns.clear()

    def record_receipt(self, db: Session, conversation_id: str, kind: str, ts: datetime | None) -> bool:
        """Move the watermark forward to ts; older or equal timestamps leave it untouched."""
        if kind not in RECEIPT_COLUMNS:
            raise ValueError(f"unknown receipt kind: {kind}")
        if ts is None or not conversation_id:
            return False
        if kind not in self._available(db):
            return False

        column = getattr(ConversationLock, RECEIPT_COLUMNS[kind])
        ensure_conversation(db, conversation_id)
        db.execute(
            update(ConversationLock)
            .where(ConversationLock.conversation_id == conversation_id)
            .values({column: case((or_(column.is_(None), column < ts), ts), else_=column)})
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return True

    def get_receipts(self, db: Session, conversation_id: str) -> Receipts:
        available = self._available(db)
        if not available:
            return Receipts()

        row = db.execute(
            select(ConversationLock.customer_last_delivered_at, ConversationLock.customer_last_read_at).where(
                ConversationLock.conversation_id == conversation_id
            )
        ).first()
        if row is None:
            return Receipts()
        return Receipts(
            delivered_at=row.customer_last_delivered_at if DELIVERED in available else None,
            read_at=row.customer_last_read_at if READ in available else None,
        )


def mark_read(db: Session, conversation_id: str, role: str) -> datetime:
    now = utc_now()
    ensure_conversation(db, conversation_id)
    db.execute(
        update(ConversationLock)
        .where(ConversationLock.conversation_id == conversation_id)
        .values({read_marker_column(role): now})
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return now


def mark_unread(db: Session, conversation_id: str, role: str) -> None:
    ensure_conversation(db, conversation_id)
    db.execute(
        update(ConversationLock)
        .where(ConversationLock.conversation_id == conversation_id)
        .values({read_marker_column(role): None})
        .execution_options(synchronize_session=False)
    )
    db.commit()


def get_read_at(db: Session, conversation_id: str, role: str) -> datetime | None:
    return db.execute(
        select(read_marker_column(role)).where(ConversationLock.conversation_id == conversation_id)
    ).scalar_one_or_none()
