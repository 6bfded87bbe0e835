import json
from dataclasses import dataclass

from sqlalchemy import and_, delete, or_, select, true
from sqlalchemy.orm import Session

from social_inbox.logging_config import get_logger
from social_inbox.models import TEMPLATE_TYPES, SavedTemplate, Seller
from social_inbox.services.actor import Actor
from social_inbox.services.errors import ForbiddenError, NotFoundError, ValidationError

logger = get_logger("template_service")

GLOBAL_SCOPE = "global"
SELLER_SCOPE = "seller"
LIST_LIMIT = 500


@dataclass
class TemplateChanges:
    title: str | None = None
    text: str | None = None
    scope: str | None = None
    seller_id: str | None = None
    media_urls: list[str] | None = None


def _clean(value) -> str:
    return str(value or "").strip()


def parse_media_urls(raw: str | None) -> list[str]:
    """Stored as a JSON array; older rows may hold one URL per line."""
    text = _clean(raw)
    if not text:
        return []
    try:
        items = json.loads(text)
    except ValueError:
        return [line.strip() for line in text.split("\n") if line.strip()]
    if not isinstance(items, list):
        return []
    return [_clean(item) for item in items if _clean(item)]


def _dump_media_urls(urls: list[str]) -> str:
    return json.dumps([_clean(url) for url in urls if _clean(url)])


def _visible_to(actor: Actor):
    """Admins see every template; sellers see global ones and their own."""
    if actor.is_admin:
        return true()
    return or_(
        SavedTemplate.scope == GLOBAL_SCOPE,
        and_(SavedTemplate.scope == SELLER_SCOPE, SavedTemplate.seller_id == actor.seller_id),
    )


def _editable_by(actor: Actor):
    if actor.is_admin:
        return true()
    return and_(SavedTemplate.scope == SELLER_SCOPE, SavedTemplate.seller_id == actor.seller_id)


def _check_actor(actor: Actor) -> None:
    if not (actor.is_admin or actor.is_seller):
        raise ForbiddenError("Forbidden")


def _resolve_owner(
    db: Session, actor: Actor, scope: str | None, seller_id: str | None, current: SavedTemplate | None = None
) -> tuple[str, str | None]:
    # Sellers can only ever own personal templates.
    if not actor.is_admin:
        return SELLER_SCOPE, actor.seller_id

    wanted = _clean(scope).lower()
    if wanted not in (GLOBAL_SCOPE, SELLER_SCOPE):
        wanted = current.scope if current is not None else GLOBAL_SCOPE
    if wanted == GLOBAL_SCOPE:
        return GLOBAL_SCOPE, None

    sid = _clean(seller_id) or (current.seller_id if current is not None else "")
    if not sid:
        raise ValidationError("sellerId required for seller templates")
    if db.execute(select(Seller.id).where(Seller.id == sid)).scalar_one_or_none() is None:
        raise NotFoundError("Seller not found")
    return SELLER_SCOPE, sid


def list_templates(
    db: Session, actor: Actor, template_type: str | None = None, query: str | None = None, limit: int = LIST_LIMIT
) -> list[SavedTemplate]:
    _check_actor(actor)
    stmt = select(SavedTemplate).where(_visible_to(actor))

    kind = _clean(template_type).lower()
    if kind in TEMPLATE_TYPES:
        stmt = stmt.where(SavedTemplate.type == kind)

    q = _clean(query)
    if q:
        pattern = f"%{q}%"
        stmt = stmt.where(or_(SavedTemplate.title.ilike(pattern), SavedTemplate.text.ilike(pattern)))

    stmt = stmt.order_by(SavedTemplate.updated_at.desc(), SavedTemplate.id.desc()).limit(limit)
    return list(db.execute(stmt).scalars())


def _insert(db: Session, actor: Actor, row: SavedTemplate) -> SavedTemplate:
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info(
        "Template created",
        extra={"context": {"template_id": row.id, "type": row.type, "scope": row.scope, "actor": actor.actor_id}},
    )
    return row


def create_text(
    db: Session, actor: Actor, title: str, text: str, scope: str | None = None, seller_id: str | None = None
) -> SavedTemplate:
    _check_actor(actor)
    title, text = _clean(title), _clean(text)
    if not title:
        raise ValidationError("title required")
    if not text:
        raise ValidationError("text required")

    scope, owner = _resolve_owner(db, actor, scope, seller_id)
    return _insert(db, actor, SavedTemplate(scope=scope, seller_id=owner, title=title, type="text", text=text))


def create_media(
    db: Session,
    actor: Actor,
    title: str,
    media_urls: list[str],
    scope: str | None = None,
    seller_id: str | None = None,
) -> SavedTemplate:
    _check_actor(actor)
    title = _clean(title)
    if not title:
        raise ValidationError("title required")
    if not [url for url in media_urls if _clean(url)]:
        raise ValidationError("No files uploaded")

    scope, owner = _resolve_owner(db, actor, scope, seller_id)
    return _insert(
        db,
        actor,
        SavedTemplate(
            scope=scope, seller_id=owner, title=title, type="media", media_urls_json=_dump_media_urls(media_urls)
        ),
    )


def update_template(db: Session, actor: Actor, template_id: int, changes: TemplateChanges) -> SavedTemplate:
    """Partial update; fields left as None keep their stored value."""
    _check_actor(actor)
    row = db.execute(
        select(SavedTemplate).where(SavedTemplate.id == template_id, _editable_by(actor))
    ).scalar_one_or_none()
    if row is None:
        raise NotFoundError("Not found")

    urls = None
    if changes.media_urls is not None:
        urls = [_clean(url) for url in changes.media_urls if _clean(url)]
        if row.type != "media" and urls:
            raise ValidationError("Files can only be attached to media templates")
        if row.type == "media" and not urls:
            raise ValidationError("A media template needs at least one file")
    scope, owner = _resolve_owner(db, actor, changes.scope, changes.seller_id, current=row)

    row.scope, row.seller_id = scope, owner
    if _clean(changes.title):
        row.title = _clean(changes.title)
    if row.type == "text" and _clean(changes.text):
        row.text = _clean(changes.text)
    if row.type == "media" and urls:
        row.media_urls_json = _dump_media_urls(urls)

    db.commit()
    db.refresh(row)
    logger.info("Template updated", extra={"context": {"template_id": row.id, "actor": actor.actor_id}})
    return row


def delete_template(db: Session, actor: Actor, template_id: int) -> None:
    _check_actor(actor)
    result = db.execute(
        delete(SavedTemplate)
        .where(SavedTemplate.id == template_id, _editable_by(actor))
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount == 0:
        raise NotFoundError("Not found")
    logger.info("Template deleted", extra={"context": {"template_id": template_id, "actor": actor.actor_id}})
