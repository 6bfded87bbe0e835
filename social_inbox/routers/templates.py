from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from sqlalchemy.orm import Session

from social_inbox.config import settings
from social_inbox.database import get_db
from social_inbox.dependencies import get_current_actor
from social_inbox.schemas.template import (
    TemplateListResponse,
    TemplateOut,
    TemplateResponse,
    TemplateUpdate,
    TextTemplateCreate,
)
from social_inbox.services import media_service, template_service
from social_inbox.services.actor import Actor
from social_inbox.services.errors import InboxError
from social_inbox.services.template_service import TemplateChanges

router = APIRouter(prefix="/templates", tags=["templates"])


def _http_error(e: InboxError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)


async def _store_files(files, file) -> list[media_service.StoredFile]:
    uploads = media_service.collect_uploads(files, file)
    return await media_service.save_uploads(uploads, upload_dir=settings.upload_dir)


def _discard(stored: list[media_service.StoredFile]) -> None:
    for item in stored:
        item.path.unlink(missing_ok=True)


@router.get("", response_model=TemplateListResponse)
def list_templates(
    type: Optional[str] = None,
    q: Optional[str] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    try:
        rows = template_service.list_templates(db, actor, template_type=type, query=q)
    except InboxError as e:
        raise _http_error(e)
    return TemplateListResponse(data=[TemplateOut.from_row(row) for row in rows])


@router.post("/text", response_model=TemplateResponse)
def create_text_template(
    request: TextTemplateCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    try:
        row = template_service.create_text(
            db, actor, request.title, request.text, scope=request.scope, seller_id=request.seller_id
        )
    except InboxError as e:
        raise _http_error(e)
    return TemplateResponse(data=TemplateOut.from_row(row))


@router.post("/media", response_model=TemplateResponse)
async def create_media_template(
    title: str = Form(""),
    scope: Optional[str] = Form(None),
    sellerId: Optional[str] = Form(None),
    files: Optional[List[UploadFile]] = File(None),
    file: Optional[UploadFile] = File(None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    stored: list[media_service.StoredFile] = []
    try:
        stored = await _store_files(files, file)
        row = template_service.create_media(
            db, actor, title, [item.public_path for item in stored], scope=scope, seller_id=sellerId
        )
    except InboxError as e:
        _discard(stored)
        raise _http_error(e)
    return TemplateResponse(data=TemplateOut.from_row(row))


@router.put("/{template_id}", response_model=TemplateResponse)
def update_template(
    template_id: int,
    request: TemplateUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    try:
        row = template_service.update_template(db, actor, template_id, request.to_changes())
    except InboxError as e:
        raise _http_error(e)
    return TemplateResponse(data=TemplateOut.from_row(row))


@router.put("/{template_id}/media", response_model=TemplateResponse)
async def replace_template_media(
    template_id: int,
    title: Optional[str] = Form(None),
    files: Optional[List[UploadFile]] = File(None),
    file: Optional[UploadFile] = File(None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Swap the files of a media template; the old uploads stay on disk."""
    stored: list[media_service.StoredFile] = []
    try:
        stored = await _store_files(files, file)
        changes = TemplateChanges(title=title, media_urls=[item.public_path for item in stored])
        row = template_service.update_template(db, actor, template_id, changes)
    except InboxError as e:
        _discard(stored)
        raise _http_error(e)
    return TemplateResponse(data=TemplateOut.from_row(row))


@router.delete("/{template_id}")
def delete_template(
    template_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    try:
        template_service.delete_template(db, actor, template_id)
    except InboxError as e:
        raise _http_error(e)
    return {"success": True}
