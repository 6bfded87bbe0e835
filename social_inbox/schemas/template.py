from typing import Optional, Union

from pydantic import BaseModel

from social_inbox.services.template_service import TemplateChanges, parse_media_urls
from social_inbox.timeutils import to_iso


def _optional_id(value) -> Optional[str]:
    if value is None:
        return None
    return str(value).strip() or None


class TemplateOut(BaseModel):
    id: int
    scope: str
    sellerId: Optional[str] = None
    title: str
    type: str
    text: str = ""
    mediaUrls: list[str] = []
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "TemplateOut":
        return cls(
            id=row.id,
            scope=row.scope,
            sellerId=row.seller_id or None,
            title=row.title or "",
            type=row.type,
            text=row.text or "",
            mediaUrls=parse_media_urls(row.media_urls_json),
            createdAt=to_iso(row.created_at),
            updatedAt=to_iso(row.updated_at),
        )


class TemplateListResponse(BaseModel):
    data: list[TemplateOut]


class TemplateResponse(BaseModel):
    success: bool = True
    data: TemplateOut


class TextTemplateCreate(BaseModel):
    title: str = ""
    text: str = ""
    scope: Optional[str] = None
    sellerId: Optional[Union[str, int]] = None

    @property
    def seller_id(self) -> Optional[str]:
        return _optional_id(self.sellerId)


class TemplateUpdate(BaseModel):
    title: Optional[str] = None
    text: Optional[str] = None
    scope: Optional[str] = None
    sellerId: Optional[Union[str, int]] = None
    mediaUrls: Optional[list[str]] = None

    def to_changes(self) -> TemplateChanges:
        return TemplateChanges(
            title=self.title,
            text=self.text,
            scope=self.scope,
            seller_id=_optional_id(self.sellerId),
            media_urls=self.mediaUrls,
        )
