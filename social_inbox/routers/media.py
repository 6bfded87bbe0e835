from fastapi import APIRouter, HTTPException, status
from fastapi.responses import FileResponse

from social_inbox.config import settings
from social_inbox.services import media_service

router = APIRouter()


@router.get("/uploads/{filename}")
async def serve_upload(filename: str):
    """Serve a self-hosted attachment."""
    target_path = media_service.resolve_upload(filename, settings.upload_dir)
    if target_path is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Media not found")
    return FileResponse(target_path)
