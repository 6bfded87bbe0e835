import mimetypes
import re
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

import httpx

from social_inbox.config import settings
from social_inbox.logging_config import get_logger
from social_inbox.services.errors import ValidationError

logger = get_logger("media_service")

UPLOADS_PREFIX = "/uploads/"
UPLOAD_CHUNK_BYTES = 1024 * 1024
MAX_UPLOAD_FILES = 10

_VIDEO_EXT = re.compile(r"\.(mp4|mov|webm|avi|mkv|m4v)$", re.IGNORECASE)
_IMAGE_EXT = re.compile(r"\.(png|jpe?g|gif|webp)$", re.IGNORECASE)


@dataclass(frozen=True)
class StoredFile:
    path: Path
    public_path: str
    filename: str
    mime: str
    kind: str


def is_http_url(value: str | None) -> bool:
    try:
        parsed = urlparse(value or "")
    except ValueError:
        return False
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def upload_root(upload_dir: str | None = None) -> Path:
    root = Path(upload_dir or settings.upload_dir).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def guess_extension(mime: str | None, file_name: str | None) -> str:
    if file_name:
        suffix = Path(urlparse(file_name).path).suffix
        if suffix and len(suffix) <= 6:
            return suffix.lower()
    if mime:
        ext = mimetypes.guess_extension(mime.split(";")[0].strip())
        if ext:
            return ext
    return ""


def guess_mime(file_name: str) -> str:
    mime, _ = mimetypes.guess_type(urlparse(file_name).path)
    return mime or ""


def attachment_kind(file_name: str, mime: str | None = None) -> str:
    """Messenger attachment type for a file: image, video or file."""
    m = (mime or "").lower()
    if m.startswith("video/") or _VIDEO_EXT.search(file_name or ""):
        return "video"
    if m.startswith("image/") or _IMAGE_EXT.search(file_name or ""):
        return "image"
    return "file"


def _new_filename(ext: str) -> str:
    return f"{int(time.time() * 1000)}-{secrets.token_hex(6)}{ext}"


def resolve_upload(name: str, upload_dir: str | None = None) -> Path | None:
    """Absolute path of a stored upload, or None when it escapes the upload dir or does not exist."""
    normalized = (name or "").strip()
    if normalized.startswith(UPLOADS_PREFIX):
        normalized = normalized[len(UPLOADS_PREFIX):]
    normalized = normalized.lstrip("/")
    if not normalized:
        return None

    base_dir = upload_root(upload_dir)
    target = (base_dir / normalized).resolve()
    if base_dir not in target.parents:
        return None
    if not target.is_file():
        return None
    return target


def public_url(public_path: str, base_url: str | None = None) -> str:
    if is_http_url(public_path):
        return public_path
    base = (base_url if base_url is not None else settings.public_base_url).rstrip("/")
    return f"{base}{public_path}" if base else public_path


async def download_to_uploads(
    remote_url: str,
    upload_dir: str | None = None,
    max_bytes: int | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str | None:
    """Copy a CDN attachment into owned storage. Returns '/uploads/<name>' or None on any failure."""
    if not is_http_url(remote_url):
        return None

    limit = max_bytes or settings.media_max_bytes
    root = upload_root(upload_dir)
    target_path = None
    size_bytes = 0
    try:
        async with httpx.AsyncClient(timeout=20.0, follow_redirects=True, transport=transport) as client:
            async with client.stream("GET", remote_url, headers={"User-Agent": "Mozilla/5.0"}) as response:
                response.raise_for_status()
                content_type = response.headers.get("content-type", "")
                ext = guess_extension(content_type, None) or guess_extension(None, remote_url) or ".jpg"
                target_path = root / _new_filename(ext)
                with target_path.open("wb") as handle:
                    async for chunk in response.aiter_bytes():
                        if not chunk:
                            continue
                        size_bytes += len(chunk)
                        if size_bytes > limit:
                            raise ValueError("media too large")
                        handle.write(chunk)
    except (httpx.HTTPError, OSError, ValueError) as e:
        if target_path is not None and target_path.exists():
            target_path.unlink()
        logger.warning("Media download failed", extra={"context": {"url": remote_url, "error": str(e)}})
        return None

    return f"{UPLOADS_PREFIX}{target_path.name}"


async def normalize_media_urls(urls: list[str], upload_dir: str | None = None) -> list[str]:
    """Self-host each inbound attachment, keeping the original URL when the copy fails."""
    normalized = []
    for url in urls:
        local = await download_to_uploads(url, upload_dir=upload_dir)
        normalized.append(local or url)
    return normalized


async def save_upload(upload, upload_dir: str | None = None, max_bytes: int | None = None) -> StoredFile:
    """Stream a multipart UploadFile to the upload dir, refusing files over the size cap."""
    original = upload.filename or "upload"
    mime = upload.content_type or guess_mime(original)
    ext = guess_extension(mime, original) or ".bin"
    filename = _new_filename(ext)
    target_path = upload_root(upload_dir) / filename

    limit = max_bytes or settings.media_max_bytes
    size_bytes = 0
    try:
        with target_path.open("wb") as handle:
            while True:
                chunk = await upload.read(UPLOAD_CHUNK_BYTES)
                if not chunk:
                    break
                size_bytes += len(chunk)
                if size_bytes > limit:
                    raise ValidationError(f"File too large: {original}")
                handle.write(chunk)
    except Exception:
        target_path.unlink(missing_ok=True)
        raise

    return StoredFile(
        path=target_path,
        public_path=f"{UPLOADS_PREFIX}{filename}",
        filename=original,
        mime=mime,
        kind=attachment_kind(original, mime),
    )


def collect_uploads(files: list | None, file=None) -> list:
    """Merge the `files` list and the single `file` field of a multipart form; at most 10 + 1."""
    uploads = [upload for upload in files or [] if upload is not None and upload.filename]
    if len(uploads) > MAX_UPLOAD_FILES:
        raise ValidationError(f"Too many files (max {MAX_UPLOAD_FILES})")
    if file is not None and file.filename:
        uploads.append(file)
    return uploads


async def save_uploads(uploads: list, upload_dir: str | None = None) -> list[StoredFile]:
    """Store every upload or none: a rejected file removes the ones already written."""
    stored: list[StoredFile] = []
    try:
        for upload in uploads:
            stored.append(await save_upload(upload, upload_dir=upload_dir))
    except Exception:
        for item in stored:
            item.path.unlink(missing_ok=True)
        raise
    return stored
