import threading
import time

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from social_inbox.config import Settings, settings
from social_inbox.logging_config import get_logger
from social_inbox.models import ApiIntegration

logger = get_logger("page_token_cache")


class PageTokenCache:
    """
    Page id -> access token, loaded from active api_integrations rows.

    Reads are synchronous so the webhook hot path never touches the database
    for credentials. Environment tokens are consulted when the cache misses.
    """

    def __init__(self, config: Settings | None = None):
        self._config = config or settings
        self._tokens: dict[str, str] = {}
        self._platforms: dict[str, str] = {}
        self._loaded_at: float = 0.0
        self._lock = threading.Lock()

    def refresh(self, db: Session) -> int:
        try:
            rows = db.execute(
                select(ApiIntegration.platform, ApiIntegration.page_id, ApiIntegration.page_token).where(
                    ApiIntegration.is_active.is_(True)
                )
            ).all()
        except SQLAlchemyError as e:
            # Keep serving the previous map; callers fall back to env tokens.
            logger.warning("Page token refresh failed", extra={"context": {"error": str(e)}})
            return len(self._tokens)

        tokens: dict[str, str] = {}
        platforms: dict[str, str] = {}
        for row in rows:
            page_id = str(row.page_id or "").strip()
            token = str(row.page_token or "").strip()
            if page_id and token:
                tokens[page_id] = token
                platforms[page_id] = row.platform

        with self._lock:
            self._tokens = tokens
            self._platforms = platforms
            self._loaded_at = time.time()

        logger.info("Page tokens loaded", extra={"context": {"count": len(tokens)}})
        return len(tokens)

    def get(self, page_id: str) -> str:
        pid = str(page_id or "").strip()
        if not pid:
            return ""
        cached = self._tokens.get(pid)
        if cached:
            return cached
        return self._config.env_page_tokens().get(pid, "")

    def is_instagram_page(self, page_id: str) -> bool:
        pid = str(page_id or "").strip()
        if not pid:
            return False
        if self._platforms.get(pid) == "instagram":
            return True
        ig_id = self._config.ig_business_id.strip()
        return bool(ig_id) and pid == ig_id

    def platform_for(self, page_id: str) -> str:
        return "instagram" if self.is_instagram_page(page_id) else "facebook"

    def meta(self) -> dict:
        return {"loaded_at": self._loaded_at, "count": len(self._tokens)}
