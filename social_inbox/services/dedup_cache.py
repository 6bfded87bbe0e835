import json
import threading
import time
from typing import Callable, Protocol

from social_inbox.logging_config import get_logger

logger = get_logger("dedup_cache")

DEFAULT_WINDOW_SECONDS = 5 * 60


class DedupStore(Protocol):
    """Idempotency port for webhook deliveries; True means the key was already seen."""

    def check_and_mark(self, key: str) -> bool: ...


class DedupCache:
    """
    Bounded, time-windowed set of webhook idempotency keys.

    Best effort and process local: a restart or a second instance forgets
    everything, which is acceptable because platform retries arrive within
    minutes. Swap for a shared cache before running more than one instance.
    """

    def __init__(
        self,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        high_water: int = 5000,
        hard_limit: int = 6000,
        evict_batch: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self.high_water = high_water
        self.hard_limit = hard_limit
        self.evict_batch = evict_batch
        self._clock = clock
        self._seen: dict[str, float] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._seen)

    def check_and_mark(self, key: str) -> bool:
        """Return True when key was seen inside the window; otherwise record it and return False."""
        if not key:
            return False

        with self._lock:
            now = self._clock()
            previous = self._seen.get(key)
            if previous is not None and now - previous < self.window_seconds:
                return True

            self._seen[key] = now
            if len(self._seen) > self.high_water:
                self._evict(now)
            return False

    def clear(self) -> None:
        with self._lock:
            self._seen.clear()

    def _evict(self, now: float) -> None:
        expired = [k for k, seen_at in self._seen.items() if now - seen_at >= self.window_seconds]
        for k in expired:
            del self._seen[k]

        dropped = 0
        if len(self._seen) > self.hard_limit:
            oldest = sorted(self._seen.items(), key=lambda item: item[1])[: self.evict_batch]
            for k, _ in oldest:
                del self._seen[k]
            dropped = len(oldest)

        logger.info(
            "Dedup cache evicted",
            extra={"context": {"expired": len(expired), "dropped": dropped, "size": len(self._seen)}},
        )


def facebook_message_key(page_id: str, mid: str | None) -> str:
    if not mid:
        return ""
    return f"fb:{page_id}:{mid}"


def instagram_message_key(
    page_id: str,
    message_id: str | None,
    sender_id: str,
    text: str | None,
    attachments: list | None,
) -> str:
    """Stable id when present, otherwise a content fingerprint of sender, body and attachments."""
    if message_id:
        return f"igmid:{page_id}:{message_id}"
    fingerprint = json.dumps(attachments or [], sort_keys=True, ensure_ascii=False, default=str)
    return f"ig:{page_id}:{sender_id}:{text or ''}:{fingerprint}"
