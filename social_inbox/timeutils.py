from datetime import datetime, timezone

# Watermark used when a read marker has never been set.
EPOCH = datetime(1970, 1, 1)


def utc_now() -> datetime:
    """Naive UTC now; every stored timestamp uses this representation."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_epoch_millis(value) -> datetime | None:
    """Convert a platform watermark (epoch milliseconds) to naive UTC."""
    try:
        millis = float(value)
    except (TypeError, ValueError):
        return None
    if millis != millis or millis <= 0:
        return None
    try:
        return datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc).replace(tzinfo=None)
    except (OverflowError, OSError, ValueError):
        return None


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat().replace("+00:00", "Z")
