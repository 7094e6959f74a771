"""Utility helpers shared across modules."""

from __future__ import annotations

from datetime import UTC, datetime
from hashlib import sha256


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def parse_iso_datetime(value: str) -> datetime:
    """Convert ISO strings (with trailing Z) into aware UTC datetimes."""
    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def from_epoch_ms(value: str | int | None) -> datetime | None:
    """Gmail ``internalDate`` is epoch milliseconds, usually as a string."""
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=UTC)


def ensure_utc(dt: datetime) -> datetime:
    """Force a datetime into UTC without altering instant."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def isoformat_utc(dt: datetime) -> str:
    """Return an ISO string that Graph filters and the datastore accept."""
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")


def sha256_hex(payload: bytes | str) -> str:
    """Convenience wrapper for hex digests."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return sha256(payload).hexdigest()
