import re
import secrets
from datetime import datetime, timedelta, UTC
from typing import Optional

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def make_id(nbytes: int = 16) -> str:
    """Generate a random hex identifier (32 chars for the default 16 bytes)."""
    return secrets.token_hex(nbytes)


def now_utc() -> datetime:
    return datetime.now(UTC)


def time_now() -> str:
    """Return the current time in ISO format (UTC, millisecond precision)."""
    return to_iso(now_utc())


def to_iso(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="milliseconds")


def expires_in(seconds: int) -> str:
    return to_iso(now_utc() + timedelta(seconds=seconds))


def is_expired(iso_value: str) -> bool:
    try:
        expires_at = datetime.fromisoformat(iso_value)
    except (TypeError, ValueError):
        return False
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=UTC)
    return expires_at <= now_utc()


def parse_due_date(value) -> Optional[str]:
    """Parse a ``YYYY-MM-DD`` date into an ISO timestamp at UTC midnight.

    Empty values clear the date and return ``None``. Anything else that is not
    a real calendar date raises ``ValueError``.
    """
    text = str(value or "").strip()
    if not text:
        return None
    if not _DATE_ONLY.match(text):
        raise ValueError(f"not a date: {text!r}")
    day = datetime.strptime(text, "%Y-%m-%d").replace(tzinfo=UTC)
    return to_iso(day)
