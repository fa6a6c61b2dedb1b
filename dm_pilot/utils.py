"""
Small helpers shared by the pipeline: text sanitizing, thread ids, time.
"""

import re
from datetime import datetime, timezone
from typing import Any, Optional

_CONTROL_CHARS = re.compile(r"[\x00-\x1F\x7F]")
_ANGLE_BRACKETS = re.compile(r"[<>]")
_COMPACT_OFFSET = re.compile(r"([+-]\d{2})(\d{2})$")


def sanitize_text(text: Optional[str]) -> str:
    """Strip control characters and angle brackets, then surrounding whitespace."""
    if not text:
        return ""
    text = _CONTROL_CHARS.sub("", text)
    text = _ANGLE_BRACKETS.sub("", text)
    return text.strip()


def dm_thread_id(account_id: str, participant_id: str) -> str:
    return f"{account_id}:{participant_id}"


def comment_thread_id(account_id: str, comment_id: str) -> str:
    return f"{account_id}:comment:{comment_id}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a stored or platform timestamp into an aware UTC datetime.

    Accepts datetimes, epoch seconds, ISO strings with `Z`, and the
    platform's compact `+0000` offsets. Returns None for anything else.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str):
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        raw = _COMPACT_OFFSET.sub(r"\1:\2", raw)
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
