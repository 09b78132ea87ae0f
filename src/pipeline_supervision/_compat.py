from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from typing_extensions import Self, assert_never

UTC = timezone.utc


class StrEnum(str, Enum):  # noqa: UP042
    """Python 3.10-compatible StrEnum."""

    pass


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def parse_iso8601(value: str) -> datetime | None:
    txt = (value or "").strip()
    if not txt:
        return None
    if txt.endswith("Z"):
        txt = txt[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(txt)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


__all__ = ["Self", "UTC", "StrEnum", "assert_never", "parse_iso8601", "utc_now_iso"]
