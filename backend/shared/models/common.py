"""Helpers shared by the record dataclasses."""

from __future__ import annotations

import re
import uuid
from datetime import UTC, datetime

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id(prefix: str) -> str:
    """Opaque record id, e.g. ``tpl_3f9c0a1b2d4e``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def snake_case(key: str) -> str:
    """``minViewers`` → ``min_viewers``; snake_case keys pass through."""
    return _CAMEL_RE.sub("_", key).lower()


def dt_to_str(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def str_to_dt(value: str | datetime | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)
