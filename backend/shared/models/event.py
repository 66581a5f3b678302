"""Data model for upstream platform events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any

from .common import dt_to_str, new_id, utcnow


@dataclass(frozen=True)
class StreamEvent:
    """Immutable notification from an upstream platform.

    ``data`` carries the platform payload fields (username, display_name,
    amount, bits, viewers, months, tier, count, message, ...). It is exposed
    as a read-only mapping so handlers cannot mutate the shared event.
    """

    type: str
    platform: str = "unknown"
    data: Any = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: new_id("evt"))

    def __post_init__(self) -> None:
        object.__setattr__(self, "data", MappingProxyType(dict(self.data or {})))

    @classmethod
    def from_payload(cls, event_type: str, payload: Any) -> StreamEvent:
        """Build an event from an emitted payload (dict or existing event)."""
        if isinstance(payload, StreamEvent):
            return payload
        payload = dict(payload or {})
        platform = payload.pop("platform", "unknown")
        return cls(type=event_type, platform=platform, data=payload)

    def get(self, name: str, default: Any = None) -> Any:
        """Look up a payload field, falling back to the top-level attributes."""
        if name in self.data:
            return self.data[name]
        if name in ("type", "platform", "id"):
            return getattr(self, name)
        return default

    @property
    def username(self) -> str | None:
        return self.data.get("username")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "platform": self.platform,
            "data": dict(self.data),
            "timestamp": dt_to_str(self.timestamp),
        }
