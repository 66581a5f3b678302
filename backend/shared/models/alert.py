"""Data model for queued and historical alerts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from .common import dt_to_str, new_id, str_to_dt, utcnow
from .template import RenderedAlert

DEFAULT_PRIORITY = 5


class AlertStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class QueuedAlert:
    """Alert waiting in (or retired from) the delivery queue."""

    event_type: str
    payload: RenderedAlert
    id: str = field(default_factory=lambda: new_id("alert"))
    template_id: str | None = None
    priority: int = DEFAULT_PRIORITY  # lower = more urgent
    status: AlertStatus = AlertStatus.PENDING
    data: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> QueuedAlert:
        return cls(
            id=d["id"],
            event_type=d["event_type"],
            payload=RenderedAlert.from_dict(d.get("payload") or {"html": "", "css": ""}),
            template_id=d.get("template_id"),
            priority=d.get("priority", DEFAULT_PRIORITY),
            status=AlertStatus(d.get("status", AlertStatus.PENDING)),
            data=d.get("data") or {},
            created_at=str_to_dt(d.get("created_at")) or utcnow(),
            started_at=str_to_dt(d.get("started_at")),
            completed_at=str_to_dt(d.get("completed_at")),
            error=d.get("error"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "template_id": self.template_id,
            "payload": self.payload.to_dict(),
            "priority": self.priority,
            "status": str(self.status),
            "data": self.data,
            "created_at": dt_to_str(self.created_at),
            "started_at": dt_to_str(self.started_at),
            "completed_at": dt_to_str(self.completed_at),
            "error": self.error,
        }
