"""Repository for live queue records (``alert_queue:<id>``) and history
(``alert_history:<id>``)."""

from __future__ import annotations

import logging

from shared.models.alert import QueuedAlert
from shared.store import PersistenceStore

logger = logging.getLogger(__name__)

QUEUE_PREFIX = "alert_queue:"
HISTORY_PREFIX = "alert_history:"


class AlertQueueRepository:
    def __init__(self, store: PersistenceStore) -> None:
        self.store = store

    async def save_pending(self, alert: QueuedAlert) -> None:
        await self.store.set(QUEUE_PREFIX + alert.id, alert.to_dict())

    async def delete_pending(self, alert_id: str) -> bool:
        return await self.store.delete(QUEUE_PREFIX + alert_id)

    async def list_pending(self) -> list[QueuedAlert]:
        """All persisted live records, oldest first."""
        alerts = []
        for key in await self.store.keys_with_prefix(QUEUE_PREFIX):
            raw = await self.store.get(key)
            if raw:
                alerts.append(QueuedAlert.from_dict(raw))
        alerts.sort(key=lambda a: a.created_at)
        return alerts

    async def move_to_history(self, alert: QueuedAlert) -> None:
        """Write the terminal record to history, then drop the live record."""
        await self.store.set(HISTORY_PREFIX + alert.id, alert.to_dict())
        await self.store.delete(QUEUE_PREFIX + alert.id)

    async def get_history(self, limit: int | None = None) -> list[QueuedAlert]:
        """History records, newest first."""
        alerts = []
        for key in await self.store.keys_with_prefix(HISTORY_PREFIX):
            raw = await self.store.get(key)
            if raw:
                alerts.append(QueuedAlert.from_dict(raw))
        alerts.sort(key=lambda a: a.completed_at or a.created_at, reverse=True)
        return alerts[:limit] if limit is not None else alerts

    async def get_history_item(self, alert_id: str) -> QueuedAlert | None:
        raw = await self.store.get(HISTORY_PREFIX + alert_id)
        return QueuedAlert.from_dict(raw) if raw else None

    async def prune_history(self, keep: int) -> int:
        """Delete all but the newest *keep* history records. Returns count removed."""
        history = await self.get_history()
        removed = 0
        for alert in history[keep:]:
            if await self.store.delete(HISTORY_PREFIX + alert.id):
                removed += 1
        if removed:
            logger.debug(f"Pruned {removed} alert history record(s)")
        return removed
