"""Delivery queue: priority-ordered, single-flight alert presentation.

One worker task per queue pops the most urgent pending alert, hands it to the
presentation sink and waits for it to finish before touching the next one,
so two alerts are never on screen at once. Lower priority numbers go first;
equal priorities keep enqueue order.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from shared.models.alert import DEFAULT_PRIORITY, AlertStatus, QueuedAlert
from shared.models.common import utcnow
from shared.models.template import RenderedAlert
from shared.repositories.alert_queue import AlertQueueRepository

LOGGER = logging.getLogger("AlertQueue")

PresentationSink = Callable[[QueuedAlert], Awaitable[None]]
CompletionHook = Callable[[QueuedAlert], Any]


class DeliveryQueue:
    """Serializes alert presentation through a single worker task."""

    def __init__(
        self,
        repo: AlertQueueRepository,
        present: PresentationSink,
        *,
        min_delay: float = 0.5,
        history_limit: int = 100,
        on_complete: CompletionHook | None = None,
    ) -> None:
        self.repo = repo
        self._present = present
        self.min_delay = min_delay
        self.history_limit = history_limit
        self._on_complete = on_complete

        self._pending: list[QueuedAlert] = []
        self._current: QueuedAlert | None = None
        self._paused = False
        self._wakeup = asyncio.Event()
        self._worker: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Spawn the worker task (idempotent). Needs a running event loop."""
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="alert-queue-worker")
            if self._pending and not self._paused:
                self._wakeup.set()

    async def stop(self) -> None:
        """Cancel the worker. An in-flight presentation is cancelled with it."""
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

    async def restore(self) -> int:
        """Reload persisted records after a restart.

        Pending records are re-queued; records caught mid-presentation are
        retired to history as failed. Returns the number re-queued.
        """
        restored = 0
        known = {a.id for a in self._pending}
        for alert in await self.repo.list_pending():
            if alert.id in known:
                continue
            if alert.status == AlertStatus.PENDING:
                self._pending.append(alert)
                restored += 1
            else:
                alert.status = AlertStatus.FAILED
                alert.error = alert.error or "Interrupted by restart"
                alert.completed_at = utcnow()
                await self.repo.move_to_history(alert)
        self._pending.sort(key=lambda a: a.priority)
        if restored:
            LOGGER.info(f"Restored {restored} pending alert(s)")
            self._kick()
        return restored

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        event_type: str,
        payload: RenderedAlert,
        *,
        template_id: str | None = None,
        priority: int | None = None,
        data: dict | None = None,
    ) -> str:
        """Queue an alert and return its id without waiting for presentation."""
        alert = QueuedAlert(
            event_type=event_type,
            payload=payload,
            template_id=template_id,
            priority=DEFAULT_PRIORITY if priority is None else priority,
            data=dict(data or {}),
        )
        await self.repo.save_pending(alert)
        self._pending.append(alert)
        # list.sort is stable: equal priorities keep their enqueue order
        self._pending.sort(key=lambda a: a.priority)
        LOGGER.info(
            f"Alert queued: {alert.id} ({event_type}, priority={alert.priority}, "
            f"queue={len(self._pending)})"
        )
        self._kick()
        return alert.id

    async def clear(self) -> int:
        """Drop every pending alert. The in-flight one is left alone."""
        dropped, self._pending = self._pending, []
        for alert in dropped:
            await self.repo.delete_pending(alert.id)
        LOGGER.info(f"Alert queue cleared ({len(dropped)} removed)")
        return len(dropped)

    def pause(self) -> None:
        self._paused = True
        self._wakeup.clear()
        LOGGER.info("Alert queue paused")

    def resume(self) -> None:
        self._paused = False
        LOGGER.info(f"Alert queue resumed ({len(self._pending)} pending)")
        self._kick()

    def get_status(self) -> dict[str, Any]:
        return {
            "queue_length": len(self._pending),
            "processing": self._current is not None,
            "paused": self._paused,
        }

    @property
    def current(self) -> QueuedAlert | None:
        return self._current

    @property
    def pending(self) -> list[QueuedAlert]:
        """Snapshot of the pending list in presentation order."""
        return list(self._pending)

    async def get_history(self, limit: int | None = None) -> list[QueuedAlert]:
        return await self.repo.get_history(limit)

    async def wait_idle(self) -> None:
        """Wait until nothing is pending or in flight (or the queue is paused)."""
        while (self._pending and not self._paused) or self._current is not None:
            await asyncio.sleep(0.01)

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _kick(self) -> None:
        if self._paused or not self._pending:
            return
        self.start()
        self._wakeup.set()

    async def _run(self) -> None:
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            while self._pending and not self._paused:
                alert = self._pending.pop(0)
                await self._process(alert)
                if self._pending and not self._paused and self.min_delay > 0:
                    await asyncio.sleep(self.min_delay)

    async def _process(self, alert: QueuedAlert) -> None:
        self._current = alert
        try:
            alert.status = AlertStatus.PROCESSING
            alert.started_at = utcnow()
            await self._persist(alert)
            LOGGER.info(f"Presenting alert {alert.id} ({alert.event_type})")

            try:
                await self._present(alert)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                alert.status = AlertStatus.FAILED
                alert.error = str(e) or type(e).__name__
                LOGGER.error(f"Alert {alert.id} failed to present: {alert.error}")
            else:
                alert.status = AlertStatus.COMPLETED
            alert.completed_at = utcnow()

            await self._retire(alert)
            if alert.status == AlertStatus.COMPLETED and self._on_complete is not None:
                try:
                    self._on_complete(alert)
                except Exception as e:
                    LOGGER.warning(f"Completion hook failed for {alert.id}: {e}")
        finally:
            self._current = None

    async def _persist(self, alert: QueuedAlert) -> None:
        try:
            await self.repo.save_pending(alert)
        except Exception as e:
            LOGGER.warning(f"Failed to persist alert {alert.id} ({alert.status}): {e}")

    async def _retire(self, alert: QueuedAlert) -> None:
        try:
            await self.repo.move_to_history(alert)
            if self.history_limit:
                await self.repo.prune_history(self.history_limit)
        except Exception as e:
            LOGGER.warning(f"Failed to record alert {alert.id} in history: {e}")
