"""Overlay presentation sink"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from shared.errors import PresentationError
from shared.models.alert import QueuedAlert
from shared.store import PersistenceStore

LOGGER = logging.getLogger("Overlay")

CURRENT_KEY = "overlay:current"


class OverlayPresenter:
    """Publishes one alert at a time as the overlay's current alert.

    The browser source polls ``/overlay/current``; the presenter holds each
    alert for its duration and then clears it, which is what makes the
    delivery queue's await meaningful.
    """

    def __init__(
        self,
        store: PersistenceStore | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self._sleep = sleep
        self._current: QueuedAlert | None = None
        self.presented_total = 0

    @property
    def current(self) -> QueuedAlert | None:
        return self._current

    def current_payload(self) -> dict | None:
        """Rendered payload of the alert on screen, for the overlay client."""
        if self._current is None:
            return None
        return {
            "id": self._current.id,
            "event_type": self._current.event_type,
            **self._current.payload.to_dict(),
        }

    async def __call__(self, alert: QueuedAlert) -> None:
        self._current = alert
        try:
            await self._publish(self.current_payload())
            LOGGER.info(f"[{alert.event_type}] Showing {alert.id} for {alert.payload.duration}ms")
            await self._sleep(max(alert.payload.duration, 0) / 1000)
            self.presented_total += 1
        finally:
            self._current = None
            try:
                await self._publish(None)
            except PresentationError as e:
                LOGGER.warning(f"Could not clear overlay after {alert.id}: {e}")

    async def _publish(self, payload: dict | None) -> None:
        if self.store is None:
            return
        try:
            if payload is None:
                await self.store.delete(CURRENT_KEY)
            else:
                await self.store.set(CURRENT_KEY, payload)
        except Exception as e:
            raise PresentationError(f"Overlay publish failed: {type(e).__name__}: {e}") from e
