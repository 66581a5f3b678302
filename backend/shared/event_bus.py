"""Event bridge interface and the in-process bus implementation.

Handlers are registered per event type and receive the ``StreamEvent`` as
their only argument; any extra context is bound explicitly by the caller
(e.g. ``functools.partial(engine.execute_rule, rule_id)``).

Each handler runs in its own task, so a slow or failing handler never blocks
or observes the others.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable, Coroutine
from typing import Any, Protocol

from shared.models.event import StreamEvent

LOGGER = logging.getLogger("EventBus")

Handler = Callable[[StreamEvent], Coroutine[Any, Any, Any]]


class Subscription:
    """Disposer returned by ``subscribe``; calling ``dispose`` is idempotent."""

    def __init__(self, bridge: EventBridge, event_type: str, handler: Handler) -> None:
        self.bridge = bridge
        self.event_type = event_type
        self.handler = handler
        self.active = True

    def dispose(self) -> None:
        if self.active:
            self.bridge.unsubscribe(self.event_type, self.handler)
            self.active = False


class EventBridge(Protocol):
    def subscribe(self, event_type: str, handler: Handler) -> Subscription: ...

    def unsubscribe(self, event_type: str, handler: Handler) -> bool: ...

    async def emit(self, event_type: str, payload: Any) -> list[asyncio.Task]: ...


class EventBus:
    """In-process publish/subscribe bridge."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, event_type: str, handler: Handler) -> Subscription:
        self._handlers[event_type].append(handler)
        LOGGER.debug(f"Subscribed handler to '{event_type}' ({len(self._handlers[event_type])} total)")
        return Subscription(self, event_type, handler)

    def unsubscribe(self, event_type: str, handler: Handler) -> bool:
        handlers = self._handlers.get(event_type)
        if not handlers or handler not in handlers:
            return False
        handlers.remove(handler)
        if not handlers:
            del self._handlers[event_type]
        return True

    def handler_count(self, event_type: str) -> int:
        return len(self._handlers.get(event_type, ()))

    @property
    def event_types(self) -> list[str]:
        return list(self._handlers)

    async def emit(self, event_type: str, payload: Any = None) -> list[asyncio.Task]:
        """Dispatch an event to every current handler.

        Returns the spawned tasks so callers that need to (tests, the test
        trigger) can await completion. Handlers subscribed after this call do
        not see the event.
        """
        event = StreamEvent.from_payload(event_type, payload)
        handlers = list(self._handlers.get(event_type, ()))
        if not handlers:
            LOGGER.debug(f"No handlers for '{event_type}'")
            return []

        tasks = []
        for handler in handlers:
            task = asyncio.create_task(self._run(handler, event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            tasks.append(task)
        return tasks

    async def drain(self) -> None:
        """Wait for all in-flight handler tasks (used on shutdown)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run(self, handler: Handler, event: StreamEvent) -> None:
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            name = getattr(handler, "__qualname__", None) or repr(handler)
            LOGGER.exception(f"[{event.type}] Handler {name} failed: {e}")
