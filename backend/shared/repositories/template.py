"""Repository for alert template records (``template:<id>``)."""

from __future__ import annotations

import logging

from shared.cache import AsyncTTLCache, cached
from shared.models.template import AlertTemplate
from shared.store import PersistenceStore

logger = logging.getLogger(__name__)

PREFIX = "template:"


class TemplateRepository:
    """Template records over a key/value store."""

    def __init__(self, store: PersistenceStore, *, cache_ttl: float = 3600) -> None:
        self.store = store
        # Bot-side lookups at event time: long TTL, invalidated on every write.
        self._event_cache = AsyncTTLCache(maxsize=64, ttl=cache_ttl)

    async def get(self, template_id: str) -> AlertTemplate | None:
        raw = await self.store.get(PREFIX + template_id)
        return AlertTemplate.from_dict(raw) if raw else None

    async def list_all(self) -> list[AlertTemplate]:
        keys = await self.store.keys_with_prefix(PREFIX)
        templates = []
        for key in keys:
            raw = await self.store.get(key)
            if raw:
                templates.append(AlertTemplate.from_dict(raw))
        return templates

    @cached("_event_cache", key_func=lambda self, event_type: f"templates:{event_type}")
    async def list_enabled_for_event(self, event_type: str) -> list[AlertTemplate]:
        """Enabled templates for one event type (cached)."""
        return [t for t in await self.list_all() if t.event_type == event_type and t.enabled]

    async def count(self) -> int:
        return len(await self.store.keys_with_prefix(PREFIX))

    async def save(self, template: AlertTemplate) -> AlertTemplate:
        previous = await self.store.get(PREFIX + template.id)
        await self.store.set(PREFIX + template.id, template.to_dict())
        self._event_cache.invalidate(f"templates:{template.event_type}")
        if previous and previous.get("event_type") != template.event_type:
            self._event_cache.invalidate(f"templates:{previous['event_type']}")
        return template

    async def delete(self, template_id: str) -> bool:
        raw = await self.store.get(PREFIX + template_id)
        deleted = await self.store.delete(PREFIX + template_id)
        if raw:
            self._event_cache.invalidate(f"templates:{raw['event_type']}")
        return deleted
