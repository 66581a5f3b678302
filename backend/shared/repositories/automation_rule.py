"""Repository for automation rule records (``automation_rule:<id>``)."""

from __future__ import annotations

from shared.models.automation import AutomationRule
from shared.store import PersistenceStore

PREFIX = "automation_rule:"


class AutomationRuleRepository:
    def __init__(self, store: PersistenceStore) -> None:
        self.store = store

    async def list_all(self) -> list[AutomationRule]:
        rules = []
        for key in await self.store.keys_with_prefix(PREFIX):
            raw = await self.store.get(key)
            if raw:
                rules.append(AutomationRule.from_dict(raw))
        rules.sort(key=lambda r: r.created_at)
        return rules

    async def save(self, rule: AutomationRule) -> None:
        await self.store.set(PREFIX + rule.id, rule.to_dict())

    async def delete(self, rule_id: str) -> bool:
        return await self.store.delete(PREFIX + rule_id)
