"""Data models for automation rules and their actions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .common import dt_to_str, new_id, snake_case, str_to_dt, utcnow


@dataclass
class Action:
    """One step of a rule: a type tag plus a type-specific parameter bag."""

    type: str
    params: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: dict) -> Action:
        """Accept both ``{"type": ..., "params": {...}}`` and flat dicts.

        Parameter keys may be camelCase (``sceneName``) or snake_case.
        """
        params = dict(d.get("params") or {})
        params.update({k: v for k, v in d.items() if k not in ("type", "params")})
        params = {snake_case(k): v for k, v in params.items()}
        return cls(type=d["type"], params=params)

    def to_dict(self) -> dict:
        return {"type": self.type, "params": dict(self.params)}


@dataclass
class AutomationRule:
    """Automation rule record."""

    event_type: str
    actions: list[Action]
    id: str = field(default_factory=lambda: new_id("rule"))
    name: str | None = None
    conditions: dict[str, Any] | None = None
    enabled: bool = True
    stop_on_error: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_dict(cls, d: dict) -> AutomationRule:
        rule = cls(
            event_type=d["event_type"],
            actions=[a if isinstance(a, Action) else Action.from_dict(a) for a in d["actions"]],
            name=d.get("name"),
            conditions=d.get("conditions"),
            enabled=d.get("enabled", True) is not False,
            stop_on_error=bool(d.get("stop_on_error", False)),
        )
        if d.get("id"):
            rule.id = d["id"]
        if d.get("created_at"):
            rule.created_at = str_to_dt(d["created_at"])  # type: ignore[assignment]
        return rule

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "event_type": self.event_type,
            "conditions": self.conditions,
            "actions": [a.to_dict() for a in self.actions],
            "enabled": self.enabled,
            "stop_on_error": self.stop_on_error,
            "created_at": dt_to_str(self.created_at),
        }
