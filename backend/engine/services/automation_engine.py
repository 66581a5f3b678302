"""Automation engine: event → conditions → ordered control-surface actions.

Each registered rule gets its own bridge subscription, so every rule runs in
its own task and one rule's failure never reaches another rule or the alert
pipeline. Within a rule, actions are awaited strictly in declared order.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from engine.services.control_surface import ControlSurface
from shared.errors import ActionExecutionError, UnknownActionError, ValidationError
from shared.event_bus import EventBridge, Subscription
from shared.models.automation import Action, AutomationRule
from shared.models.common import snake_case
from shared.models.event import StreamEvent

LOGGER = logging.getLogger("Automation")

ACTION_ALIASES = {"wait": "delay"}


def _as_list(value: Any) -> list:
    return list(value) if isinstance(value, (list, tuple, set)) else [value]


@dataclass
class RuleRun:
    """Outcome of one rule invocation."""

    rule_id: str
    matched: bool = False
    executed: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    errors: list[ActionExecutionError] = field(default_factory=list)


def evaluate_conditions(conditions: Mapping[str, Any] | None, event: StreamEvent) -> bool:
    """Return True when every clause in *conditions* holds for *event*.

    Clauses (all must pass):
        platform        str or list of platforms
        min_<field>     event field >= bound (numeric)
        max_<field>     event field <= bound (numeric)
        users           username or list of usernames
        fields          {field: expected} equality checks

    Never raises: malformed clauses, missing fields and unknown keys count as
    a non-match. Adding a clause can only narrow what matches.
    """
    if not conditions:
        return True
    try:
        for raw_key, expected in conditions.items():
            key = snake_case(raw_key)
            if expected is None:
                continue
            if key == "platform":
                if event.platform not in _as_list(expected):
                    return False
            elif key == "users":
                if event.username not in _as_list(expected):
                    return False
            elif key == "fields":
                for name, value in expected.items():
                    if event.get(name) != value:
                        return False
            elif key.startswith(("min_", "max_")):
                actual = event.get(key[4:])
                if actual is None or isinstance(actual, bool):
                    return False
                actual, bound = float(actual), float(expected)
                if key.startswith("min_") and actual < bound:
                    return False
                if key.startswith("max_") and actual > bound:
                    return False
            else:
                LOGGER.debug(f"Unknown condition clause '{raw_key}', treating as non-match")
                return False
    except (AttributeError, TypeError, ValueError) as e:
        LOGGER.debug(f"Malformed conditions {conditions!r}: {e}")
        return False
    return True


class AutomationEngine:
    """Registry of automation rules bound to an event bridge."""

    def __init__(self, bridge: EventBridge, surface: ControlSurface) -> None:
        self.bridge = bridge
        self.surface = surface
        self._rules: dict[str, AutomationRule] = {}
        self._subscriptions: dict[str, Subscription] = {}
        self._actions: dict[str, Callable[[Action, StreamEvent], Awaitable[None]]] = {
            "switch_scene": self._switch_scene,
            "show_source": self._show_source,
            "hide_source": self._hide_source,
            "toggle_source": self._toggle_source,
            "play_media": self._play_media,
            "pause_media": self._pause_media,
            "restart_media": self._restart_media,
            "set_filter_enabled": self._set_filter_enabled,
            "flash_filter": self._flash_filter,
            "start_streaming": self._start_streaming,
            "stop_streaming": self._stop_streaming,
            "start_recording": self._start_recording,
            "stop_recording": self._stop_recording,
            "delay": self._delay,
            "emit_event": self._emit_event,
            "log": self._log,
        }

    @property
    def action_types(self) -> list[str]:
        return sorted(self._actions)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_rule(self, rule: AutomationRule | Mapping[str, Any]) -> str:
        """Validate, store and subscribe a rule. Returns its id."""
        if isinstance(rule, AutomationRule):
            rule = rule.to_dict()
        rule = self._parse(rule)
        if rule.id in self._rules:
            self.unregister_rule(rule.id)

        self._rules[rule.id] = rule
        handler = functools.partial(self.execute_rule, rule.id)
        self._subscriptions[rule.id] = self.bridge.subscribe(rule.event_type, handler)
        LOGGER.info(
            f"Rule registered: {rule.id} ({rule.event_type}, {len(rule.actions)} action(s))"
        )
        return rule.id

    def unregister_rule(self, rule_id: str) -> bool:
        rule = self._rules.pop(rule_id, None)
        subscription = self._subscriptions.pop(rule_id, None)
        if subscription is not None:
            subscription.dispose()
        if rule is None:
            LOGGER.warning(f"Rule not found for unregistration: {rule_id}")
            return False
        LOGGER.info(f"Rule unregistered: {rule_id}")
        return True

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> bool:
        rule = self._rules.get(rule_id)
        if rule is None:
            return False
        rule.enabled = enabled
        LOGGER.info(f"Rule {rule_id} {'enabled' if enabled else 'disabled'}")
        return True

    def get_rule(self, rule_id: str) -> AutomationRule | None:
        return self._rules.get(rule_id)

    def list_rules(self) -> list[AutomationRule]:
        return list(self._rules.values())

    def cleanup(self) -> None:
        count = len(self._rules)
        for rule_id in list(self._rules):
            self.unregister_rule(rule_id)
        LOGGER.info(f"Automation engine cleaned up ({count} rule(s))")

    @staticmethod
    def _parse(data: Mapping[str, Any]) -> AutomationRule:
        event_type = data.get("event_type") or data.get("eventType")
        actions = data.get("actions")
        if not isinstance(event_type, str) or not event_type.strip():
            raise ValidationError("Rule must have an event_type")
        if not isinstance(actions, list):
            raise ValidationError("Rule must have an actions list")
        for index, action in enumerate(actions):
            if not isinstance(action, (Mapping, Action)):
                raise ValidationError(f"Action {index} must be a mapping")
            if isinstance(action, Mapping) and not isinstance(action.get("type"), str):
                raise ValidationError(f"Action {index} is missing its 'type'")
        conditions = data.get("conditions")
        if conditions is not None and not isinstance(conditions, Mapping):
            raise ValidationError("Rule conditions must be a mapping")

        stop_on_error = data.get("stop_on_error", data.get("stopOnError", False))
        return AutomationRule.from_dict(
            {
                **data,
                "event_type": event_type,
                "actions": [dict(a) if isinstance(a, Mapping) else a for a in actions],
                "conditions": dict(conditions) if conditions is not None else None,
                "stop_on_error": stop_on_error,
            }
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_rule(self, rule_id: str, event: StreamEvent) -> RuleRun:
        """Run one rule against one event. Never raises."""
        run = RuleRun(rule_id)
        rule = self._rules.get(rule_id)
        if rule is None or not rule.enabled:
            return run

        if not evaluate_conditions(rule.conditions, event):
            LOGGER.debug(f"[{rule_id}] Conditions not met for {event.type}")
            return run

        run.matched = True
        LOGGER.info(f"[{rule_id}] Executing {len(rule.actions)} action(s) for {event.type}")
        actions = list(rule.actions)
        for index, action in enumerate(actions):
            try:
                await self.execute_action(action, event)
                run.executed.append(index)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                run.failed.append(index)
                error = self._action_error(e, rule_id, index, action)
                run.errors.append(error)
                cause = error.__cause__ or error
                LOGGER.error(
                    f"[{rule_id}] Action #{index} ({action.type}) failed: "
                    f"{type(cause).__name__}: {error}"
                )
                if rule.stop_on_error:
                    run.skipped = list(range(index + 1, len(actions)))
                    if run.skipped:
                        LOGGER.debug(f"[{rule_id}] stop_on_error: skipped {len(run.skipped)} action(s)")
                    break
        return run

    @staticmethod
    def _action_error(
        error: Exception, rule_id: str, index: int, action: Action
    ) -> ActionExecutionError:
        if not isinstance(error, ActionExecutionError):
            wrapped = ActionExecutionError(str(error) or type(error).__name__)
            wrapped.__cause__ = error
            error = wrapped
        error.rule_id, error.action_index, error.action_type = rule_id, index, action.type
        return error

    async def execute_action(self, action: Action, event: StreamEvent) -> None:
        """Dispatch one action to its handler."""
        kind = ACTION_ALIASES.get(action.type, action.type)
        handler = self._actions.get(kind)
        if handler is None:
            raise UnknownActionError(
                f"Unknown action type '{action.type}' "
                f"(available: {', '.join(self.action_types)})",
                action_type=action.type,
            )
        LOGGER.debug(f"Executing action {kind} for {event.type}")
        await handler(action, event)

    # ------------------------------------------------------------------
    # Action handlers
    # ------------------------------------------------------------------

    @staticmethod
    def _require(action: Action, *names: str) -> list[Any]:
        values = []
        for name in names:
            value = action.params.get(name)
            if value is None:
                raise ActionExecutionError(f"{action.type} requires '{name}'")
            values.append(value)
        return values

    async def _scene_for(self, action: Action) -> str:
        return action.params.get("scene") or await self.surface.get_current_scene()

    async def _switch_scene(self, action: Action, event: StreamEvent) -> None:
        scene = action.params.get("scene_name") or action.params.get("scene")
        if not scene:
            raise ActionExecutionError("switch_scene requires 'scene_name'")
        await self.surface.switch_scene(scene)

    async def _show_source(self, action: Action, event: StreamEvent) -> None:
        (source,) = self._require(action, "source")
        await self.surface.set_source_visibility(await self._scene_for(action), source, True)

    async def _hide_source(self, action: Action, event: StreamEvent) -> None:
        (source,) = self._require(action, "source")
        await self.surface.set_source_visibility(await self._scene_for(action), source, False)

    async def _toggle_source(self, action: Action, event: StreamEvent) -> None:
        (source,) = self._require(action, "source")
        scene = await self._scene_for(action)
        visible = await self.surface.get_source_visibility(scene, source)
        await self.surface.set_source_visibility(scene, source, not visible)

    async def _play_media(self, action: Action, event: StreamEvent) -> None:
        await self.surface.play_media(*self._require(action, "source"))

    async def _pause_media(self, action: Action, event: StreamEvent) -> None:
        await self.surface.pause_media(*self._require(action, "source"))

    async def _restart_media(self, action: Action, event: StreamEvent) -> None:
        await self.surface.restart_media(*self._require(action, "source"))

    async def _set_filter_enabled(self, action: Action, event: StreamEvent) -> None:
        source, filter_name = self._require(action, "source", "filter")
        await self.surface.set_filter_enabled(source, filter_name, bool(action.params.get("enabled", True)))

    async def _flash_filter(self, action: Action, event: StreamEvent) -> None:
        source, filter_name = self._require(action, "source", "filter")
        await self.surface.set_filter_enabled(source, filter_name, True)
        try:
            await asyncio.sleep(float(action.params.get("duration", 500)) / 1000)
        finally:
            await self.surface.set_filter_enabled(source, filter_name, False)

    async def _start_streaming(self, action: Action, event: StreamEvent) -> None:
        await self.surface.start_streaming()

    async def _stop_streaming(self, action: Action, event: StreamEvent) -> None:
        await self.surface.stop_streaming()

    async def _start_recording(self, action: Action, event: StreamEvent) -> None:
        await self.surface.start_recording()

    async def _stop_recording(self, action: Action, event: StreamEvent) -> None:
        await self.surface.stop_recording()

    async def _delay(self, action: Action, event: StreamEvent) -> None:
        duration = float(action.params.get("duration", 1000))
        await asyncio.sleep(max(duration, 0) / 1000)

    async def _emit_event(self, action: Action, event: StreamEvent) -> None:
        (event_name,) = self._require(action, "event_name")
        payload = {
            "platform": event.platform,
            **dict(action.params.get("data") or {}),
            "original_event": event.to_dict(),
        }
        await self.bridge.emit(event_name, payload)

    async def _log(self, action: Action, event: StreamEvent) -> None:
        LOGGER.info(f"[{event.type}] {action.params.get('message', '')}")
