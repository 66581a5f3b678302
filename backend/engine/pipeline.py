"""Alert pipeline: the public face of the engine.

Wires the template registry, the delivery queue and the automation engine to
one event bridge and one persistence store, and applies the per-event-type
alert policies (on/off switch, minimum threshold, priority).
"""

from __future__ import annotations

import asyncio
import csv
import io
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from engine.services.automation_engine import AutomationEngine
from engine.services.control_surface import ControlSurface
from engine.services.delivery_queue import DeliveryQueue
from engine.services.presenter import OverlayPresenter
from engine.services.template_registry import TemplateRegistry
from shared.errors import NotFoundError, ValidationError
from shared.event_bus import EventBridge, Subscription
from shared.models.alert import DEFAULT_PRIORITY, QueuedAlert
from shared.models.automation import AutomationRule
from shared.models.event import StreamEvent
from shared.models.template import AlertTemplate
from shared.repositories.alert_queue import AlertQueueRepository
from shared.repositories.automation_rule import AutomationRuleRepository
from shared.repositories.template import TemplateRepository
from shared.store import PersistenceStore

if TYPE_CHECKING:
    from engine.core.config import EngineSettings

LOGGER = logging.getLogger("Pipeline")


@dataclass(frozen=True)
class AlertPolicy:
    """Whether and how urgently an event type turns into an alert."""

    enabled: bool = True
    priority: int = DEFAULT_PRIORITY
    threshold_fields: tuple[str, ...] = ()
    minimum: float = 0

    def allows(self, event: StreamEvent) -> bool:
        if not self.enabled:
            return False
        if not self.threshold_fields:
            return True
        value = next(
            (event.get(name) for name in self.threshold_fields if event.get(name) is not None),
            0,
        )
        try:
            return float(value) >= self.minimum
        except (TypeError, ValueError):
            return False


def default_policies() -> dict[str, AlertPolicy]:
    return {
        "follow": AlertPolicy(priority=5),
        "subscribe": AlertPolicy(priority=4),
        "raid": AlertPolicy(priority=2, threshold_fields=("viewers",), minimum=2),
        "donation": AlertPolicy(priority=3, threshold_fields=("amount",), minimum=1),
        "cheer": AlertPolicy(priority=3, threshold_fields=("bits", "amount"), minimum=100),
    }


def build_policies(settings: EngineSettings) -> dict[str, AlertPolicy]:
    return {
        "follow": AlertPolicy(settings.enable_follow_alerts, 5),
        "subscribe": AlertPolicy(settings.enable_subscribe_alerts, 4),
        "raid": AlertPolicy(
            settings.enable_raid_alerts, 2, ("viewers",), settings.min_raid_viewers
        ),
        "donation": AlertPolicy(
            settings.enable_donation_alerts, 3, ("amount",), settings.min_donation_amount
        ),
        "cheer": AlertPolicy(
            settings.enable_cheer_alerts, 3, ("bits", "amount"), settings.min_cheer_bits
        ),
    }


# Fabricated payloads for manual testing
SAMPLE_EVENTS: dict[str, dict[str, Any]] = {
    "follow": {"platform": "twitch", "username": "testuser", "display_name": "TestUser"},
    "subscribe": {
        "platform": "twitch",
        "username": "testuser",
        "display_name": "TestUser",
        "tier": 1,
        "months": 1,
    },
    "raid": {"platform": "twitch", "username": "testuser", "display_name": "TestUser", "viewers": 42},
    "donation": {
        "platform": "streamlabs",
        "username": "testuser",
        "display_name": "TestUser",
        "amount": 5.0,
        "currency": "USD",
        "message": "Love the stream!",
    },
    "cheer": {
        "platform": "twitch",
        "username": "testuser",
        "display_name": "TestUser",
        "bits": 100,
        "message": "Poggers!",
    },
}

DEFAULT_RULES: list[dict[str, Any]] = [
    {
        "id": "large-raid-celebration",
        "name": "Large raid celebration",
        "event_type": "raid",
        "conditions": {"min_viewers": 50},
        "actions": [{"type": "log", "message": "Large raid detected!"}],
    }
]

HISTORY_CSV_HEADER = ("Type", "Username", "Date")


class AlertPipeline:
    def __init__(
        self,
        store: PersistenceStore,
        bridge: EventBridge,
        surface: ControlSurface,
        *,
        presenter: OverlayPresenter | None = None,
        policies: Mapping[str, AlertPolicy] | None = None,
        min_delay: float = 0.5,
        history_limit: int = 100,
    ) -> None:
        self.store = store
        self.bridge = bridge
        self.surface = surface
        self.policies = dict(default_policies() if policies is None else policies)

        self.presenter = presenter or OverlayPresenter(store)
        self.templates = TemplateRegistry(TemplateRepository(store))
        self.queue = DeliveryQueue(
            AlertQueueRepository(store),
            self.presenter,
            min_delay=min_delay,
            history_limit=history_limit,
            on_complete=self._on_alert_complete,
        )
        self.automation = AutomationEngine(bridge, surface)
        self.rule_repo = AutomationRuleRepository(store)

        self._subscriptions: list[Subscription] = []
        self._tasks: set[asyncio.Task] = set()
        self.started = False

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        store: PersistenceStore,
        bridge: EventBridge,
        surface: ControlSurface,
    ) -> AlertPipeline:
        return cls(
            store,
            bridge,
            surface,
            policies=build_policies(settings),
            min_delay=settings.alert_delay_ms / 1000,
            history_limit=settings.alert_history_limit,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.started:
            return
        await self.templates.seed_defaults()

        for rule in await self.rule_repo.list_all():
            self.automation.register_rule(rule)
        if not self.automation.list_rules():
            for data in DEFAULT_RULES:
                await self.register_automation_rule(data)
            LOGGER.info("Default automations registered")

        for event_type, policy in self.policies.items():
            if policy.enabled:
                self._subscriptions.append(self.bridge.subscribe(event_type, self._alert_for_event))

        await self.queue.restore()
        self.queue.start()
        self.started = True
        LOGGER.info(
            f"Alert pipeline started ({len(self._subscriptions)} alert type(s), "
            f"{len(self.automation.list_rules())} rule(s))"
        )

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            subscription.dispose()
        self._subscriptions.clear()
        self.automation.cleanup()
        await self.queue.stop()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self.started = False
        LOGGER.info("Alert pipeline stopped")

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    async def create_template(self, template: AlertTemplate | dict[str, Any]) -> AlertTemplate:
        return await self.templates.create(template)

    async def update_template(self, template_id: str, changes: dict[str, Any]) -> AlertTemplate:
        return await self.templates.update(template_id, changes)

    async def delete_template(self, template_id: str) -> None:
        await self.templates.delete(template_id)

    async def get_template(self, template_id: str) -> AlertTemplate:
        return await self.templates.get(template_id)

    async def get_templates(
        self, *, event_type: str | None = None, enabled: bool | None = None
    ) -> list[AlertTemplate]:
        return await self.templates.list(event_type=event_type, enabled=enabled)

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    async def enqueue_alert(self, config: Mapping[str, Any]) -> str:
        """Render and queue an alert.

        ``config`` keys: ``type`` (or ``event_type``), optional
        ``template_id``, ``data`` and ``priority``. Without a template id the
        default template for the event type is used.
        """
        event_type = config.get("type") or config.get("event_type")
        if not isinstance(event_type, str) or not event_type.strip():
            raise ValidationError("Alert requires a 'type'")
        data = config.get("data") or {}
        if not isinstance(data, Mapping):
            raise ValidationError("Alert 'data' must be a mapping")

        priority = config.get("priority")
        if priority is not None and (isinstance(priority, bool) or not isinstance(priority, int)):
            raise ValidationError("Alert 'priority' must be an integer")

        event = StreamEvent.from_payload(event_type, data)
        return await self._enqueue_event(event, config.get("template_id"), priority)

    def get_queue_status(self) -> dict[str, Any]:
        status = self.queue.get_status()
        current = self.queue.current
        status["current"] = current.id if current else None
        return status

    async def clear_queue(self) -> int:
        return await self.queue.clear()

    def pause_queue(self) -> None:
        self.queue.pause()

    def resume_queue(self) -> None:
        self.queue.resume()

    async def get_alert_history(self, limit: int | None = None) -> list[QueuedAlert]:
        return await self.queue.get_history(limit)

    async def export_history_csv(self) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(HISTORY_CSV_HEADER)
        for alert in await self.queue.get_history():
            username = alert.data.get("display_name") or alert.data.get("username") or ""
            writer.writerow((alert.event_type, username, alert.created_at.isoformat()))
        return buffer.getvalue()

    # ------------------------------------------------------------------
    # Automation
    # ------------------------------------------------------------------

    async def register_automation_rule(self, rule: AutomationRule | Mapping[str, Any]) -> str:
        rule_id = self.automation.register_rule(rule)
        await self.rule_repo.save(self.automation.get_rule(rule_id))
        return rule_id

    async def unregister_automation_rule(self, rule_id: str) -> bool:
        removed = self.automation.unregister_rule(rule_id)
        await self.rule_repo.delete(rule_id)
        return removed

    async def set_automation_rule_enabled(self, rule_id: str, enabled: bool) -> bool:
        if not self.automation.set_rule_enabled(rule_id, enabled):
            return False
        await self.rule_repo.save(self.automation.get_rule(rule_id))
        return True

    def get_automation_rules(self) -> list[AutomationRule]:
        return self.automation.list_rules()

    # ------------------------------------------------------------------
    # Manual testing
    # ------------------------------------------------------------------

    async def test_trigger(
        self, event_type: str, sample_data: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        """Fire a fabricated event through the bridge and wait for its handlers.

        Both alert handling and automation rules see it exactly as they would
        a real upstream event.
        """
        if not event_type:
            raise ValidationError("Test trigger requires an event type")
        payload = {
            "platform": "test",
            "username": "testuser",
            "display_name": "TestUser",
            **SAMPLE_EVENTS.get(event_type, {}),
            **dict(sample_data or {}),
            "is_test": True,
        }
        tasks = await self.bridge.emit(event_type, payload)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        LOGGER.info(f"[test] Triggered {event_type} ({len(tasks)} handler(s))")
        return {
            "event_type": event_type,
            "handlers": len(tasks),
            "queue": self.get_queue_status(),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _enqueue_event(
        self, event: StreamEvent, template_id: str | None, priority: int | None
    ) -> str:
        if template_id:
            template = await self.templates.get(template_id)
        else:
            template = await self.templates.select_for_event(event)
            if template is None:
                raise NotFoundError("Template", f"<default for {event.type}>")

        if priority is None:
            policy = self.policies.get(event.type)
            priority = policy.priority if policy else DEFAULT_PRIORITY

        data = {"platform": event.platform, **event.data}
        payload = self.templates.render(template, data)
        return await self.queue.enqueue(
            event.type, payload, template_id=template.id, priority=priority, data=data
        )

    async def _alert_for_event(self, event: StreamEvent) -> None:
        policy = self.policies.get(event.type)
        if policy is None or not policy.allows(event):
            LOGGER.debug(f"[{event.type}] Below alert policy, not alerting")
            return
        try:
            await self._enqueue_event(event, None, policy.priority)
        except NotFoundError:
            LOGGER.warning(f"[{event.type}] No enabled template matches, alert skipped")

    def _on_alert_complete(self, alert: QueuedAlert) -> None:
        if not alert.template_id:
            return
        task = asyncio.create_task(self._count_usage(alert.template_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _count_usage(self, template_id: str) -> None:
        try:
            await self.templates.increment_usage(template_id)
        except Exception as e:
            LOGGER.warning(f"Failed to count usage for template {template_id}: {e}")
