"""Template registry: store, select and render parameterized alert templates.

Rendering is literal ``{{field}}`` substitution, not a template language:
there are no expressions, loops or filters, so a user-authored template can
never execute anything.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Mapping
from dataclasses import asdict, fields, is_dataclass
from typing import Any

import pydantic
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StrictStr,
    field_validator,
)

from shared.errors import NotFoundError, ValidationError
from shared.models.common import utcnow
from shared.models.event import StreamEvent
from shared.models.template import (
    DEFAULT_ANIMATION,
    DEFAULT_DURATION_MS,
    DEFAULT_SOUND_VOLUME,
    AlertTemplate,
    DisplayConditions,
    RenderedAlert,
)
from shared.repositories.template import TemplateRepository

LOGGER = logging.getLogger("TemplateRegistry")

PLACEHOLDER_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")

# Used when the event payload lacks a field the template references
RENDER_FALLBACKS: dict[str, str] = {
    "tier": "1",
    "months": "1",
    "amount": "0",
    "bits": "0",
    "viewers": "0",
    "count": "0",
    "currency": "USD",
}

_IMMUTABLE_FIELDS = {"id", "created_at", "updated_at", "usage_count"}
_TEMPLATE_FIELDS = {f.name for f in fields(AlertTemplate)}


def _card(accent: str, background: str) -> str:
    return (
        ".alert-box { font-family: 'Segoe UI', sans-serif; text-align: center; "
        f"padding: 24px 40px; border-radius: 16px; background: {background}; "
        f"border: 3px solid {accent}; color: #ffffff; }}\n"
        f".alert-title {{ font-size: 36px; font-weight: 700; color: {accent}; }}\n"
        ".alert-message { font-size: 24px; margin-top: 8px; }"
    )


# One default per well-known event type, each with its own animation and colours
DEFAULT_TEMPLATES: dict[str, dict[str, Any]] = {
    "follow": {
        "name": "Default Follow",
        "html": '<div class="alert-box"><div class="alert-title">{{display_name}}</div>'
        '<div class="alert-message">just followed!</div></div>',
        "css": _card("#9147ff", "rgba(24, 24, 27, 0.9)"),
        "animation": "slideIn",
    },
    "subscribe": {
        "name": "Default Subscription",
        "html": '<div class="alert-box"><div class="alert-title">{{display_name}}</div>'
        '<div class="alert-message">subscribed at Tier {{tier}} for {{months}} months!</div></div>',
        "css": _card("#f5b700", "rgba(40, 28, 0, 0.9)"),
        "animation": "bounceIn",
    },
    "raid": {
        "name": "Default Raid",
        "html": '<div class="alert-box"><div class="alert-title">{{display_name}}</div>'
        '<div class="alert-message">is raiding with {{viewers}} viewers!</div></div>',
        "css": _card("#ff4f4f", "rgba(45, 8, 8, 0.9)"),
        "animation": "zoomIn",
        "duration": 8000,
    },
    "donation": {
        "name": "Default Donation",
        "html": '<div class="alert-box"><div class="alert-title">{{display_name}}</div>'
        '<div class="alert-message">donated {{currency}} {{amount}}!</div>'
        '<div class="alert-message">{{message}}</div></div>',
        "css": _card("#1fd17a", "rgba(4, 36, 20, 0.9)"),
        "animation": "fadeIn",
        "tts": {"enabled": True},
    },
    "cheer": {
        "name": "Default Cheer",
        "html": '<div class="alert-box"><div class="alert-title">{{display_name}}</div>'
        '<div class="alert-message">cheered {{bits}} bits!</div>'
        '<div class="alert-message">{{message}}</div></div>',
        "css": _card("#00c8ff", "rgba(0, 26, 40, 0.9)"),
        "animation": "spinIn",
    },
}


def render_text(text: str, data: dict[str, Any]) -> str:
    """Replace every ``{{name}}`` in *text* with the stringified data value.

    Single pass: values that themselves contain ``{{...}}`` are not expanded.
    """
    if not text:
        return text

    def _replace(m: re.Match) -> str:
        name = m.group(1)
        value = data.get(name)
        if value is None:
            return RENDER_FALLBACKS.get(name, "")
        return str(value)

    return PLACEHOLDER_RE.sub(_replace, text)


class TextToSpeechFields(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: StrictBool = False
    voice: StrictStr | None = None
    rate: float = Field(1.0, gt=0)
    volume: StrictInt = Field(100, ge=0, le=100)


class DisplayConditionFields(BaseModel):
    model_config = ConfigDict(extra="ignore")

    min_amount: float | None = Field(None, ge=0)
    min_count: StrictInt | None = Field(None, ge=0)
    vip_only: StrictBool = False
    subscriber_only: StrictBool = False
    first_time_only: StrictBool = False


class TemplateFields(BaseModel):
    """Editable template fields, checked on create and after every update merge."""

    model_config = ConfigDict(extra="ignore")

    name: StrictStr
    event_type: StrictStr
    id: StrictStr | None = None
    enabled: StrictBool = True
    html: StrictStr = ""
    css: StrictStr = ""
    js: StrictStr | None = None
    image_url: StrictStr | None = None
    duration: StrictInt = Field(DEFAULT_DURATION_MS, ge=0)
    animation: StrictStr = DEFAULT_ANIMATION
    sound_url: StrictStr | None = None
    sound_volume: StrictInt = Field(DEFAULT_SOUND_VOLUME, ge=0, le=100)
    tts: TextToSpeechFields = Field(default_factory=TextToSpeechFields)
    conditions: DisplayConditionFields = Field(default_factory=DisplayConditionFields)

    @field_validator("name", "event_type")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("cannot be empty")
        return value


def _validated(data: dict[str, Any]) -> dict[str, Any]:
    try:
        parsed = TemplateFields.model_validate(data)
    except pydantic.ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"Invalid template: {problems}") from e
    return parsed.model_dump()


def _plain(value: Any) -> Any:
    return asdict(value) if is_dataclass(value) and not isinstance(value, type) else value


def _as_float(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def conditions_pass(conditions: DisplayConditions, event: StreamEvent) -> bool:
    """Check a template's display conditions against an event."""
    if conditions.min_amount is not None:
        amount = _as_float(event.get("amount", event.get("bits")))
        if amount is None or amount < conditions.min_amount:
            return False
    if conditions.min_count is not None:
        count = _as_float(event.get("count", event.get("viewers", event.get("months"))))
        if count is None or count < conditions.min_count:
            return False
    if conditions.vip_only and not event.get("is_vip"):
        return False
    if conditions.subscriber_only and not event.get("is_subscriber"):
        return False
    if conditions.first_time_only and not event.get("is_first_time"):
        return False
    return True


class TemplateRegistry:
    """Template CRUD, default selection and rendering."""

    def __init__(self, repo: TemplateRepository) -> None:
        self.repo = repo
        self._usage_lock = asyncio.Lock()

    async def create(self, template: AlertTemplate | dict[str, Any]) -> AlertTemplate:
        """Create a template; every omitted optional field gets its default."""
        data = template.to_dict() if isinstance(template, AlertTemplate) else dict(template)
        for required in ("name", "event_type"):
            value = data.get(required)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"Template requires a non-empty '{required}'")
        if not data.get("id"):
            data.pop("id", None)
        for stamp in _IMMUTABLE_FIELDS - {"id"}:
            data.pop(stamp, None)
        # Omitted and explicit None both mean "use the default" on create
        data = {k: _plain(v) for k, v in data.items() if v is not None}
        record = AlertTemplate.from_dict(_validated(data))

        if await self.repo.get(record.id) is not None:
            raise ValidationError(f"Template id already exists: {record.id}")
        await self.repo.save(record)
        LOGGER.info(f"Template created: {record.name} ({record.id}, {record.event_type})")
        return record

    async def update(self, template_id: str, changes: dict[str, Any]) -> AlertTemplate:
        """Shallow-merge *changes* into an existing template."""
        current = await self.get(template_id)
        merged = current.to_dict()
        for key, value in changes.items():
            if key in _IMMUTABLE_FIELDS or key not in _TEMPLATE_FIELDS:
                continue
            value = _plain(value)
            if key in ("tts", "conditions") and isinstance(value, Mapping):
                value = {**merged[key], **value}
            merged[key] = value
        record = AlertTemplate.from_dict({**merged, **_validated(merged)})
        record.updated_at = utcnow()
        await self.repo.save(record)
        LOGGER.info(f"Template updated: {record.id} ({', '.join(changes) or 'no fields'})")
        return record

    async def delete(self, template_id: str) -> None:
        if not await self.repo.delete(template_id):
            raise NotFoundError("Template", template_id)
        LOGGER.info(f"Template deleted: {template_id}")

    async def get(self, template_id: str) -> AlertTemplate:
        record = await self.repo.get(template_id)
        if record is None:
            raise NotFoundError("Template", template_id)
        return record

    async def list(
        self,
        *,
        event_type: str | None = None,
        enabled: bool | None = None,
    ) -> list[AlertTemplate]:
        templates = await self.repo.list_all()
        if event_type is not None:
            templates = [t for t in templates if t.event_type == event_type]
        if enabled is not None:
            templates = [t for t in templates if t.enabled == enabled]
        return templates

    async def select_for_event(self, event: StreamEvent) -> AlertTemplate | None:
        """Pick the default template for an event.

        Most specific enabled template whose display conditions pass wins
        (highest min_amount, then highest min_count); ties go to the oldest.
        """
        candidates = [
            t
            for t in await self.repo.list_enabled_for_event(event.type)
            if conditions_pass(t.conditions, event)
        ]
        if not candidates:
            return None
        candidates.sort(
            key=lambda t: (
                -(t.conditions.min_amount or 0),
                -(t.conditions.min_count or 0),
                t.created_at,
                t.id,
            )
        )
        return candidates[0]

    def render(self, template: AlertTemplate, data: dict[str, Any]) -> RenderedAlert:
        """Produce the presentation payload for *template* filled with *data*."""
        values = dict(data)
        if not values.get("display_name"):
            values["display_name"] = values.get("username")
        tts_text = None
        if template.tts.enabled:
            tts_text = str(values.get("message") or "") or None
        return RenderedAlert(
            html=render_text(template.html, values),
            css=render_text(template.css, values),
            js=template.js,
            duration=template.duration,
            animation=template.animation,
            image_url=template.image_url,
            sound_url=template.sound_url,
            sound_volume=template.sound_volume,
            tts_text=tts_text,
        )

    async def increment_usage(self, template_id: str) -> None:
        """Count one successful presentation. Silently skips deleted templates."""
        async with self._usage_lock:
            record = await self.repo.get(template_id)
            if record is None:
                LOGGER.debug(f"Usage not counted, template {template_id} no longer exists")
                return
            record.usage_count += 1
            await self.repo.save(record)

    async def seed_defaults(self) -> list[AlertTemplate]:
        """Create the default templates if the registry is completely empty."""
        if await self.repo.count() > 0:
            return []
        created = []
        for event_type, defaults in DEFAULT_TEMPLATES.items():
            created.append(await self.create({**defaults, "event_type": event_type}))
        LOGGER.info(f"Seeded {len(created)} default templates")
        return created
