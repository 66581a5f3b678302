"""Data models for alert templates and their rendered payloads."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any

from .common import dt_to_str, new_id, str_to_dt, utcnow

DEFAULT_DURATION_MS = 5000
DEFAULT_ANIMATION = "fadeIn"
DEFAULT_SOUND_VOLUME = 70


@dataclass
class TextToSpeech:
    """Text-to-speech parameters for a template."""

    enabled: bool = False
    voice: str | None = None
    rate: float = 1.0
    volume: int = 100


@dataclass
class DisplayConditions:
    """Thresholds an event must meet for a template to be auto-selected."""

    min_amount: float | None = None
    min_count: int | None = None
    vip_only: bool = False
    subscriber_only: bool = False
    first_time_only: bool = False


def _build(cls, value: Any):
    """Coerce a dict (or an instance) into one of the nested dataclasses."""
    if isinstance(value, cls):
        return value
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in (value or {}).items() if k in known})


@dataclass
class AlertTemplate:
    """Alert template record."""

    name: str
    event_type: str  # 'follow' | 'subscribe' | 'raid' | 'donation' | 'cheer' | custom
    id: str = field(default_factory=lambda: new_id("tpl"))
    enabled: bool = True
    html: str = ""
    css: str = ""
    js: str | None = None
    image_url: str | None = None
    duration: int = DEFAULT_DURATION_MS  # ms
    animation: str = DEFAULT_ANIMATION
    sound_url: str | None = None
    sound_volume: int = DEFAULT_SOUND_VOLUME  # 0-100
    tts: TextToSpeech = field(default_factory=TextToSpeech)
    conditions: DisplayConditions = field(default_factory=DisplayConditions)
    usage_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.tts = _build(TextToSpeech, self.tts)
        self.conditions = _build(DisplayConditions, self.conditions)
        self.created_at = str_to_dt(self.created_at)  # type: ignore[assignment]
        self.updated_at = str_to_dt(self.updated_at)  # type: ignore[assignment]

    @classmethod
    def from_dict(cls, data: dict) -> AlertTemplate:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known and v is not None})

    def to_dict(self) -> dict:
        d = asdict(self)
        d["created_at"] = dt_to_str(self.created_at)
        d["updated_at"] = dt_to_str(self.updated_at)
        return d


@dataclass
class RenderedAlert:
    """Presentation payload handed to the overlay renderer."""

    html: str
    css: str
    duration: int = DEFAULT_DURATION_MS
    animation: str = DEFAULT_ANIMATION
    js: str | None = None
    image_url: str | None = None
    sound_url: str | None = None
    sound_volume: int = DEFAULT_SOUND_VOLUME
    tts_text: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> RenderedAlert:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict:
        return asdict(self)
