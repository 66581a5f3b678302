"""Shared data models for the alert and automation pipeline."""

from .alert import AlertStatus, QueuedAlert
from .automation import Action, AutomationRule
from .event import StreamEvent
from .template import AlertTemplate, DisplayConditions, RenderedAlert, TextToSpeech

__all__ = [
    "Action",
    "AlertStatus",
    "AlertTemplate",
    "AutomationRule",
    "DisplayConditions",
    "QueuedAlert",
    "RenderedAlert",
    "StreamEvent",
    "TextToSpeech",
]
