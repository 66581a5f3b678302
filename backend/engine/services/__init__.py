"""Pipeline services: templates, delivery, presentation and automation."""

from .automation_engine import AutomationEngine, RuleRun, evaluate_conditions
from .control_surface import ClientControlSurface, ControlSurface
from .delivery_queue import DeliveryQueue
from .presenter import OverlayPresenter
from .template_registry import TemplateRegistry, render_text

__all__ = [
    "AutomationEngine",
    "ClientControlSurface",
    "ControlSurface",
    "DeliveryQueue",
    "OverlayPresenter",
    "RuleRun",
    "TemplateRegistry",
    "evaluate_conditions",
    "render_text",
]
