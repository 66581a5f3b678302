"""Shared repository layer over the persistence store."""

from .alert_queue import AlertQueueRepository
from .automation_rule import AutomationRuleRepository
from .template import TemplateRepository

__all__ = [
    "AlertQueueRepository",
    "AutomationRuleRepository",
    "TemplateRepository",
]
