"""Error taxonomy shared by the template, queue and automation layers."""

from __future__ import annotations


class CueError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(CueError, ValueError):
    """Malformed input to a create/register call."""


class NotFoundError(CueError, LookupError):
    """Unknown template, rule or queue-item id."""

    def __init__(self, kind: str, item_id: str) -> None:
        self.kind = kind
        self.item_id = item_id
        super().__init__(f"{kind} not found: {item_id}")


class PresentationError(CueError):
    """The presentation sink rejected an alert."""


class AdapterUnavailableError(CueError):
    """The control surface cannot reach the remote production tool."""


class ActionExecutionError(CueError):
    """A single automation action failed."""

    def __init__(
        self,
        message: str,
        *,
        rule_id: str | None = None,
        action_index: int | None = None,
        action_type: str | None = None,
    ) -> None:
        self.rule_id = rule_id
        self.action_index = action_index
        self.action_type = action_type
        super().__init__(message)


class UnknownActionError(ActionExecutionError):
    """Action type tag has no handler."""
