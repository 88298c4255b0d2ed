from __future__ import annotations


class AutomationError(Exception):
    """Base error for the automation engine; ``retryable`` drives the step retry policy."""

    retryable = False

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(AutomationError):
    """Malformed trigger filter, step config or step graph; rejected at save time."""


class NotFoundError(AutomationError):
    """A referenced contact, stage, tag, template or endpoint vanished before execution."""


class TransientExternalError(AutomationError):
    """Network timeout or 5xx from an external collaborator."""

    retryable = True


class PermanentExternalError(AutomationError):
    """4xx or malformed recipient; retrying cannot help."""
