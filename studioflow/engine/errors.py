"""
Error taxonomy for node actions.

Every failure a handler can surface is a ``NodeActionError``; the executor
turns it into ``status = error`` plus ``payload["error"]``. Cancellation is
deliberately outside that hierarchy: it is a controlled reset, not a failure.
"""

from typing import Any

from studioflow.runtime.cancellation import CancellationSignal

__all__ = [
    "CancellationSignal",
    "EmptySelectionError",
    "ExternalServiceError",
    "MissingPromptError",
    "MissingUpstreamError",
    "NodeActionError",
    "ServiceUnavailableError",
    "ValidationError",
]


class NodeActionError(Exception):
    """
    Base for failures recorded on a node.

    Args:
        message: Shown to the user as ``payload["error"]``
        rollback_stage: Pipeline stage to restore, or None to leave it unchanged
        partial: Payload fields produced before the failure, written back as-is
    """

    def __init__(
        self,
        message: str,
        rollback_stage: str | None = None,
        partial: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.rollback_stage = rollback_stage
        self.partial = partial or {}


class ValidationError(NodeActionError):
    """A required input field is missing or malformed."""


class EmptySelectionError(ValidationError):
    """The user has not selected anything to work on."""


class MissingPromptError(ValidationError):
    """A generation was requested before a prompt exists."""


class MissingUpstreamError(NodeActionError):
    """A required upstream node or its output is absent."""


class ExternalServiceError(NodeActionError):
    """A collaborator call failed."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        raw: Any = None,
        rollback_stage: str | None = None,
        partial: dict[str, Any] | None = None,
    ):
        super().__init__(message, rollback_stage=rollback_stage, partial=partial)
        self.provider = provider
        self.raw = raw


class ServiceUnavailableError(ExternalServiceError):
    """A collaborator the node needs is not configured."""
