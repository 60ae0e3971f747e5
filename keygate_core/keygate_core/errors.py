"""Exception hierarchy shared by the core services.

Expected denials (blacklist, license, credentials) are *values*, not
exceptions; see :mod:`keygate_core.models.outcomes`.  Only the classes
below are raised across module boundaries.
"""

from __future__ import annotations


class KeygateError(Exception):
    """Base class for all errors raised by the core."""


class InfrastructureError(KeygateError):
    """A dependency (repository, hash function) failed mid-request.

    This is the only fault the :class:`~keygate_core.auth.orchestrator.AuthOrchestrator`
    lets escape.  Callers may surface it as a retryable "try again" error.
    """


class NotFoundError(KeygateError):
    """An admin operation referenced an entity that does not exist."""

    def __init__(self, entity: str, identifier: object) -> None:
        super().__init__(f"{entity} not found: {identifier}")
        self.entity = entity
        self.identifier = identifier


class ValidationError(KeygateError):
    """An admin operation was given invalid input."""
