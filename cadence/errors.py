"""Exceptions raised by cadence.

Handlers catch these at their own boundary and persist a terminal status with
the message before anything is re-raised.
"""

from __future__ import annotations

from typing import Optional


class CadenceError(Exception):
    """Base exception for scheduler and tracker operations."""

    pass


class ConfigurationError(CadenceError):
    """Raised when a base URL, credential or backend setting is missing."""

    pass


class NotFoundError(CadenceError):
    """Raised when a subject, job or run vanished between arm and use."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class ValidationError(CadenceError):
    """Raised when a subject lacks the inputs required for generation."""

    pass


class ExternalCallError(CadenceError):
    """Raised when the external trigger failed on every endpoint."""

    def __init__(self, message: str, attempts: int = 1) -> None:
        self.attempts = attempts
        super().__init__(message)


class DuplicateJobError(CadenceError):
    """Raised when a job with the same idempotency key already exists."""

    def __init__(self, idempotency_key: str) -> None:
        self.idempotency_key = idempotency_key
        super().__init__(f"Job already exists for key {idempotency_key}")


class DuplicateRunError(CadenceError):
    """Raised when an active run already exists for a correlation id."""

    def __init__(
        self, subject_id: str, correlation_id: str, run_id: Optional[str] = None
    ) -> None:
        self.subject_id = subject_id
        self.correlation_id = correlation_id
        self.run_id = run_id
        super().__init__(
            f"Active run already exists for subject={subject_id} "
            f"correlation_id={correlation_id}"
        )


class InvalidTransitionError(CadenceError):
    """Raised when a run status would move backwards or leave a terminal state."""

    def __init__(self, current: str, requested: str) -> None:
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move run from {current} to {requested}")
