from __future__ import annotations

from typing import Any


class GrantflowError(Exception):
    """Base error for GrantFlow."""

    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details


class ValidationError(GrantflowError):
    """Malformed or missing input the client can fix."""

    status_code = 422
    default_code = "VALIDATION_ERROR"


class NotFoundError(GrantflowError):
    """Referenced entity, policy or approval does not exist."""

    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(GrantflowError):
    """Guard violation, version mismatch or disallowed state transition."""

    status_code = 409
    default_code = "CONFLICT"


class IdempotencyKeyConflictError(ConflictError):
    """Idempotency key reused for a different request payload or action."""

    default_code = "IDEMPOTENCY_KEY_CONFLICT"


class IdempotencyInProgressError(ConflictError):
    """Another request still holds the idempotency key."""

    default_code = "IDEMPOTENCY_IN_PROGRESS"


class PermissionDeniedError(GrantflowError):
    """Actor is not allowed to take the requested decision."""

    status_code = 403
    default_code = "FORBIDDEN"


class ExternalProviderError(GrantflowError):
    """External approval provider call failed."""

    status_code = 502
    default_code = "EXTERNAL_PROVIDER_ERROR"


class ImmutableRecordError(GrantflowError):
    """Attempt to modify or delete an append-only record."""
