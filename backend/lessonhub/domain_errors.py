"""Domain-level exception primitives with stable machine-readable codes."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(eq=False)
class DomainError(Exception):
    """Use-case level error with stable code and HTTP mapping."""

    code: str
    http_status: int
    message: str
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message


class _TypedDomainError(DomainError):
    default_code = "DOMAIN_ERROR"
    default_http_status = 400

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(
            code=code or self.default_code,
            http_status=self.default_http_status,
            message=message,
            details=details,
        )


class TerminalStateViolation(_TypedDomainError):
    """Transition attempted out of a terminal state. Never retried automatically."""

    default_code = "TERMINAL_STATE_VIOLATION"
    default_http_status = 409


class AlreadyClaimed(_TypedDomainError):
    """Lost a first-come-first-served race; safe to retry against fresh state."""

    default_code = "ALREADY_CLAIMED"
    default_http_status = 409


class WrongState(_TypedDomainError):
    """Operation called out of order for the entity's current state."""

    default_code = "WRONG_STATE"
    default_http_status = 409


class NotEligible(_TypedDomainError):
    default_code = "NOT_ELIGIBLE"
    default_http_status = 403


class Busy(_TypedDomainError):
    """Entity lock is held by another operation. Retry with backoff."""

    default_code = "ENTITY_BUSY"
    default_http_status = 423


class ValidationFailure(_TypedDomainError):
    """Malformed input, rejected before any lock is acquired."""

    default_code = "VALIDATION_FAILED"
    default_http_status = 422


class NotFound(_TypedDomainError):
    default_code = "NOT_FOUND"
    default_http_status = 404


class NotificationDispatchFailure(_TypedDomainError):
    """Best-effort notification fan-out failed. Logged, never fatal to the caller."""

    default_code = "NOTIFICATION_DISPATCH_FAILED"
    default_http_status = 500
