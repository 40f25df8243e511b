from __future__ import annotations

from typing import Any, Dict, Optional


class DealcrossError(Exception):
    """
    Base for every recoverable domain error.

    Each subclass carries a machine-readable ``kind`` and the HTTP status the
    API layer renders it with. A raised error never leaves partial state: the
    session that was mutating is rolled back by the caller.
    """

    kind: str = "error"
    status_code: int = 400
    retryable: bool = False
    # seconds a client should wait before retrying a retryable error
    retry_after: int = 1

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": False,
            "error": self.kind,
            "message": self.message,
        }
        if self.retryable:
            body["retryable"] = True
        if self.details:
            body["details"] = self.details
        return body


class InvalidTransitionError(DealcrossError):
    kind = "invalid_transition"
    status_code = 409


class InvalidStateError(InvalidTransitionError):
    kind = "invalid_state"


class UnauthorizedActorError(DealcrossError):
    kind = "unauthorized_actor"
    status_code = 403


class AlreadyResolvedError(DealcrossError):
    kind = "already_resolved"
    status_code = 409


class TierNotConfiguredError(DealcrossError):
    kind = "tier_not_configured"
    status_code = 422


class ValidationError(DealcrossError):
    kind = "validation_error"
    status_code = 422

    def __init__(self, message: str, *, kind: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)
        if kind:
            self.kind = kind


class ConcurrencyConflictError(DealcrossError):
    kind = "concurrency_conflict"
    status_code = 409
    retryable = True


class NotFoundError(DealcrossError):
    kind = "not_found"
    status_code = 404


class PermissionDeniedError(DealcrossError):
    kind = "permission_denied"
    status_code = 403


class IdempotencyConflictError(DealcrossError):
    kind = "idempotency_conflict"
    status_code = 409


class RateLimitedError(DealcrossError):
    kind = "rate_limited"
    status_code = 429
    retryable = True

    def __init__(self, message: str, *, retry_after: int, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)
        self.retry_after = retry_after
