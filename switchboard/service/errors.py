from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer rejections.

    Every subclass carries an HTTP ``status_code`` and a stable ``error_code``
    naming the kind of failure. ``reason`` is the stable, machine-readable id
    of the rule that rejected the call so clients can render precise
    messages; it defaults to the error code.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.reason = reason or self.error_code
        self.detail = detail or {}

    def to_dict(self) -> dict:
        return {
            "code": self.error_code,
            "reason": self.reason,
            "message": self.message,
            "details": self.detail or None,
        }


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """An authorization rule rejected the action (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Invite, member, or user reference does not exist (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Member already exists, invite already responded, etc. (409)."""
    status_code = 409
    error_code = "conflict"


class ExpiredError(ServiceError):
    """Invite or token TTL exceeded (410)."""
    status_code = 410
    error_code = "expired"


class InvalidStateError(ServiceError):
    """Self-action or malformed responder identity (422)."""
    status_code = 422
    error_code = "invalid_state"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ExpiredError",
    "InvalidStateError",
]
