from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code. Messages are caller-safe: they never carry token contents,
    key material or storage internals.
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
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input rejected before any state changed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidCredentialsError(ServiceError):
    """Email/password pair rejected (401)."""
    status_code = 401
    error_code = "invalid_credentials"


class AccountLockedError(ServiceError):
    """Login throttled by the lockout guard (423)."""
    status_code = 423
    error_code = "account_locked"


class InvalidTokenError(ServiceError):
    """Token failed verification (401).

    ``reason`` is a short machine-readable cause such as ``invalid_signature``
    or ``invalid_claims``; subclasses pin the distinct failure kinds.
    """

    status_code = 401
    error_code = "invalid_token"
    reason: str = "invalid_token"

    def __init__(self, message: str = "invalid token", *, reason: Optional[str] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        if reason is not None:
            self.reason = reason
        self.detail.setdefault("reason", self.reason)


class TokenExpiredError(InvalidTokenError):
    reason = "expired"


class MalformedTokenError(InvalidTokenError):
    reason = "malformed"


class WrongTokenKindError(InvalidTokenError):
    reason = "wrong_kind"


class UnknownKeyError(InvalidTokenError):
    reason = "unknown_key"


class SessionNotFoundError(ServiceError):
    """Session missing or no longer active (401)."""
    status_code = 401
    error_code = "invalid_session"


class SessionUserMismatchError(ServiceError):
    """Token subject does not own the session it names (401)."""
    status_code = 401
    error_code = "invalid_session"


class TokenReuseDetectedError(ServiceError):
    """A rotated-away refresh token was replayed; every session was revoked (401)."""
    status_code = 401
    error_code = "token_reuse_detected"


class NotFoundError(ServiceError):
    """Account or session does not exist (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate account or other uniqueness clash (409)."""
    status_code = 409
    error_code = "conflict"


class ResourceUnavailableError(ServiceError):
    """Durable store or cache unreachable with no fallback (503)."""
    status_code = 503
    error_code = "resource_unavailable"


class InternalFailureError(ServiceError):
    """Signing or key loading failed (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "InvalidTokenError",
    "TokenExpiredError",
    "MalformedTokenError",
    "WrongTokenKindError",
    "UnknownKeyError",
    "SessionNotFoundError",
    "SessionUserMismatchError",
    "TokenReuseDetectedError",
    "NotFoundError",
    "ConflictError",
    "ResourceUnavailableError",
    "InternalFailureError",
]
