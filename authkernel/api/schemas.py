from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Annotated, Any, Optional
from uuid import uuid4

from pydantic import AfterValidator, BaseModel, Field, field_validator

from authkernel.logging import get_correlation_id
from authkernel.service.passwords import MIN_PASSWORD_LENGTH

MAX_PASSWORD_LENGTH = 128
MAX_EMAIL_LENGTH = 254

# Every error_code a ServiceError subclass can carry, plus the generic HTTP ones
ERROR_CODES = frozenset(
    {
        "validation_error",
        "invalid_credentials",
        "account_locked",
        "invalid_token",
        "invalid_session",
        "token_reuse_detected",
        "not_found",
        "conflict",
        "resource_unavailable",
        "server_error",
    }
)


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _known_code(cls, value: str) -> str:
        if value not in ERROR_CODES:
            raise ValueError(f"unknown error code {value!r}")
        return value


class Envelope(BaseModel):
    """Uniform response wrapper; ``request_id`` matches the X-Request-ID header."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_LOCAL_PART = re.compile(r"^[a-z0-9.!#$%&'*+/=?^_`{|}~-]{1,64}$")
_DOMAIN = re.compile(
    r"^(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$"
)


def normalize_email(value: str) -> str:
    """Lower-case, NFKC-normalized address; raises ValueError when malformed."""
    normalized = unicodedata.normalize("NFKC", str(value).strip()).lower()
    if len(normalized) > MAX_EMAIL_LENGTH:
        raise ValueError("email address too long")
    local, sep, domain = normalized.rpartition("@")
    if not sep or not _LOCAL_PART.match(local) or not _DOMAIN.match(domain):
        raise ValueError("invalid email address")
    return normalized


def check_new_password(value: str) -> str:
    if not MIN_PASSWORD_LENGTH <= len(value) <= MAX_PASSWORD_LENGTH:
        raise ValueError(
            f"password must be {MIN_PASSWORD_LENGTH} to {MAX_PASSWORD_LENGTH} characters"
        )
    return value


Email = Annotated[str, AfterValidator(normalize_email)]
NewPassword = Annotated[str, AfterValidator(check_new_password)]


class SignupRequest(BaseModel):
    email: Email
    password: NewPassword
    name: Optional[str] = Field(default=None, max_length=128)


class LoginRequest(BaseModel):
    # Not validated beyond size: a malformed address is just a failed login
    email: str = Field(..., max_length=MAX_EMAIL_LENGTH)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class AuthResponse(BaseModel):
    user_id: str
    session_id: str
    session_expires_at: datetime
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    token_type: str = "bearer"
    id_token: Optional[str] = None
    role: str = "member"


class PrincipalResponse(BaseModel):
    user_id: str
    session_id: str
    email: Optional[str] = None
    role: Optional[str] = None


class LogoutAllRequest(BaseModel):
    keep_current: bool = False


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: NewPassword


class PasswordResetRequest(BaseModel):
    email: Email


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: NewPassword
