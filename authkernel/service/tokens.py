"""RS256 issuance and verification of access, refresh and identity tokens.

Every token carries a ``typ`` discriminator. Verification checks the
signature and registered claims first, then the discriminator, and only
then builds the kind-specific claims object, so a token of one kind is never
trusted where another is expected.
"""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Optional, Type, Union

import jwt

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service.errors import (
    InternalFailureError,
    InvalidTokenError,
    MalformedTokenError,
    TokenExpiredError,
    UnknownKeyError,
    WrongTokenKindError,
)
from authkernel.service.keys import KeyRing
from authkernel.storage.models import Credential

logger = get_logger(__name__)

ALGORITHM = "RS256"
_REQUIRED_CLAIMS = ["exp", "iat", "nbf", "iss", "aud", "sub"]


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    IDENTITY = "id"


def hash_jti(jti: str) -> str:
    """Hash a refresh identifier for storage; the clear value is never persisted."""
    return hashlib.sha256(jti.encode("utf-8")).hexdigest()


def _ts(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _opt_str(payload: Mapping[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise MalformedTokenError("invalid token", reason="malformed")
    return value


@dataclass(frozen=True)
class TokenClaims:
    session_id: str
    subject: str
    issuer: str
    audience: str
    issued_at: datetime
    expires_at: datetime

    kind: ClassVar[TokenKind]
    # Claims besides the registered ones a given kind may carry
    extra_claims: ClassVar[tuple[str, ...]] = ()

    @classmethod
    def _base_fields(cls, payload: Mapping[str, Any]) -> Dict[str, Any]:
        sid = payload.get("sid")
        if not isinstance(sid, str) or not sid:
            raise MalformedTokenError("invalid token", reason="malformed")
        audience = payload.get("aud")
        if isinstance(audience, list):
            audience = audience[0] if audience else ""
        return {
            "session_id": sid,
            "subject": str(payload["sub"]),
            "issuer": str(payload["iss"]),
            "audience": str(audience),
            "issued_at": _ts(payload["iat"]),
            "expires_at": _ts(payload["exp"]),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "TokenClaims":
        return cls(**cls._base_fields(payload))


@dataclass(frozen=True)
class AccessClaims(TokenClaims):
    email: Optional[str] = None
    role: Optional[str] = None

    kind: ClassVar[TokenKind] = TokenKind.ACCESS
    extra_claims: ClassVar[tuple[str, ...]] = ("email", "role")

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "AccessClaims":
        return cls(
            **cls._base_fields(payload),
            email=_opt_str(payload, "email"),
            role=_opt_str(payload, "role"),
        )


@dataclass(frozen=True)
class RefreshClaims(TokenClaims):
    jti: str = ""

    kind: ClassVar[TokenKind] = TokenKind.REFRESH

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "RefreshClaims":
        jti = payload.get("jti")
        if not isinstance(jti, str) or not jti:
            raise MalformedTokenError("invalid token", reason="missing_jti")
        return cls(**cls._base_fields(payload), jti=jti)


@dataclass(frozen=True)
class IdentityClaims(TokenClaims):
    email: Optional[str] = None
    name: Optional[str] = None
    role: Optional[str] = None

    kind: ClassVar[TokenKind] = TokenKind.IDENTITY
    extra_claims: ClassVar[tuple[str, ...]] = ("email", "name", "role")

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "IdentityClaims":
        return cls(
            **cls._base_fields(payload),
            email=_opt_str(payload, "email"),
            name=_opt_str(payload, "name"),
            role=_opt_str(payload, "role"),
        )


AnyClaims = Union[AccessClaims, RefreshClaims, IdentityClaims]

_CLAIMS_BY_KIND: Dict[TokenKind, Type[TokenClaims]] = {
    TokenKind.ACCESS: AccessClaims,
    TokenKind.REFRESH: RefreshClaims,
    TokenKind.IDENTITY: IdentityClaims,
}


@dataclass(frozen=True)
class IssuedToken:
    token: str
    kind: TokenKind
    expires_at: datetime
    jti: Optional[str] = None


@dataclass(frozen=True)
class TokenSet:
    access: IssuedToken
    refresh: IssuedToken
    identity: Optional[IssuedToken] = None

    @property
    def refresh_jti(self) -> str:
        return self.refresh.jti or ""

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "access_token": self.access.token,
            "refresh_token": self.refresh.token,
            "token_type": "bearer",
            "access_expires_at": self.access.expires_at,
            "refresh_expires_at": self.refresh.expires_at,
        }
        if self.identity is not None:
            body["id_token"] = self.identity.token
        return body


class TokenService:
    """Stateless signer/verifier over a :class:`KeyRing`."""

    def __init__(self, keys: KeyRing, settings: Settings) -> None:
        self.keys = keys
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self.leeway = settings.jwt_clock_tolerance_seconds
        self.ttls = {
            TokenKind.ACCESS: settings.access_token_ttl_seconds,
            TokenKind.REFRESH: settings.refresh_token_ttl_seconds,
            TokenKind.IDENTITY: settings.identity_token_ttl_seconds,
        }

    def ttl_for(self, kind: TokenKind) -> int:
        return self.ttls[kind]

    def jwks(self) -> Dict[str, Any]:
        return self.keys.jwks()

    def issue(
        self,
        kind: TokenKind,
        *,
        session_id: str,
        subject: str,
        claims: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> IssuedToken:
        now = now or datetime.now(timezone.utc)
        expires_at = now + timedelta(seconds=self.ttls[kind])
        payload: Dict[str, Any] = {}
        allowed = _CLAIMS_BY_KIND[kind].extra_claims
        for key, value in (claims or {}).items():
            if key in allowed and value is not None:
                payload[key] = value
        payload.update(
            {
                "typ": kind.value,
                "sid": session_id,
                "sub": subject,
                "iss": self.issuer,
                "aud": self.audience,
                "iat": int(now.timestamp()),
                "nbf": int(now.timestamp()),
                "exp": int(expires_at.timestamp()),
            }
        )
        jti: Optional[str] = None
        if kind is TokenKind.REFRESH:
            jti = str(uuid.uuid4())
            payload["jti"] = jti
        try:
            token = jwt.encode(
                payload,
                self.keys.private_key,
                algorithm=ALGORITHM,
                headers={"kid": self.keys.kid},
            )
        except (ValueError, TypeError, jwt.PyJWTError) as exc:
            logger.error("token_sign_failed", kind=kind.value, error_type=type(exc).__name__)
            raise InternalFailureError("unable to sign token") from exc
        return IssuedToken(token=token, kind=kind, expires_at=expires_at, jti=jti)

    def issue_token_set(
        self,
        session_id: str,
        credential: Credential,
        *,
        include_identity: bool = True,
        now: Optional[datetime] = None,
    ) -> TokenSet:
        now = now or datetime.now(timezone.utc)
        access = self.issue(
            TokenKind.ACCESS,
            session_id=session_id,
            subject=credential.id,
            claims={"email": credential.email, "role": credential.role},
            now=now,
        )
        refresh = self.issue(
            TokenKind.REFRESH, session_id=session_id, subject=credential.id, now=now
        )
        identity = None
        if include_identity:
            identity = self.issue(
                TokenKind.IDENTITY,
                session_id=session_id,
                subject=credential.id,
                claims={
                    "email": credential.email,
                    "name": credential.name,
                    "role": credential.role,
                },
                now=now,
            )
        return TokenSet(access=access, refresh=refresh, identity=identity)

    def verify(self, token: str, expected_kind: TokenKind) -> AnyClaims:
        if not token or not isinstance(token, str):
            raise MalformedTokenError("invalid token")
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise MalformedTokenError("invalid token") from exc
        if header.get("alg") != ALGORITHM:
            raise MalformedTokenError("invalid token", reason="unsupported_algorithm")
        public_key = self.keys.public_key_for(header.get("kid"))
        if public_key is None:
            raise UnknownKeyError("invalid token")

        try:
            payload = jwt.decode(
                token,
                public_key,
                algorithms=[ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                leeway=self.leeway,
                options={"require": _REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenExpiredError("token expired") from exc
        except jwt.ImmatureSignatureError as exc:
            raise InvalidTokenError("invalid token", reason="not_yet_valid") from exc
        except (jwt.InvalidAudienceError, jwt.InvalidIssuerError, jwt.MissingRequiredClaimError) as exc:
            raise InvalidTokenError("invalid token", reason="invalid_claims") from exc
        except jwt.InvalidSignatureError as exc:
            raise InvalidTokenError("invalid token", reason="invalid_signature") from exc
        except jwt.DecodeError as exc:
            raise MalformedTokenError("invalid token") from exc
        except jwt.PyJWTError as exc:
            raise InvalidTokenError("invalid token") from exc

        typ = payload.get("typ")
        try:
            actual_kind = TokenKind(typ)
        except ValueError as exc:
            raise MalformedTokenError("invalid token", reason="unknown_kind") from exc
        if actual_kind is not expected_kind:
            logger.warning(
                "token_kind_mismatch",
                expected_kind=expected_kind.value,
                actual_kind=actual_kind.value,
            )
            raise WrongTokenKindError("invalid token type")

        try:
            return _CLAIMS_BY_KIND[actual_kind].from_payload(payload)  # type: ignore[return-value]
        except (KeyError, TypeError, ValueError, OverflowError) as exc:
            raise MalformedTokenError("invalid token") from exc
