from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from authkernel.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutAllRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PrincipalResponse,
    SignupRequest,
    TokenRefreshRequest,
)
from authkernel.logging import get_logger
from authkernel.service.errors import InternalFailureError, InvalidTokenError
from authkernel.service.runtime import get_runtime
from authkernel.service.sessions import AuthContext
from authkernel.service.tokens import TokenSet
from authkernel.storage.models import Credential, RevokeReason, Session

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def bearer_token_from_header(authorization: Optional[str]) -> str:
    if not authorization:
        raise InvalidTokenError("missing bearer token", reason="missing")
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise InvalidTokenError("invalid authorization header", reason="malformed")
    return token.strip()


def _origin(request: Request) -> tuple[Optional[str], Optional[str]]:
    ip_address = request.client.host if request.client else None
    return ip_address, request.headers.get("user-agent")


def _auth_response(credential: Credential, session: Session, tokens: TokenSet) -> AuthResponse:
    return AuthResponse(
        user_id=credential.id,
        session_id=session.id,
        session_expires_at=session.expires_at,
        access_token=tokens.access.token,
        access_expires_at=tokens.access.expires_at,
        refresh_token=tokens.refresh.token,
        refresh_expires_at=tokens.refresh.expires_at,
        id_token=tokens.identity.token if tokens.identity else None,
        role=credential.role,
    )


async def get_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    ip_address, user_agent = _origin(request)
    token = bearer_token_from_header(authorization)
    async with runtime.store.unit_of_work():
        return await runtime.sessions.authenticate(
            token, ip_address=ip_address, user_agent=user_agent
        )


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request):
    runtime = get_runtime()
    ip_address, user_agent = _origin(request)
    async with runtime.store.unit_of_work():
        credential, login = await runtime.credentials.signup(
            body.email,
            body.password,
            name=body.name,
            ip_address=ip_address,
            user_agent=user_agent,
        )
    if login is None:
        raise InternalFailureError("signup did not open a session")
    return Envelope(status="ok", data=_auth_response(credential, login.session, login.tokens))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password and open a new session.

    Raises:
        401: invalid credentials
        423: the email or the client address is locked out
    """
    runtime = get_runtime()
    ip_address, user_agent = _origin(request)
    async with runtime.store.unit_of_work():
        result = await runtime.sessions.login(
            body.email, body.password, ip_address=ip_address, user_agent=user_agent
        )
    return Envelope(
        status="ok", data=_auth_response(result.credential, result.session, result.tokens)
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    """Rotate a refresh token; presenting a spent one revokes every session of its owner."""
    runtime = get_runtime()
    ip_address, user_agent = _origin(request)
    async with runtime.store.unit_of_work():
        result = await runtime.sessions.refresh(
            body.refresh_token, ip_address=ip_address, user_agent=user_agent
        )
        credential = await runtime.store.get_credential(result.session.user_id)
    return Envelope(status="ok", data=_auth_response(credential, result.session, result.tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    ip_address, user_agent = _origin(request)
    async with runtime.store.unit_of_work():
        revoked = await runtime.sessions.logout(
            principal.session_id,
            user_id=principal.user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
    return Envelope(status="ok", data={"revoked": revoked})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(
    request: Request,
    body: Optional[LogoutAllRequest] = None,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    ip_address, user_agent = _origin(request)
    keep = principal.session_id if body and body.keep_current else None
    async with runtime.store.unit_of_work():
        count = await runtime.sessions.revoke_all(
            principal.user_id,
            RevokeReason.LOGOUT,
            except_session_id=keep,
            ip_address=ip_address,
            user_agent=user_agent,
        )
    return Envelope(status="ok", data={"revoked": count})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            user_id=principal.user_id,
            session_id=principal.session_id,
            email=principal.email,
            role=principal.role,
        ),
    )


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    ip_address, user_agent = _origin(request)
    async with runtime.store.unit_of_work():
        revoked = await runtime.credentials.change_password(
            principal.user_id,
            body.current_password,
            body.new_password,
            current_session_id=principal.session_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
    return Envelope(status="ok", data={"revoked_sessions": revoked})


@router.post("/auth/reset/request", response_model=Envelope, tags=["auth"])
async def request_reset(body: PasswordResetRequest, request: Request):
    """Always reports success so the response never reveals whether the email exists."""
    runtime = get_runtime()
    ip_address, user_agent = _origin(request)
    async with runtime.store.unit_of_work():
        raw_token = await runtime.credentials.request_password_reset(
            body.email, ip_address=ip_address, user_agent=user_agent
        )
    if raw_token:
        # Delivery is out of band; the secret itself is never logged
        logger.info("password_reset_issued")
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_reset(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    ip_address, user_agent = _origin(request)
    async with runtime.store.unit_of_work():
        await runtime.credentials.complete_password_reset(
            body.token, body.new_password, ip_address=ip_address, user_agent=user_agent
        )
    return Envelope(status="ok", data={"status": "password_updated"})
