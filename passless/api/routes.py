from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request

from passless.api.schemas import (
    Envelope,
    LoginCodeResponse,
    LoginRequest,
    LogoutResponse,
    RefreshTokenRequest,
    RegisterRequest,
    RegistrationResponse,
    ResendCodeRequest,
    TokenResponse,
    UserResponse,
    VerifyEmailRequest,
    VerifyLoginRequest,
)
from passless.service.auth import RegistrationInput
from passless.service.authorization import AuthContext
from passless.service.errors import UserNotFoundError
from passless.service.runtime import get_runtime
from passless.storage.models import ADMIN_ROLE

router = APIRouter(prefix="/v1")

_MAX_USER_AGENT_LENGTH = 512


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _client_meta(request: Request) -> tuple[Optional[str], Optional[str]]:
    user_agent = request.headers.get("user-agent")
    if user_agent:
        user_agent = user_agent[:_MAX_USER_AGENT_LENGTH]
    ip = request.client.host if request.client else None
    return user_agent, ip


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return runtime.authorizer.authenticate(authorization)


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    runtime = get_runtime()
    # roles are re-read from the store; a revoked admin loses access immediately
    runtime.authorizer.require_role(principal, ADMIN_ROLE, fresh=True)
    return principal


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Start a registration and email a verification code.

    Every invalid field is reported in one 400 response.
    """
    runtime = get_runtime()
    result = await runtime.auth.create_registration_session(
        RegistrationInput(
            first_name=body.first_name,
            last_name=body.last_name,
            nickname=body.nickname,
            email=body.email,
            accepted_privacy_policy=body.accepted_privacy_policy,
        )
    )
    return Envelope(status="ok", data=RegistrationResponse.from_result(result))


@router.post("/auth/verify-email", response_model=Envelope, status_code=201, tags=["auth"])
async def verify_email(body: VerifyEmailRequest):
    runtime = get_runtime()
    user = await runtime.auth.confirm_email(body.session_id, body.code)
    roles = await runtime.auth.get_user_roles(user.id)
    return Envelope(status="ok", data=UserResponse.from_user(user, roles))


@router.post("/auth/resend-code", response_model=Envelope, tags=["auth"])
async def resend_code(body: ResendCodeRequest):
    runtime = get_runtime()
    result = await runtime.auth.resend_verification_code(body.session_id)
    return Envelope(status="ok", data=RegistrationResponse.from_result(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Send a sign-in code.

    The response is identical whether or not the address has an account.
    """
    runtime = get_runtime()
    result = await runtime.auth.send_login_code(body.email)
    return Envelope(status="ok", data=LoginCodeResponse.from_result(result))


@router.post("/auth/verify-login", response_model=Envelope, tags=["auth"])
async def verify_login(body: VerifyLoginRequest, request: Request):
    runtime = get_runtime()
    user_agent, ip = _client_meta(request)
    pair = await runtime.auth.confirm_login(
        body.email, body.code, user_agent=user_agent, ip=ip
    )
    return Envelope(status="ok", data=TokenResponse.from_pair(pair))


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(body: RefreshTokenRequest, request: Request):
    runtime = get_runtime()
    user_agent, ip = _client_meta(request)
    pair = await runtime.auth.refresh_token(
        body.refresh_token, user_agent=user_agent, ip=ip
    )
    return Envelope(status="ok", data=TokenResponse.from_pair(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: RefreshTokenRequest):
    runtime = get_runtime()
    revoked = await runtime.auth.logout(body.refresh_token)
    return Envelope(status="ok", data=LogoutResponse(revoked=int(revoked)))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_everywhere(principal.user_id)
    return Envelope(status="ok", data=LogoutResponse(revoked=revoked))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    try:
        user = await runtime.auth.get_user(principal.user_id)
    except UserNotFoundError:
        # a valid token for a deleted account
        raise _http_error("token_invalid", "account no longer exists", status_code=401)
    return Envelope(status="ok", data=UserResponse.from_user(user, principal.roles))


@router.get("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_get_user(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await runtime.auth.get_user(user_id)
    roles = await runtime.auth.get_user_roles(user.id)
    return Envelope(status="ok", data=UserResponse.from_user(user, roles))
