from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from passless.service.auth import LoginCodeResult, RegistrationResult, TokenPair
from passless.storage.models import User

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "invalid_code",
    "unauthorized",
    "token_invalid",
    "token_expired",
    "forbidden",
    "not_found",
    "conflict",
    "store_unavailable",
    "server_error",
})

# Upper bound on free-text request fields; engine validation applies the real limits
_MAX_FIELD_LENGTH = 512
_MAX_TOKEN_LENGTH = 4096


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Uniform API response envelope."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class RegisterRequest(BaseModel):
    # Fields are deliberately loose so the engine can report every problem at once
    model_config = ConfigDict(extra="forbid")

    first_name: str = Field("", max_length=_MAX_FIELD_LENGTH)
    last_name: str = Field("", max_length=_MAX_FIELD_LENGTH)
    nickname: str = Field("", max_length=_MAX_FIELD_LENGTH)
    email: str = Field("", max_length=_MAX_FIELD_LENGTH)
    accepted_privacy_policy: bool = False


class RegistrationResponse(BaseModel):
    session_id: str
    code_expires: datetime
    code: Optional[str] = None

    @classmethod
    def from_result(cls, result: RegistrationResult) -> "RegistrationResponse":
        return cls(
            session_id=result.session_id,
            code_expires=result.code_expires,
            code=result.code,
        )


class VerifyEmailRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str = Field(..., max_length=_MAX_FIELD_LENGTH)
    code: str = Field(..., max_length=_MAX_FIELD_LENGTH)


class ResendCodeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str = Field(..., max_length=_MAX_FIELD_LENGTH)


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(..., max_length=_MAX_FIELD_LENGTH)


class LoginCodeResponse(BaseModel):
    message: str = "if the address belongs to an account, a sign-in code has been sent"
    code_expires: datetime
    code: Optional[str] = None

    @classmethod
    def from_result(cls, result: LoginCodeResult) -> "LoginCodeResponse":
        return cls(code_expires=result.code_expires, code=result.code)


class VerifyLoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(..., max_length=_MAX_FIELD_LENGTH)
    code: str = Field(..., max_length=_MAX_FIELD_LENGTH)


class RefreshTokenRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    refresh_token: str = Field(..., min_length=1, max_length=_MAX_TOKEN_LENGTH)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            access_expires_at=pair.access_expires_at,
            refresh_expires_at=pair.refresh_expires_at,
        )


class UserResponse(BaseModel):
    id: str
    first_name: str
    last_name: str
    nickname: str
    email: str
    email_verified: bool
    roles: List[str] = Field(default_factory=list)
    created_at: datetime

    @classmethod
    def from_user(cls, user: User, roles: Optional[List[str]] = None) -> "UserResponse":
        return cls(
            id=user.id,
            first_name=user.first_name,
            last_name=user.last_name,
            nickname=user.nickname,
            email=user.email,
            email_verified=user.email_verified,
            roles=list(roles or []),
            created_at=user.created_at,
        )


class LogoutResponse(BaseModel):
    revoked: int
