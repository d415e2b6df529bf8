from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

DEFAULT_ROLE = "user"
ADMIN_ROLE = "admin"


def utcnow() -> datetime:
    """Current UTC time truncated to whole seconds."""
    return datetime.now(timezone.utc).replace(microsecond=0)


@dataclass
class User:
    id: str
    first_name: str
    last_name: str
    nickname: str
    email: str
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Role:
    id: str
    name: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class UserRole:
    user_id: str
    role_id: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RegistrationSession:
    """Pending registration awaiting email confirmation."""

    id: str
    first_name: str
    last_name: str
    nickname: str
    email: str
    accepted_privacy_policy: bool
    code: str
    code_expires: datetime
    attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        *,
        first_name: str,
        last_name: str,
        nickname: str,
        email: str,
        accepted_privacy_policy: bool,
        code: str,
        code_expires: datetime,
    ) -> "RegistrationSession":
        return cls(
            id=str(uuid.uuid4()),
            first_name=first_name,
            last_name=last_name,
            nickname=nickname,
            email=email,
            accepted_privacy_policy=accepted_privacy_policy,
            code=code,
            code_expires=code_expires,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.code_expires


@dataclass
class LoginSession:
    """One-time login code, at most one per email."""

    id: str
    email: str
    code: str
    code_expires: datetime
    attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, email: str, code: str, code_expires: datetime) -> "LoginSession":
        return cls(id=str(uuid.uuid4()), email=email, code=code, code_expires=code_expires)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.code_expires


@dataclass
class TokenSession:
    """Server-side record gating one refresh token."""

    id: str
    user_id: str
    refresh_token_hash: str
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token_hash: str,
        expires_at: datetime,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> "TokenSession":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_token_hash=refresh_token_hash,
            expires_at=expires_at,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

