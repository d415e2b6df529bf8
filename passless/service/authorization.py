from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from passless.logging import get_logger
from passless.service.auth import CredentialStore
from passless.service.errors import ForbiddenError, StoreUnavailableError, TokenMalformedError
from passless.service.tokens import ACCESS, TokenClaims, TokenCodec
from passless.storage.errors import StoreUnavailable

logger = get_logger(__name__)


@dataclass
class AuthContext:
    user_id: str
    email: str
    nickname: str
    roles: List[str] = field(default_factory=list)
    token_id: Optional[str] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def from_claims(cls, claims: TokenClaims) -> "AuthContext":
        return cls(
            user_id=claims.subject,
            email=claims.email,
            nickname=claims.nickname,
            roles=list(claims.roles),
            token_id=claims.jti,
            expires_at=claims.expires_at,
        )


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class Authorizer:
    """Resolves principals from access tokens and answers role questions.

    Embedded token roles answer the common case. ``fresh=True`` re-reads the
    store so a role revoked after the token was minted is honoured.
    """

    def __init__(self, codec: TokenCodec, store: CredentialStore) -> None:
        self.codec = codec
        self.store = store

    def authenticate(self, authorization_header: Optional[str]) -> AuthContext:
        token = _extract_bearer(authorization_header)
        if not token:
            raise TokenMalformedError("missing bearer token")
        claims = self.codec.verify(token, expected_kind=ACCESS)
        return AuthContext.from_claims(claims)

    def has_role(self, principal: AuthContext, role_name: str, *, fresh: bool = False) -> bool:
        if not fresh:
            return role_name in principal.roles
        try:
            return self.store.has_role(principal.user_id, role_name)
        except StoreUnavailable as exc:
            logger.error("role_check_store_unavailable", user_id=principal.user_id, error=str(exc))
            raise StoreUnavailableError() from exc

    def require_role(self, principal: AuthContext, role_name: str, *, fresh: bool = True) -> None:
        if not self.has_role(principal, role_name, fresh=fresh):
            logger.warning(
                "role_check_denied",
                user_id=principal.user_id,
                role=role_name,
                fresh=fresh,
            )
            raise ForbiddenError(f"role '{role_name}' required", detail={"role": role_name})
