from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Sequence

from passless.config import Settings
from passless.logging import get_logger
from passless.service.errors import (
    TokenExpiredError,
    TokenKindError,
    TokenMalformedError,
    TokenSignatureError,
)

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
TOKEN_KINDS = (ACCESS, REFRESH)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def hash_refresh_token(token: str) -> str:
    """Digest stored server-side in place of the raw refresh token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class MintedToken:
    token: str
    jti: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    email: str
    nickname: str
    kind: str
    jti: str
    issued_at: datetime
    expires_at: datetime
    roles: List[str] = field(default_factory=list)


class TokenCodec:
    """HS256 compact JWS tokens carrying identity and role claims.

    Verification is pure: it never consults the store. Refresh-token
    revocation is decided separately against the token session table.
    """

    def __init__(
        self,
        secret: str,
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        *,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenCodec":
        return cls(
            settings.jwt_secret,
            settings.jwt_issuer,
            settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
        )

    def ttl_for(self, kind: str) -> timedelta:
        return self.access_ttl if kind == ACCESS else self.refresh_ttl

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def mint(
        self,
        subject: str,
        claims: dict[str, Any],
        kind: str,
        ttl: Optional[timedelta] = None,
    ) -> MintedToken:
        """Sign a token for ``subject``.

        ``claims`` supplies ``email``, ``nickname`` and ``roles``; registered
        claims (iss, aud, sub, typ, jti, iat, exp) are always set here.
        """
        if kind not in TOKEN_KINDS:
            raise ValueError(f"unknown token kind: {kind}")
        now = self._clock().replace(microsecond=0)
        expires_at = now + (ttl if ttl is not None else self.ttl_for(kind))
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "email": claims.get("email", ""),
            "nickname": claims.get("nickname", ""),
            "roles": list(claims.get("roles") or []),
            "typ": kind,
            "jti": jti,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{self._sign(signing_input)}"
        return MintedToken(token=token, jti=jti, expires_at=expires_at)

    def verify(self, token: str, expected_kind: Optional[str] = None) -> TokenClaims:
        if not isinstance(token, str):
            raise TokenMalformedError("token must be a string")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenMalformedError("token must have three segments")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenMalformedError("token header is not valid JSON")
        # reject alg=none and algorithm confusion
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenMalformedError("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenSignatureError("token signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenMalformedError("token payload is not valid JSON")
        if not isinstance(payload, dict):
            raise TokenMalformedError("token payload must be an object")

        if payload.get("iss") != self.issuer:
            raise TokenMalformedError("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenMalformedError("token audience mismatch")

        claims = self._parse_claims(payload)
        if expected_kind is not None and claims.kind != expected_kind:
            raise TokenKindError(f"expected {expected_kind} token")
        if claims.expires_at <= self._clock():
            raise TokenExpiredError()
        return claims

    @staticmethod
    def _parse_claims(payload: dict[str, Any]) -> TokenClaims:
        def _require_str(name: str) -> str:
            value = payload.get(name)
            if not isinstance(value, str) or (name in ("sub", "jti") and not value):
                raise TokenMalformedError(f"claim '{name}' missing or invalid")
            return value

        def _require_ts(name: str) -> datetime:
            value = payload.get(name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise TokenMalformedError(f"claim '{name}' missing or invalid")
            return datetime.fromtimestamp(value, tz=timezone.utc)

        roles = payload.get("roles")
        if not isinstance(roles, list) or not all(isinstance(r, str) for r in roles):
            raise TokenMalformedError("claim 'roles' missing or invalid")
        kind = _require_str("typ")
        if kind not in TOKEN_KINDS:
            raise TokenMalformedError("claim 'typ' missing or invalid")
        return TokenClaims(
            subject=_require_str("sub"),
            email=_require_str("email"),
            nickname=_require_str("nickname"),
            kind=kind,
            jti=_require_str("jti"),
            issued_at=_require_ts("iat"),
            expires_at=_require_ts("exp"),
            roles=list(roles),
        )


def claims_for(email: str, nickname: str, roles: Sequence[str]) -> dict[str, Any]:
    return {"email": email, "nickname": nickname, "roles": list(roles)}
