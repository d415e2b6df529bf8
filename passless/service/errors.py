from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import List, Optional, Sequence

# Field-level error codes returned with ValidationFailedError
REQUIRED = "required"
NICKNAME_INVALID = "nickname_invalid"
NICKNAME_TAKEN = "nickname_taken"
EMAIL_INVALID = "email_invalid"
EMAIL_TAKEN = "email_taken"
PRIVACY_POLICY_NOT_ACCEPTED = "privacy_policy_not_accepted"
TOO_LONG = "too_long"


@dataclass(frozen=True)
class FieldError:
    field: str
    code: str
    message: str

    def as_dict(self) -> dict:
        return asdict(self)


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - invalid_code (400)
    - token_invalid / token_expired (401)
    - forbidden (403)
    - not_found (404)
    - store_unavailable (503)
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


class ValidationFailedError(ServiceError):
    """One or more request fields failed validation (400).

    Carries every failing field so a client can fix them in one round trip.
    """

    status_code = 400
    error_code = "validation_error"

    def __init__(self, field_errors: Sequence[FieldError], message: str = "validation failed"):
        self.field_errors: List[FieldError] = list(field_errors)
        super().__init__(
            message,
            detail={"fields": [err.as_dict() for err in self.field_errors]},
        )

    @property
    def fields(self) -> List[str]:
        return [err.field for err in self.field_errors]


class SessionNotFoundOrExpiredError(ServiceError):
    """Unknown session, wrong code and expired code all look the same (400)."""

    status_code = 400
    error_code = "invalid_code"

    def __init__(self, message: str = "invalid or expired code") -> None:
        super().__init__(message)


class UserNotFoundError(ServiceError):
    """Requested user does not exist (404)."""

    status_code = 404
    error_code = "not_found"

    def __init__(self, message: str = "user not found") -> None:
        super().__init__(message)


class TokenInvalidError(ServiceError):
    """Token failed verification or has no live server-side session (401)."""

    status_code = 401
    error_code = "token_invalid"

    def __init__(self, message: str = "token invalid") -> None:
        super().__init__(message)


class TokenMalformedError(TokenInvalidError):
    """Token structure, header or required claims are unusable."""


class TokenSignatureError(TokenInvalidError):
    """Token signature does not match the signing secret."""


class TokenKindError(TokenInvalidError):
    """An access token was presented where a refresh token was expected, or vice versa."""


class TokenExpiredError(ServiceError):
    """Token was valid but its expiry has passed (401)."""

    status_code = 401
    error_code = "token_expired"

    def __init__(self, message: str = "token expired") -> None:
        super().__init__(message)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""

    status_code = 403
    error_code = "forbidden"


class StoreUnavailableError(ServiceError):
    """Backing store could not be reached; safe for the caller to retry (503)."""

    status_code = 503
    error_code = "store_unavailable"

    def __init__(self, message: str = "credential store unavailable") -> None:
        super().__init__(message)


__all__ = [
    "FieldError",
    "ServiceError",
    "ValidationFailedError",
    "SessionNotFoundOrExpiredError",
    "UserNotFoundError",
    "TokenInvalidError",
    "TokenMalformedError",
    "TokenSignatureError",
    "TokenKindError",
    "TokenExpiredError",
    "ForbiddenError",
    "StoreUnavailableError",
]
