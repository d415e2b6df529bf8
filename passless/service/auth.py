from __future__ import annotations

import asyncio
import contextlib
import hmac
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Protocol

from passless.config import Settings
from passless.logging import get_logger
from passless.service.codes import code_expiry, generate_code, is_well_formed_code
from passless.service.email import LOGIN, VERIFY_EMAIL, Notifier
from passless.service.errors import (
    EMAIL_INVALID,
    EMAIL_TAKEN,
    NICKNAME_INVALID,
    NICKNAME_TAKEN,
    PRIVACY_POLICY_NOT_ACCEPTED,
    REQUIRED,
    TOO_LONG,
    FieldError,
    SessionNotFoundOrExpiredError,
    StoreUnavailableError,
    TokenExpiredError,
    TokenInvalidError,
    UserNotFoundError,
    ValidationFailedError,
)
from passless.service.tokens import ACCESS, REFRESH, TokenCodec, claims_for, hash_refresh_token
from passless.service.validation import NAME_MAX_LENGTH, is_valid_nickname, normalize_email
from passless.storage.errors import ConstraintViolation, StoreUnavailable
from passless.storage.models import (
    DEFAULT_ROLE,
    LoginSession,
    RegistrationSession,
    Role,
    TokenSession,
    User,
    utcnow,
)

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def nickname_exists(self, nickname: str) -> bool: ...

    def email_exists(self, email: str) -> bool: ...

    def create_user(
        self,
        first_name: str,
        last_name: str,
        nickname: str,
        email: str,
        *,
        email_verified: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def create_registration_session(self, session: RegistrationSession) -> RegistrationSession: ...

    def get_registration_session(self, session_id: str) -> Optional[RegistrationSession]: ...

    def update_registration_session_code(
        self, session_id: str, code: str, code_expires: datetime
    ) -> Optional[RegistrationSession]: ...

    def delete_registration_session(self, session_id: str) -> bool: ...

    def record_registration_attempt(self, session_id: str, max_attempts: int) -> int: ...

    def complete_registration(
        self, session_id: str, code: str, role_name: str = DEFAULT_ROLE
    ) -> Optional[User]: ...

    def create_login_session(self, session: LoginSession) -> LoginSession: ...

    def get_login_session(self, email: str) -> Optional[LoginSession]: ...

    def get_login_session_by_email_and_code(
        self, email: str, code: str
    ) -> Optional[LoginSession]: ...

    def consume_login_session(
        self, email: str, code: str, token_session: Optional[TokenSession] = None
    ) -> Optional[LoginSession]: ...

    def delete_login_session(self, email: str) -> bool: ...

    def record_login_attempt(self, email: str, max_attempts: int) -> int: ...

    def create_token_session(self, session: TokenSession) -> TokenSession: ...

    def get_token_session(self, refresh_token_hash: str) -> Optional[TokenSession]: ...

    def consume_token_session(self, refresh_token_hash: str) -> Optional[TokenSession]: ...

    def rotate_token_session(
        self, refresh_token_hash: str, replacement: TokenSession
    ) -> Optional[TokenSession]: ...

    def delete_token_session(self, session_id: str) -> bool: ...

    def delete_user_token_sessions(self, user_id: str) -> int: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def assign_role_to_user(self, user_id: str, role_name: str) -> bool: ...

    def get_user_role_names(self, user_id: str) -> List[str]: ...

    def has_role(self, user_id: str, role_name: str) -> bool: ...

    def delete_expired_sessions(self) -> Dict[str, int]: ...


@dataclass(frozen=True)
class DisclosurePolicy:
    """What the engine may reveal to the transport layer.

    ``expose_codes`` echoes one-time codes in results and must stay off in
    production. ``mask_missing_registration_session`` answers a resend for an
    unknown session with a fabricated result instead of an error.
    """

    expose_codes: bool = False
    mask_missing_registration_session: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "DisclosurePolicy":
        return cls(
            expose_codes=settings.codes_exposed,
            mask_missing_registration_session=settings.mask_missing_registration_session,
        )


@dataclass
class RegistrationInput:
    first_name: str
    last_name: str
    nickname: str
    email: str
    accepted_privacy_policy: bool


@dataclass
class RegistrationResult:
    session_id: str
    code_expires: datetime
    code: Optional[str] = None


@dataclass
class LoginCodeResult:
    email: str
    code_expires: datetime
    code: Optional[str] = None


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


class AuthService:
    """Registration, login and refresh-token flows for email-code sign-in.

    The service keeps no state between calls; every guarantee about
    single-use codes and refresh rotation comes from the store.
    """

    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        notifier: Notifier,
        settings: Settings,
        *,
        policy: Optional[DisclosurePolicy] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.notifier = notifier
        self.settings = settings
        self.policy = policy or DisclosurePolicy.from_settings(settings)
        self.logger = logger

    @contextlib.contextmanager
    def _store_guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except StoreUnavailable as exc:
            self.logger.error("auth_store_unavailable", operation=operation, error=str(exc))
            raise StoreUnavailableError() from exc

    def _new_code(self) -> tuple[str, datetime]:
        return generate_code(), code_expiry(utcnow(), self.settings.verification_code_ttl_minutes)

    def _visible_code(self, code: str) -> Optional[str]:
        return code if self.policy.expose_codes else None

    async def _deliver(self, email: str, code: str, purpose: str) -> None:
        try:
            delivered = await asyncio.to_thread(
                self.notifier.send_code, email, code, purpose=purpose
            )
        except Exception as exc:
            self.logger.error(
                "code_delivery_failed",
                email=email,
                purpose=purpose,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not delivered:
            self.logger.warning("code_delivery_failed", email=email, purpose=purpose)

    # registration

    def _validate_registration(self, data: RegistrationInput) -> tuple[RegistrationInput, List[FieldError]]:
        errors: List[FieldError] = []
        first_name = (data.first_name or "").strip()
        last_name = (data.last_name or "").strip()
        nickname = (data.nickname or "").strip()
        email = (data.email or "").strip()

        for field_name, value in (("first_name", first_name), ("last_name", last_name)):
            if not value:
                errors.append(FieldError(field_name, REQUIRED, f"{field_name} is required"))
            elif len(value) > NAME_MAX_LENGTH:
                errors.append(
                    FieldError(
                        field_name,
                        TOO_LONG,
                        f"{field_name} must be at most {NAME_MAX_LENGTH} characters",
                    )
                )

        if not nickname:
            errors.append(FieldError("nickname", REQUIRED, "nickname is required"))
        elif not is_valid_nickname(nickname):
            errors.append(
                FieldError(
                    "nickname",
                    NICKNAME_INVALID,
                    "nickname must be 3-32 letters or digits",
                )
            )
        elif self.store.nickname_exists(nickname):
            errors.append(FieldError("nickname", NICKNAME_TAKEN, "nickname is already taken"))

        if not email:
            errors.append(FieldError("email", REQUIRED, "email is required"))
        else:
            try:
                email = normalize_email(email)
            except ValueError:
                errors.append(FieldError("email", EMAIL_INVALID, "email address is invalid"))
            else:
                if self.store.email_exists(email):
                    errors.append(
                        FieldError("email", EMAIL_TAKEN, "email address is already registered")
                    )

        if data.accepted_privacy_policy is not True:
            errors.append(
                FieldError(
                    "accepted_privacy_policy",
                    PRIVACY_POLICY_NOT_ACCEPTED,
                    "the privacy policy must be accepted",
                )
            )

        cleaned = RegistrationInput(
            first_name=first_name,
            last_name=last_name,
            nickname=nickname,
            email=email,
            accepted_privacy_policy=bool(data.accepted_privacy_policy),
        )
        return cleaned, errors

    async def create_registration_session(self, data: RegistrationInput) -> RegistrationResult:
        with self._store_guard("create_registration_session"):
            cleaned, errors = self._validate_registration(data)
            if errors:
                self.logger.info(
                    "registration_rejected", fields=[err.field for err in errors]
                )
                raise ValidationFailedError(errors)
            code, expires = self._new_code()
            session = RegistrationSession.new(
                first_name=cleaned.first_name,
                last_name=cleaned.last_name,
                nickname=cleaned.nickname,
                email=cleaned.email,
                accepted_privacy_policy=cleaned.accepted_privacy_policy,
                code=code,
                code_expires=expires,
            )
            self.store.create_registration_session(session)
        self.logger.info(
            "registration_session_created",
            session_id=session.id,
            email=session.email,
        )
        await self._deliver(session.email, code, VERIFY_EMAIL)
        return RegistrationResult(
            session_id=session.id,
            code_expires=session.code_expires,
            code=self._visible_code(code),
        )

    async def confirm_email(self, session_id: str, code: str) -> User:
        if not session_id or not is_well_formed_code(code):
            raise SessionNotFoundOrExpiredError()
        with self._store_guard("confirm_email"):
            session = self.store.get_registration_session(session_id)
            if not session or session.is_expired():
                self.logger.info("registration_confirm_rejected", session_id=session_id)
                raise SessionNotFoundOrExpiredError()
            if not hmac.compare_digest(session.code, code):
                attempts = self.store.record_registration_attempt(
                    session_id, self.settings.max_code_attempts
                )
                self.logger.warning(
                    "registration_code_mismatch",
                    session_id=session_id,
                    attempts=attempts,
                    locked=attempts >= self.settings.max_code_attempts,
                )
                raise SessionNotFoundOrExpiredError()
            try:
                user = self.store.complete_registration(session_id, code, DEFAULT_ROLE)
            except ConstraintViolation as exc:
                taken = {"nickname": NICKNAME_TAKEN, "email": EMAIL_TAKEN}
                if exc.field not in taken:
                    raise
                self.logger.info("registration_conflict", field=exc.field, session_id=session_id)
                raise ValidationFailedError(
                    [FieldError(exc.field, taken[exc.field], f"{exc.field} is already taken")]
                ) from exc
        if user is None:
            # lost a race with a concurrent confirmation or expiry
            raise SessionNotFoundOrExpiredError()
        self.logger.info("user_registered", user_id=user.id, session_id=session_id)
        return user

    async def resend_verification_code(self, session_id: str) -> RegistrationResult:
        code, expires = self._new_code()
        with self._store_guard("resend_verification_code"):
            session = (
                self.store.update_registration_session_code(session_id, code, expires)
                if session_id
                else None
            )
        if session is None:
            if not self.policy.mask_missing_registration_session:
                raise SessionNotFoundOrExpiredError()
            self.logger.info("resend_masked_missing_session", session_id=session_id)
            return RegistrationResult(
                session_id=session_id, code_expires=expires, code=self._visible_code(code)
            )
        self.logger.info("verification_code_resent", session_id=session.id)
        await self._deliver(session.email, code, VERIFY_EMAIL)
        return RegistrationResult(
            session_id=session.id,
            code_expires=session.code_expires,
            code=self._visible_code(code),
        )

    # login

    async def send_login_code(self, email: str) -> LoginCodeResult:
        try:
            normalized = normalize_email(email or "")
        except ValueError:
            raise ValidationFailedError(
                [FieldError("email", EMAIL_INVALID, "email address is invalid")]
            )
        code, expires = self._new_code()
        with self._store_guard("send_login_code"):
            # the session is written whether or not the account exists
            self.store.create_login_session(LoginSession.new(normalized, code, expires))
            user = self.store.get_user_by_email(normalized)
        if user:
            await self._deliver(normalized, code, LOGIN)
        else:
            self.logger.info("login_code_unknown_email", email=normalized)
        return LoginCodeResult(
            email=normalized, code_expires=expires, code=self._visible_code(code)
        )

    async def confirm_login(
        self,
        email: str,
        code: str,
        *,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> TokenPair:
        try:
            normalized = normalize_email(email or "")
        except ValueError:
            raise SessionNotFoundOrExpiredError()
        if not is_well_formed_code(code):
            raise SessionNotFoundOrExpiredError()
        with self._store_guard("confirm_login"):
            user = self.store.get_user_by_email(normalized)
            pair: Optional[TokenPair] = None
            token_session: Optional[TokenSession] = None
            if user:
                roles = self.store.get_user_role_names(user.id)
                pair, token_session = self._mint_pair(user, roles, user_agent=user_agent, ip=ip)
            # the code is spent and the refresh session written in one store call
            try:
                session = self.store.consume_login_session(normalized, code, token_session)
            except ConstraintViolation as exc:
                self.logger.warning("login_session_write_rejected", field=exc.field)
                raise SessionNotFoundOrExpiredError()
            if session is None:
                attempts = self.store.record_login_attempt(
                    normalized, self.settings.max_code_attempts
                )
                self.logger.warning(
                    "login_code_rejected",
                    email=normalized,
                    attempts=attempts,
                    locked=attempts >= self.settings.max_code_attempts,
                )
                raise SessionNotFoundOrExpiredError()
            if not user or pair is None:
                self.logger.info("login_confirm_unknown_email", email=normalized)
                raise SessionNotFoundOrExpiredError()
        self.logger.info("login_confirmed", user_id=user.id)
        return pair

    # refresh

    def _mint_pair(
        self,
        user: User,
        roles: List[str],
        *,
        user_agent: Optional[str],
        ip: Optional[str],
    ) -> tuple[TokenPair, TokenSession]:
        """Sign an access/refresh pair and build the session that gates the refresh token."""
        claims = claims_for(user.email, user.nickname, roles)
        access = self.codec.mint(user.id, claims, ACCESS)
        refresh = self.codec.mint(user.id, claims, REFRESH)
        session = TokenSession.new(
            user_id=user.id,
            refresh_token_hash=hash_refresh_token(refresh.token),
            expires_at=refresh.expires_at,
            user_agent=user_agent,
            ip_addr=ip,
        )
        pair = TokenPair(
            access_token=access.token,
            refresh_token=refresh.token,
            access_expires_at=access.expires_at,
            refresh_expires_at=refresh.expires_at,
        )
        return pair, session

    async def refresh_token(
        self,
        refresh_token: str,
        *,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> TokenPair:
        """Exchange a refresh token for a new pair, revoking the presented one.

        The signature check and the session lookup are independent: a token
        whose signature verifies is still rejected once its session is gone.
        Revoking the old session and storing the new one is a single store
        call, so a failure leaves the presented token usable.
        """
        token_hash = hash_refresh_token(refresh_token or "")
        with self._store_guard("refresh_token"):
            try:
                claims = self.codec.verify(refresh_token, expected_kind=REFRESH)
            except TokenExpiredError:
                self.store.consume_token_session(token_hash)
                self.logger.info("refresh_token_expired")
                raise
            except TokenInvalidError as exc:
                self.logger.warning("refresh_token_invalid", reason=type(exc).__name__)
                raise

            user = self.store.get_user(claims.subject)
            if not user:
                self.store.consume_token_session(token_hash)
                self.logger.warning("refresh_user_missing", user_id=claims.subject)
                raise TokenInvalidError()
            roles = self.store.get_user_role_names(user.id)
            pair, replacement = self._mint_pair(user, roles, user_agent=user_agent, ip=ip)

            try:
                previous = self.store.rotate_token_session(token_hash, replacement)
            except ConstraintViolation as exc:
                self.logger.warning("refresh_rotation_rejected", field=exc.field)
                raise TokenInvalidError()
            if previous is None:
                # revoked, rotated already, or never issued here
                self.logger.warning("refresh_session_missing", user_id=claims.subject)
                raise TokenInvalidError("refresh session not found")
            if previous.is_expired():
                raise TokenExpiredError()
            if previous.user_id != claims.subject:
                self.logger.warning(
                    "refresh_subject_mismatch",
                    user_id=previous.user_id,
                    subject=claims.subject,
                )
                raise TokenInvalidError()
        self.logger.info("refresh_token_rotated", user_id=user.id, session_id=previous.id)
        return pair

    async def logout(self, refresh_token: str) -> bool:
        """Revoke the session behind one refresh token; expired tokens are accepted."""
        try:
            self.codec.verify(refresh_token, expected_kind=REFRESH)
        except TokenExpiredError:
            pass
        with self._store_guard("logout"):
            session = self.store.consume_token_session(hash_refresh_token(refresh_token))
        if session:
            self.logger.info("refresh_session_revoked", user_id=session.user_id)
        return session is not None

    async def logout_everywhere(self, user_id: str) -> int:
        with self._store_guard("logout_everywhere"):
            revoked = self.store.delete_user_token_sessions(user_id)
        self.logger.info("user_sessions_revoked", user_id=user_id, count=revoked)
        return revoked

    # lookups and maintenance

    async def get_user(self, user_id: str) -> User:
        with self._store_guard("get_user"):
            user = self.store.get_user(user_id)
        if not user:
            raise UserNotFoundError()
        return user

    async def get_user_roles(self, user_id: str) -> List[str]:
        with self._store_guard("get_user_roles"):
            return self.store.get_user_role_names(user_id)

    async def cleanup_expired_sessions(self) -> Dict[str, int]:
        with self._store_guard("cleanup_expired_sessions"):
            return self.store.delete_expired_sessions()
