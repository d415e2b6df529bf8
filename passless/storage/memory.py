from __future__ import annotations

import threading
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from passless.logging import get_logger
from passless.storage.errors import ConstraintViolation
from passless.storage.models import (
    ADMIN_ROLE,
    DEFAULT_ROLE,
    LoginSession,
    RegistrationSession,
    Role,
    TokenSession,
    User,
    UserRole,
    utcnow,
)


class MemoryStore:
    """In-memory credential store for tests and single-process development.

    Every public method runs under one re-entrant lock, so each call is
    atomic with respect to concurrent callers in other threads.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.roles: Dict[str, Role] = {}
        self.user_roles: List[UserRole] = []
        self.registration_sessions: Dict[str, RegistrationSession] = {}
        # keyed by email
        self.login_sessions: Dict[str, LoginSession] = {}
        # keyed by refresh token hash
        self.token_sessions: Dict[str, TokenSession] = {}
        self._data_lock = threading.RLock()
        for name in (DEFAULT_ROLE, ADMIN_ROLE):
            self.create_role(name)

    # -- uniqueness pre-checks -------------------------------------------

    def nickname_exists(self, nickname: str) -> bool:
        with self._data_lock:
            return any(u.nickname == nickname for u in self.users.values())

    def email_exists(self, email: str) -> bool:
        with self._data_lock:
            return any(u.email == email for u in self.users.values())

    # -- users -----------------------------------------------------------

    def _insert_user(
        self,
        first_name: str,
        last_name: str,
        nickname: str,
        email: str,
        email_verified: bool,
    ) -> User:
        if self.nickname_exists(nickname):
            raise ConstraintViolation("nickname already exists", {"field": "nickname"})
        if self.email_exists(email):
            raise ConstraintViolation("email already exists", {"field": "email"})
        user = User(
            id=str(uuid.uuid4()),
            first_name=first_name,
            last_name=last_name,
            nickname=nickname,
            email=email,
            email_verified=email_verified,
        )
        self.users[user.id] = user
        return user

    def create_user(
        self,
        first_name: str,
        last_name: str,
        nickname: str,
        email: str,
        *,
        email_verified: bool = False,
    ) -> User:
        with self._data_lock:
            return self._insert_user(first_name, last_name, nickname, email, email_verified)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_verified = True
            user.updated_at = utcnow()
            return user

    # -- registration sessions -------------------------------------------

    def create_registration_session(self, session: RegistrationSession) -> RegistrationSession:
        with self._data_lock:
            if session.id in self.registration_sessions:
                raise ConstraintViolation("registration session exists", {"field": "id"})
            self.registration_sessions[session.id] = session
            return session

    def get_registration_session(self, session_id: str) -> Optional[RegistrationSession]:
        with self._data_lock:
            return self.registration_sessions.get(session_id)

    def update_registration_session_code(
        self, session_id: str, code: str, code_expires: datetime
    ) -> Optional[RegistrationSession]:
        with self._data_lock:
            session = self.registration_sessions.get(session_id)
            if not session:
                return None
            session.code = code
            session.code_expires = code_expires
            session.attempts = 0
            return session

    def delete_registration_session(self, session_id: str) -> bool:
        with self._data_lock:
            return self.registration_sessions.pop(session_id, None) is not None

    def record_registration_attempt(self, session_id: str, max_attempts: int) -> int:
        with self._data_lock:
            session = self.registration_sessions.get(session_id)
            if not session:
                return 0
            session.attempts += 1
            if session.attempts >= max_attempts:
                self.registration_sessions.pop(session_id, None)
            return session.attempts

    def complete_registration(
        self, session_id: str, code: str, role_name: str = DEFAULT_ROLE
    ) -> Optional[User]:
        """Consume a pending registration and create its verified user.

        Returns ``None`` when no live session matches ``session_id`` and
        ``code``. Nothing is written if the user insert is rejected.
        """
        with self._data_lock:
            session = self.registration_sessions.get(session_id)
            if not session or session.code != code or session.is_expired():
                return None
            role = self.roles.get(role_name)
            if not role:
                raise ConstraintViolation("role does not exist", {"field": "role"})
            user = self._insert_user(
                session.first_name,
                session.last_name,
                session.nickname,
                session.email,
                True,
            )
            self.user_roles.append(UserRole(user_id=user.id, role_id=role.id))
            self.registration_sessions.pop(session_id, None)
            return user

    # -- login sessions --------------------------------------------------

    def create_login_session(self, session: LoginSession) -> LoginSession:
        with self._data_lock:
            # replaces any prior session for the address
            self.login_sessions[session.email] = session
            return session

    def get_login_session_by_email_and_code(
        self, email: str, code: str
    ) -> Optional[LoginSession]:
        with self._data_lock:
            session = self.login_sessions.get(email)
            if not session or session.code != code or session.is_expired():
                return None
            return session

    def get_login_session(self, email: str) -> Optional[LoginSession]:
        with self._data_lock:
            return self.login_sessions.get(email)

    def consume_login_session(
        self, email: str, code: str, token_session: Optional[TokenSession] = None
    ) -> Optional[LoginSession]:
        """Spend a live login code, storing ``token_session`` in the same step.

        Nothing changes when the code does not match or the token session is
        rejected.
        """
        with self._data_lock:
            session = self.get_login_session_by_email_and_code(email, code)
            if not session:
                return None
            if token_session is not None:
                self._check_token_session(token_session)
            self.login_sessions.pop(email, None)
            if token_session is not None:
                self.token_sessions[token_session.refresh_token_hash] = token_session
            return session

    def delete_login_session(self, email: str) -> bool:
        with self._data_lock:
            return self.login_sessions.pop(email, None) is not None

    def record_login_attempt(self, email: str, max_attempts: int) -> int:
        with self._data_lock:
            session = self.login_sessions.get(email)
            if not session:
                return 0
            session.attempts += 1
            if session.attempts >= max_attempts:
                self.login_sessions.pop(email, None)
            return session.attempts

    # -- token sessions --------------------------------------------------

    def _check_token_session(self, session: TokenSession) -> None:
        if session.user_id not in self.users:
            raise ConstraintViolation("user does not exist", {"field": "user_id"})
        if session.refresh_token_hash in self.token_sessions:
            raise ConstraintViolation(
                "refresh token already registered", {"field": "refresh_token"}
            )

    def create_token_session(self, session: TokenSession) -> TokenSession:
        with self._data_lock:
            self._check_token_session(session)
            self.token_sessions[session.refresh_token_hash] = session
            return session

    def get_token_session(self, refresh_token_hash: str) -> Optional[TokenSession]:
        with self._data_lock:
            session = self.token_sessions.get(refresh_token_hash)
            if not session or session.is_expired():
                return None
            return session

    def consume_token_session(self, refresh_token_hash: str) -> Optional[TokenSession]:
        with self._data_lock:
            return self.token_sessions.pop(refresh_token_hash, None)

    def rotate_token_session(
        self, refresh_token_hash: str, replacement: TokenSession
    ) -> Optional[TokenSession]:
        """Revoke one refresh session and store its replacement atomically.

        The old row is removed and returned even when it has expired or
        belongs to another user; the replacement is only stored for a live row
        of the same user. A rejected replacement leaves the old row in place.
        """
        with self._data_lock:
            previous = self.token_sessions.get(refresh_token_hash)
            if previous is None:
                return None
            live = not previous.is_expired() and previous.user_id == replacement.user_id
            if live:
                self._check_token_session(replacement)
            self.token_sessions.pop(refresh_token_hash, None)
            if live:
                self.token_sessions[replacement.refresh_token_hash] = replacement
            return previous

    def delete_token_session(self, session_id: str) -> bool:
        with self._data_lock:
            for key, session in list(self.token_sessions.items()):
                if session.id == session_id:
                    self.token_sessions.pop(key, None)
                    return True
            return False

    def delete_user_token_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [k for k, s in self.token_sessions.items() if s.user_id == user_id]
            for key in stale:
                self.token_sessions.pop(key, None)
            return len(stale)

    # -- roles -----------------------------------------------------------

    def create_role(self, name: str) -> Role:
        with self._data_lock:
            existing = self.roles.get(name)
            if existing:
                return existing
            role = Role(id=str(uuid.uuid4()), name=name)
            self.roles[name] = role
            return role

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            return self.roles.get(name)

    def assign_role_to_user(self, user_id: str, role_name: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})
            role = self.roles.get(role_name)
            if not role:
                raise ConstraintViolation("role does not exist", {"field": "role"})
            if any(
                ur.user_id == user_id and ur.role_id == role.id for ur in self.user_roles
            ):
                return False
            self.user_roles.append(UserRole(user_id=user_id, role_id=role.id))
            return True

    def get_user_role_names(self, user_id: str) -> List[str]:
        with self._data_lock:
            names_by_id = {role.id: role.name for role in self.roles.values()}
            return sorted(
                names_by_id[ur.role_id]
                for ur in self.user_roles
                if ur.user_id == user_id and ur.role_id in names_by_id
            )

    def has_role(self, user_id: str, role_name: str) -> bool:
        return role_name in self.get_user_role_names(user_id)

    # -- maintenance -----------------------------------------------------

    def delete_expired_sessions(self) -> Dict[str, int]:
        now = utcnow()
        with self._data_lock:
            expired_reg = [
                k for k, s in self.registration_sessions.items() if s.is_expired(now)
            ]
            expired_login = [k for k, s in self.login_sessions.items() if s.is_expired(now)]
            expired_tokens = [k for k, s in self.token_sessions.items() if s.is_expired(now)]
            for key in expired_reg:
                self.registration_sessions.pop(key, None)
            for key in expired_login:
                self.login_sessions.pop(key, None)
            for key in expired_tokens:
                self.token_sessions.pop(key, None)
        counts = {
            "registration_sessions": len(expired_reg),
            "login_sessions": len(expired_login),
            "token_sessions": len(expired_tokens),
        }
        self.logger.info("expired_sessions_purged", **counts)
        return counts
