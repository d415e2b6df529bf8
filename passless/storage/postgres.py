from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from passless.logging import get_logger
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

_REQUIRED_TABLES = (
    "app_user",
    "role",
    "user_role",
    "registration_session",
    "login_session",
    "token_session",
)

# unique constraint name -> request field it protects
_CONSTRAINT_FIELDS = {
    "app_user_nickname_key": "nickname",
    "app_user_email_key": "email",
    "token_session_refresh_token_hash_key": "refresh_token",
    "user_role_pkey": "role",
}


def _constraint_field(exc: errors.IntegrityError) -> Optional[str]:
    diag = getattr(exc, "diag", None)
    name = getattr(diag, "constraint_name", None) if diag is not None else None
    return _CONSTRAINT_FIELDS.get(name or "")


def _as_uuid(value: Any) -> Optional[str]:
    """Canonical form of an id, or None when it cannot name a uuid row."""
    try:
        return str(uuid.UUID(str(value)))
    except (ValueError, TypeError, AttributeError):
        return None


@contextmanager
def _token_session_constraints() -> Iterator[None]:
    try:
        yield
    except errors.ForeignKeyViolation:
        raise ConstraintViolation("user does not exist", {"field": "user_id"})
    except errors.UniqueViolation:
        raise ConstraintViolation(
            "refresh token already registered", {"field": "refresh_token"}
        )


def _row_to_user(row: Dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        first_name=row["first_name"],
        last_name=row["last_name"],
        nickname=row["nickname"],
        email=row["email"],
        email_verified=bool(row.get("email_verified", False)),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _row_to_registration(row: Dict[str, Any]) -> RegistrationSession:
    return RegistrationSession(
        id=str(row["id"]),
        first_name=row["first_name"],
        last_name=row["last_name"],
        nickname=row["nickname"],
        email=row["email"],
        accepted_privacy_policy=bool(row["accepted_privacy_policy"]),
        code=row["code"],
        code_expires=row["code_expires"],
        attempts=row.get("attempts") or 0,
        created_at=row.get("created_at") or utcnow(),
    )


def _row_to_login(row: Dict[str, Any]) -> LoginSession:
    return LoginSession(
        id=str(row["id"]),
        email=row["email"],
        code=row["code"],
        code_expires=row["code_expires"],
        attempts=row.get("attempts") or 0,
        created_at=row.get("created_at") or utcnow(),
    )


def _row_to_token_session(row: Dict[str, Any]) -> TokenSession:
    ip_addr = row.get("ip_addr")
    return TokenSession(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        refresh_token_hash=row["refresh_token_hash"],
        expires_at=row["expires_at"],
        user_agent=row.get("user_agent"),
        ip_addr=str(ip_addr) if ip_addr is not None else None,
        created_at=row.get("created_at") or utcnow(),
    )


class PostgresStore:
    """Postgres-backed credential store.

    Each public method borrows one pooled connection and runs as a single
    transaction; the pool commits on clean exit and rolls back on error.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        timeout: float = 10.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("credential store unavailable") from exc

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure the credential tables and default role exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Run scripts/migrate.py up.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

            default_role = conn.execute(
                "SELECT id FROM role WHERE name = %s", (DEFAULT_ROLE,)
            ).fetchone()
            if not default_role:
                raise RuntimeError(
                    f"Role '{DEFAULT_ROLE}' is not seeded. Run scripts/migrate.py up."
                )

    # uniqueness pre-checks
    def nickname_exists(self, nickname: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT EXISTS(SELECT 1 FROM app_user WHERE nickname = %s) AS found",
                (nickname,),
            ).fetchone()
        return bool(row and row["found"])

    def email_exists(self, email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT EXISTS(SELECT 1 FROM app_user WHERE email = %s) AS found",
                (email,),
            ).fetchone()
        return bool(row and row["found"])

    # users
    @staticmethod
    def _insert_user(
        conn: psycopg.Connection,
        first_name: str,
        last_name: str,
        nickname: str,
        email: str,
        email_verified: bool,
    ) -> User:
        row = conn.execute(
            """
            INSERT INTO app_user (id, first_name, last_name, nickname, email, email_verified)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (str(uuid.uuid4()), first_name, last_name, nickname, email, email_verified),
        ).fetchone()
        return _row_to_user(row)

    def create_user(
        self,
        first_name: str,
        last_name: str,
        nickname: str,
        email: str,
        *,
        email_verified: bool = False,
    ) -> User:
        try:
            with self._connect() as conn:
                return self._insert_user(
                    conn, first_name, last_name, nickname, email, email_verified
                )
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field or 'user'} already exists", {"field": field})

    def get_user(self, user_id: str) -> Optional[User]:
        if _as_uuid(user_id) is None:
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return _row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE email = %s", (email,)).fetchone()
        return _row_to_user(row) if row else None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        if _as_uuid(user_id) is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET email_verified = TRUE, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (user_id,),
            ).fetchone()
        return _row_to_user(row) if row else None

    # registration sessions
    def create_registration_session(self, session: RegistrationSession) -> RegistrationSession:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO registration_session (
                        id, first_name, last_name, nickname, email,
                        accepted_privacy_policy, code, code_expires, attempts, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.first_name,
                        session.last_name,
                        session.nickname,
                        session.email,
                        session.accepted_privacy_policy,
                        session.code,
                        session.code_expires,
                        session.attempts,
                        session.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("registration session exists", {"field": "id"})
        return session

    def get_registration_session(self, session_id: str) -> Optional[RegistrationSession]:
        if _as_uuid(session_id) is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM registration_session WHERE id = %s", (session_id,)
            ).fetchone()
        return _row_to_registration(row) if row else None

    def update_registration_session_code(
        self, session_id: str, code: str, code_expires: datetime
    ) -> Optional[RegistrationSession]:
        if _as_uuid(session_id) is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE registration_session
                SET code = %s, code_expires = %s, attempts = 0
                WHERE id = %s
                RETURNING *
                """,
                (code, code_expires, session_id),
            ).fetchone()
        return _row_to_registration(row) if row else None

    def delete_registration_session(self, session_id: str) -> bool:
        if _as_uuid(session_id) is None:
            return False
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM registration_session WHERE id = %s", (session_id,)
            )
            return result.rowcount > 0

    def record_registration_attempt(self, session_id: str, max_attempts: int) -> int:
        if _as_uuid(session_id) is None:
            return 0
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE registration_session SET attempts = attempts + 1
                WHERE id = %s
                RETURNING attempts
                """,
                (session_id,),
            ).fetchone()
            if not row:
                return 0
            if row["attempts"] >= max_attempts:
                conn.execute("DELETE FROM registration_session WHERE id = %s", (session_id,))
            return row["attempts"]

    def complete_registration(
        self, session_id: str, code: str, role_name: str = DEFAULT_ROLE
    ) -> Optional[User]:
        """Consume a pending registration and create its verified user in one transaction."""

        if _as_uuid(session_id) is None:
            return None
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    DELETE FROM registration_session
                    WHERE id = %s AND code = %s AND code_expires > now()
                    RETURNING *
                    """,
                    (session_id, code),
                ).fetchone()
                if not row:
                    return None
                session = _row_to_registration(row)
                user = self._insert_user(
                    conn,
                    session.first_name,
                    session.last_name,
                    session.nickname,
                    session.email,
                    True,
                )
                assigned = conn.execute(
                    """
                    INSERT INTO user_role (user_id, role_id)
                    SELECT %s, id FROM role WHERE name = %s
                    """,
                    (user.id, role_name),
                )
                if assigned.rowcount == 0:
                    raise ConstraintViolation("role does not exist", {"field": "role"})
                return user
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field or 'user'} already exists", {"field": field})

    # login sessions
    def create_login_session(self, session: LoginSession) -> LoginSession:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_session (id, email, code, code_expires, attempts, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (email) DO UPDATE
                SET id = EXCLUDED.id,
                    code = EXCLUDED.code,
                    code_expires = EXCLUDED.code_expires,
                    attempts = EXCLUDED.attempts,
                    created_at = EXCLUDED.created_at
                """,
                (
                    session.id,
                    session.email,
                    session.code,
                    session.code_expires,
                    session.attempts,
                    session.created_at,
                ),
            )
        return session

    def get_login_session(self, email: str) -> Optional[LoginSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM login_session WHERE email = %s", (email,)
            ).fetchone()
        return _row_to_login(row) if row else None

    def get_login_session_by_email_and_code(
        self, email: str, code: str
    ) -> Optional[LoginSession]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM login_session
                WHERE email = %s AND code = %s AND code_expires > now()
                """,
                (email, code),
            ).fetchone()
        return _row_to_login(row) if row else None

    def consume_login_session(
        self, email: str, code: str, token_session: Optional[TokenSession] = None
    ) -> Optional[LoginSession]:
        """Spend a live login code and store ``token_session`` in the same transaction."""

        if token_session is not None and _as_uuid(token_session.user_id) is None:
            raise ConstraintViolation("user does not exist", {"field": "user_id"})
        with _token_session_constraints(), self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM login_session
                WHERE email = %s AND code = %s AND code_expires > now()
                RETURNING *
                """,
                (email, code),
            ).fetchone()
            if not row:
                return None
            if token_session is not None:
                self._insert_token_session(conn, token_session)
        return _row_to_login(row)

    def delete_login_session(self, email: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM login_session WHERE email = %s", (email,))
            return result.rowcount > 0

    def record_login_attempt(self, email: str, max_attempts: int) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE login_session SET attempts = attempts + 1
                WHERE email = %s
                RETURNING attempts
                """,
                (email,),
            ).fetchone()
            if not row:
                return 0
            if row["attempts"] >= max_attempts:
                conn.execute("DELETE FROM login_session WHERE email = %s", (email,))
            return row["attempts"]

    # token sessions
    @staticmethod
    def _insert_token_session(conn: psycopg.Connection, session: TokenSession) -> None:
        conn.execute(
            """
            INSERT INTO token_session (
                id, user_id, refresh_token_hash, user_agent, ip_addr, expires_at, created_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                session.id,
                session.user_id,
                session.refresh_token_hash,
                session.user_agent,
                session.ip_addr,
                session.expires_at,
                session.created_at,
            ),
        )

    def create_token_session(self, session: TokenSession) -> TokenSession:
        if _as_uuid(session.user_id) is None:
            raise ConstraintViolation("user does not exist", {"field": "user_id"})
        with _token_session_constraints(), self._connect() as conn:
            self._insert_token_session(conn, session)
        return session

    def get_token_session(self, refresh_token_hash: str) -> Optional[TokenSession]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM token_session
                WHERE refresh_token_hash = %s AND expires_at > now()
                """,
                (refresh_token_hash,),
            ).fetchone()
        return _row_to_token_session(row) if row else None

    def consume_token_session(self, refresh_token_hash: str) -> Optional[TokenSession]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM token_session WHERE refresh_token_hash = %s RETURNING *",
                (refresh_token_hash,),
            ).fetchone()
        return _row_to_token_session(row) if row else None

    def rotate_token_session(
        self, refresh_token_hash: str, replacement: TokenSession
    ) -> Optional[TokenSession]:
        """Delete one refresh session and insert its replacement in one transaction.

        An expired row, or one owned by another user, is deleted and returned
        without inserting. A failed insert rolls the delete back.
        """
        with _token_session_constraints(), self._connect() as conn:
            row = conn.execute(
                "DELETE FROM token_session WHERE refresh_token_hash = %s RETURNING *",
                (refresh_token_hash,),
            ).fetchone()
            if not row:
                return None
            previous = _row_to_token_session(row)
            if not previous.is_expired() and previous.user_id == replacement.user_id:
                self._insert_token_session(conn, replacement)
        return previous

    def delete_token_session(self, session_id: str) -> bool:
        if _as_uuid(session_id) is None:
            return False
        with self._connect() as conn:
            result = conn.execute("DELETE FROM token_session WHERE id = %s", (session_id,))
            return result.rowcount > 0

    def delete_user_token_sessions(self, user_id: str) -> int:
        if _as_uuid(user_id) is None:
            return 0
        with self._connect() as conn:
            result = conn.execute("DELETE FROM token_session WHERE user_id = %s", (user_id,))
            return result.rowcount

    # roles
    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE name = %s", (name,)).fetchone()
        if not row:
            return None
        return Role(
            id=str(row["id"]),
            name=row["name"],
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    def assign_role_to_user(self, user_id: str, role_name: str) -> bool:
        if _as_uuid(user_id) is None:
            raise ConstraintViolation("user does not exist", {"field": "user_id"})
        try:
            with self._connect() as conn:
                result = conn.execute(
                    """
                    INSERT INTO user_role (user_id, role_id)
                    SELECT %s, id FROM role WHERE name = %s
                    ON CONFLICT DO NOTHING
                    """,
                    (user_id, role_name),
                )
                return result.rowcount > 0
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"field": "user_id"})

    def get_user_role_names(self, user_id: str) -> List[str]:
        if _as_uuid(user_id) is None:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.name FROM role r
                JOIN user_role ur ON ur.role_id = r.id
                WHERE ur.user_id = %s
                ORDER BY r.name
                """,
                (user_id,),
            ).fetchall()
        return [row["name"] for row in rows]

    def has_role(self, user_id: str, role_name: str) -> bool:
        if _as_uuid(user_id) is None:
            return False
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT EXISTS(
                    SELECT 1 FROM user_role ur
                    JOIN role r ON r.id = ur.role_id
                    WHERE ur.user_id = %s AND r.name = %s
                ) AS found
                """,
                (user_id, role_name),
            ).fetchone()
        return bool(row and row["found"])

    # maintenance
    def delete_expired_sessions(self) -> Dict[str, int]:
        with self._connect() as conn:
            counts = {
                "registration_sessions": conn.execute(
                    "DELETE FROM registration_session WHERE code_expires <= now()"
                ).rowcount,
                "login_sessions": conn.execute(
                    "DELETE FROM login_session WHERE code_expires <= now()"
                ).rowcount,
                "token_sessions": conn.execute(
                    "DELETE FROM token_session WHERE expires_at <= now()"
                ).rowcount,
            }
        self.logger.info("expired_sessions_purged", **counts)
        return counts
