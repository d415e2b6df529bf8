"""Tests for MemoryStore semantics the auth engine depends on."""

import threading
from datetime import timedelta

import pytest

from passless.storage.errors import ConstraintViolation
from passless.storage.memory import MemoryStore
from passless.storage.models import (
    ADMIN_ROLE,
    DEFAULT_ROLE,
    LoginSession,
    RegistrationSession,
    TokenSession,
    utcnow,
)


def _registration(store, *, nickname="ada", email="ada@example.com", code="123456", ttl=15):
    session = RegistrationSession.new(
        first_name="Ada",
        last_name="Lovelace",
        nickname=nickname,
        email=email,
        accepted_privacy_policy=True,
        code=code,
        code_expires=utcnow() + timedelta(minutes=ttl),
    )
    return store.create_registration_session(session)


class TestRoles:
    def test_default_roles_seeded(self, memory_store):
        assert memory_store.get_role_by_name(DEFAULT_ROLE) is not None
        assert memory_store.get_role_by_name(ADMIN_ROLE) is not None

    def test_create_role_is_idempotent(self, memory_store):
        first = memory_store.create_role("auditor")
        assert memory_store.create_role("auditor") is first

    def test_assign_role_twice_returns_false(self, memory_store):
        user = memory_store.create_user("Ada", "L", "ada", "ada@example.com")
        assert memory_store.assign_role_to_user(user.id, ADMIN_ROLE) is True
        assert memory_store.assign_role_to_user(user.id, ADMIN_ROLE) is False
        assert memory_store.get_user_role_names(user.id) == [ADMIN_ROLE]

    def test_assign_unknown_role_rejected(self, memory_store):
        user = memory_store.create_user("Ada", "L", "ada", "ada@example.com")
        with pytest.raises(ConstraintViolation):
            memory_store.assign_role_to_user(user.id, "wizard")


class TestUsers:
    def test_unique_nickname_and_email(self, memory_store):
        memory_store.create_user("Ada", "L", "ada", "ada@example.com")
        with pytest.raises(ConstraintViolation) as nick_exc:
            memory_store.create_user("Ada", "L", "ada", "other@example.com")
        assert nick_exc.value.field == "nickname"
        with pytest.raises(ConstraintViolation) as email_exc:
            memory_store.create_user("Ada", "L", "ada2", "ada@example.com")
        assert email_exc.value.field == "email"

    def test_lookup_by_email(self, memory_store):
        user = memory_store.create_user("Ada", "L", "ada", "ada@example.com")
        assert memory_store.get_user_by_email("ada@example.com") is user
        assert memory_store.get_user_by_email("nobody@example.com") is None


class TestCompleteRegistration:
    def test_creates_verified_user_with_default_role(self, memory_store):
        session = _registration(memory_store)
        user = memory_store.complete_registration(session.id, "123456")

        assert user.email_verified is True
        assert memory_store.get_user_role_names(user.id) == [DEFAULT_ROLE]
        assert memory_store.get_registration_session(session.id) is None

    def test_wrong_code_leaves_session(self, memory_store):
        session = _registration(memory_store)
        assert memory_store.complete_registration(session.id, "000000") is None
        assert memory_store.get_registration_session(session.id) is not None
        assert memory_store.users == {}

    def test_expired_session_not_completed(self, memory_store):
        session = _registration(memory_store, ttl=-1)
        assert memory_store.complete_registration(session.id, "123456") is None

    def test_conflict_keeps_session_and_writes_nothing(self, memory_store):
        session = _registration(memory_store)
        memory_store.create_user("Someone", "Else", "ada", "else@example.com")
        with pytest.raises(ConstraintViolation):
            memory_store.complete_registration(session.id, "123456")
        assert memory_store.get_registration_session(session.id) is not None
        assert len(memory_store.users) == 1
        assert memory_store.user_roles == []

    def test_only_one_concurrent_confirmation_wins(self, memory_store):
        session = _registration(memory_store)
        results = []
        barrier = threading.Barrier(8)

        def confirm():
            barrier.wait()
            results.append(memory_store.complete_registration(session.id, "123456"))

        threads = [threading.Thread(target=confirm) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len([r for r in results if r is not None]) == 1
        assert len(memory_store.users) == 1


class TestAttempts:
    def test_registration_session_removed_at_limit(self, memory_store):
        session = _registration(memory_store)
        assert memory_store.record_registration_attempt(session.id, 3) == 1
        assert memory_store.record_registration_attempt(session.id, 3) == 2
        assert memory_store.record_registration_attempt(session.id, 3) == 3
        assert memory_store.get_registration_session(session.id) is None
        assert memory_store.record_registration_attempt(session.id, 3) == 0

    def test_new_code_resets_attempts(self, memory_store):
        session = _registration(memory_store)
        memory_store.record_registration_attempt(session.id, 5)
        updated = memory_store.update_registration_session_code(
            session.id, "654321", utcnow() + timedelta(minutes=15)
        )
        assert updated.attempts == 0
        assert updated.code == "654321"

    def test_login_session_removed_at_limit(self, memory_store):
        memory_store.create_login_session(
            LoginSession.new("ada@example.com", "123456", utcnow() + timedelta(minutes=15))
        )
        memory_store.record_login_attempt("ada@example.com", 2)
        assert memory_store.get_login_session("ada@example.com") is not None
        memory_store.record_login_attempt("ada@example.com", 2)
        assert memory_store.get_login_session("ada@example.com") is None


class TestLoginSessions:
    def test_new_session_replaces_previous(self, memory_store):
        expires = utcnow() + timedelta(minutes=15)
        memory_store.create_login_session(LoginSession.new("ada@example.com", "111111", expires))
        memory_store.create_login_session(LoginSession.new("ada@example.com", "222222", expires))

        assert memory_store.get_login_session_by_email_and_code("ada@example.com", "111111") is None
        assert memory_store.get_login_session_by_email_and_code("ada@example.com", "222222")

    def test_consume_is_single_use(self, memory_store):
        expires = utcnow() + timedelta(minutes=15)
        memory_store.create_login_session(LoginSession.new("ada@example.com", "111111", expires))
        assert memory_store.consume_login_session("ada@example.com", "111111") is not None
        assert memory_store.consume_login_session("ada@example.com", "111111") is None

    def test_expired_session_does_not_match(self, memory_store):
        memory_store.create_login_session(
            LoginSession.new("ada@example.com", "111111", utcnow() - timedelta(seconds=1))
        )
        assert memory_store.consume_login_session("ada@example.com", "111111") is None

    def test_consume_stores_token_session_with_the_code(self, memory_store):
        user = memory_store.create_user("Ada", "L", "ada", "ada@example.com")
        expires = utcnow() + timedelta(minutes=15)
        memory_store.create_login_session(LoginSession.new("ada@example.com", "111111", expires))
        token_session = TokenSession.new(user.id, "hash", utcnow() + timedelta(days=1))

        assert memory_store.consume_login_session("ada@example.com", "111111", token_session)
        assert memory_store.token_sessions == {"hash": token_session}
        assert memory_store.get_login_session("ada@example.com") is None

    def test_rejected_token_session_keeps_code(self, memory_store):
        expires = utcnow() + timedelta(minutes=15)
        memory_store.create_login_session(LoginSession.new("ada@example.com", "111111", expires))
        token_session = TokenSession.new("missing", "hash", utcnow() + timedelta(days=1))

        with pytest.raises(ConstraintViolation):
            memory_store.consume_login_session("ada@example.com", "111111", token_session)
        assert memory_store.token_sessions == {}
        assert memory_store.get_login_session_by_email_and_code("ada@example.com", "111111")


class TestTokenSessions:
    def _user(self, store):
        return store.create_user("Ada", "L", "ada", "ada@example.com")

    def test_requires_existing_user(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.create_token_session(
                TokenSession.new("missing", "hash", utcnow() + timedelta(days=1))
            )

    def test_duplicate_hash_rejected(self, memory_store):
        user = self._user(memory_store)
        expires = utcnow() + timedelta(days=1)
        memory_store.create_token_session(TokenSession.new(user.id, "hash", expires))
        with pytest.raises(ConstraintViolation):
            memory_store.create_token_session(TokenSession.new(user.id, "hash", expires))

    def test_consume_returns_expired_rows(self, memory_store):
        user = self._user(memory_store)
        memory_store.create_token_session(
            TokenSession.new(user.id, "hash", utcnow() - timedelta(seconds=1))
        )
        assert memory_store.get_token_session("hash") is None
        consumed = memory_store.consume_token_session("hash")
        assert consumed is not None and consumed.is_expired()
        assert memory_store.consume_token_session("hash") is None

    def test_rotate_replaces_row(self, memory_store):
        user = self._user(memory_store)
        expires = utcnow() + timedelta(days=1)
        old = memory_store.create_token_session(TokenSession.new(user.id, "old", expires))
        new = TokenSession.new(user.id, "new", expires)

        assert memory_store.rotate_token_session("old", new) is old
        assert memory_store.token_sessions == {"new": new}

    def test_rotate_failure_keeps_old_row(self, memory_store):
        user = self._user(memory_store)
        expires = utcnow() + timedelta(days=1)
        old = memory_store.create_token_session(TokenSession.new(user.id, "old", expires))
        memory_store.create_token_session(TokenSession.new(user.id, "taken", expires))

        with pytest.raises(ConstraintViolation):
            memory_store.rotate_token_session("old", TokenSession.new(user.id, "taken", expires))
        assert memory_store.token_sessions["old"] is old

    def test_rotate_expired_row_inserts_nothing(self, memory_store):
        user = self._user(memory_store)
        memory_store.create_token_session(
            TokenSession.new(user.id, "old", utcnow() - timedelta(seconds=1))
        )
        new = TokenSession.new(user.id, "new", utcnow() + timedelta(days=1))

        previous = memory_store.rotate_token_session("old", new)
        assert previous is not None and previous.is_expired()
        assert memory_store.token_sessions == {}

    def test_rotate_unknown_hash(self, memory_store):
        user = self._user(memory_store)
        new = TokenSession.new(user.id, "new", utcnow() + timedelta(days=1))
        assert memory_store.rotate_token_session("old", new) is None
        assert memory_store.token_sessions == {}

    def test_delete_by_id_and_by_user(self, memory_store):
        user = self._user(memory_store)
        expires = utcnow() + timedelta(days=1)
        first = memory_store.create_token_session(TokenSession.new(user.id, "h1", expires))
        memory_store.create_token_session(TokenSession.new(user.id, "h2", expires))
        memory_store.create_token_session(TokenSession.new(user.id, "h3", expires))

        assert memory_store.delete_token_session(first.id) is True
        assert memory_store.delete_token_session(first.id) is False
        assert memory_store.delete_user_token_sessions(user.id) == 2
        assert memory_store.token_sessions == {}


def test_delete_expired_sessions_counts_each_kind():
    store = MemoryStore()
    user = store.create_user("Ada", "L", "ada", "ada@example.com")
    past = utcnow() - timedelta(minutes=1)
    future = utcnow() + timedelta(minutes=10)
    _registration(store, ttl=-1)
    _registration(store, nickname="bob", email="bob@example.com")
    store.create_login_session(LoginSession.new("old@example.com", "111111", past))
    store.create_login_session(LoginSession.new("new@example.com", "111111", future))
    store.create_token_session(TokenSession.new(user.id, "old", past))
    store.create_token_session(TokenSession.new(user.id, "new", future))

    assert store.delete_expired_sessions() == {
        "registration_sessions": 1,
        "login_sessions": 1,
        "token_sessions": 1,
    }
    assert len(store.registration_sessions) == 1
    assert list(store.login_sessions) == ["new@example.com"]
    assert list(store.token_sessions) == ["new"]
