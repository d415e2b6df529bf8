import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="passless_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("SESSION_CLEANUP_INTERVAL_SECONDS", "0")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from passless.config import Settings  # noqa: E402
from passless.service.auth import AuthService, DisclosurePolicy  # noqa: E402
from passless.service.runtime import reset_runtime_for_tests  # noqa: E402
from passless.service.tokens import TokenCodec  # noqa: E402
from passless.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class RecordingNotifier:
    """Captures delivered codes instead of sending mail."""

    def __init__(self, *, fail: bool = False, raise_error: bool = False):
        self.sent: list[tuple[str, str, str]] = []
        self.fail = fail
        self.raise_error = raise_error

    def send_code(self, to_email: str, code: str, *, purpose: str = "verify_email") -> bool:
        if self.raise_error:
            raise ConnectionError("smtp down")
        self.sent.append((to_email, code, purpose))
        return not self.fail

    def last_code(self, email: str) -> str:
        for to_email, code, _ in reversed(self.sent):
            if to_email == email:
                return code
        raise AssertionError(f"no code sent to {email}")


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24 * 7,
        verification_code_ttl_minutes=15,
        max_code_attempts=3,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def codec(settings):
    return TokenCodec.from_settings(settings)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def auth_service(memory_store, codec, notifier, settings):
    return AuthService(
        memory_store,
        codec,
        notifier,
        settings,
        policy=DisclosurePolicy(expose_codes=True, mask_missing_registration_session=True),
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
