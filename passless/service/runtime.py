from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from passless.config import get_settings, reset_settings_cache
from passless.logging import get_logger
from passless.service.auth import AuthService, CredentialStore, DisclosurePolicy
from passless.service.authorization import Authorizer
from passless.service.email import EmailService
from passless.service.tokens import TokenCodec
from passless.storage.memory import MemoryStore
from passless.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for safe logging.

    Example: postgresql://app:secret@db/passless -> postgresql://app:***@db/passless
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: CredentialStore = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                    timeout=self.settings.db_pool_timeout_seconds,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        if self.settings.codes_exposed and not self.settings.test_mode:
            logger.warning("one_time_codes_exposed_in_responses")

        self.codec = TokenCodec.from_settings(self.settings)
        self.email = EmailService.from_settings(self.settings)
        if not self.email.is_configured:
            logger.warning("email_not_configured", message="codes will be logged, not sent")
        self.auth = AuthService(
            self.store,
            self.codec,
            self.email,
            self.settings,
            policy=DisclosurePolicy.from_settings(self.settings),
        )
        self.authorizer = Authorizer(self.codec, self.store)

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
