from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from passless.api.error_handling import register_exception_handlers
from passless.api.routes import router
from passless.config import Settings
from passless.logging import get_logger, set_correlation_id
from passless.storage.models import DEFAULT_ROLE

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0

_cleanup_task: asyncio.Task | None = None


async def _run_session_cleanup(interval_seconds: int) -> None:
    """Background loop purging expired registration, login and token sessions."""
    from passless.service.runtime import get_runtime

    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await get_runtime().auth.cleanup_expired_sessions()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort cleanup
                logger.warning("session_cleanup_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("session_cleanup_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _cleanup_task
    from passless.service.runtime import get_runtime

    runtime = get_runtime()
    interval = runtime.settings.session_cleanup_interval_seconds
    if interval > 0:
        _cleanup_task = asyncio.create_task(_run_session_cleanup(interval))

    yield

    if _cleanup_task:
        _cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _cleanup_task
        _cleanup_task = None
    runtime.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Passless", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation ID.

    The ID is taken from the X-Request-ID header when the client sends one,
    otherwise generated. It is bound into log entries and echoed back in the
    X-Request-ID response header.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("API-Version", __version__)
    # tokens and codes must never be cached by intermediaries
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/health")
async def health() -> Dict[str, Any]:
    """Liveness plus a bounded credential-store round trip."""
    from passless.service.runtime import get_runtime

    runtime = get_runtime()
    store_ok = True
    error: str | None = None
    try:
        role = await asyncio.wait_for(
            asyncio.to_thread(runtime.store.get_role_by_name, DEFAULT_ROLE),
            HEALTH_CHECK_TIMEOUT_SECONDS,
        )
        if role is None:
            store_ok, error = False, "default role missing"
    except asyncio.TimeoutError:
        store_ok, error = False, "timeout"
    except Exception as exc:
        store_ok, error = False, type(exc).__name__
        logger.warning("health_store_check_failed", error=str(exc))

    body: Dict[str, Any] = {
        "status": "healthy" if store_ok else "unhealthy",
        "version": __version__,
        "checks": {"store": {"status": "ok" if store_ok else "error", "error": error}},
    }
    if not store_ok:
        return JSONResponse(status_code=503, content=body)
    return body


def create_app() -> FastAPI:
    return app
