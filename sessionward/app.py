from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sessionward.api.error_handling import register_exception_handlers
from sessionward.api.routes import router
from sessionward.config import Settings
from sessionward.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from sessionward.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", app_env=runtime.settings.app_env.value, version=__version__)
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Sessionward", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Credentials are allowed, so never fall back to a wildcard
    return ["http://localhost:3000", "http://127.0.0.1:3000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=[
        "X-Request-ID",
        "Retry-After",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
    ],
    max_age=3600,
)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/"):
        # Token-bearing responses must not be cached
        response.headers.setdefault("Cache-Control", "no-store")
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with a correlation ID and echo it in ``X-Request-ID``.

    A client-supplied ``X-Request-ID`` is reused; otherwise a UUID is
    generated. The ID is bound for structured logging and becomes the
    ``request_id`` of the response envelope.
    """
    client_request_id = (request.headers.get("X-Request-ID") or "")[:128]
    correlation_id = set_correlation_id(client_request_id or None)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> dict:
    return {"status": "ok"}


def create_app() -> FastAPI:
    return app
