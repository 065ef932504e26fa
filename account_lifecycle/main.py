"""FastAPI application wiring for the account lifecycle service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool

from .api.routes import router as v1_router
from .config import Settings, get_settings
from .domain.service import AccountLifecycleService
from .images.pipeline import ImageIngestionPipeline
from .logging_config import configure_logging
from .notifications.dispatcher import NotificationDispatcher
from .notifications.templates import JinjaTemplateRenderer
from .notifications.transports import build_transport
from .repository import AccountRepository
from .security.passwords import PasswordHasher
from .security.rate_limiter import SlidingWindowRateLimiter
from .security.redis_rate_limiter import RedisSlidingWindowRateLimiter
from .security.tokens import TokenService

settings = get_settings()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)


def build_rate_limiter(settings: Settings) -> SlidingWindowRateLimiter | RedisSlidingWindowRateLimiter:
    """Instantiate the configured rate limiter backend, preferring Redis when available."""
    if settings.rate_limit_backend == "redis" and settings.redis_url:
        try:
            import redis

            client = redis.from_url(settings.redis_url)
            # fail fast so we can fall back
            client.ping()
            logger.info("rate limiter configured for redis backend at %s", settings.redis_url)
            return RedisSlidingWindowRateLimiter(
                client,
                max_requests=settings.rate_limit_requests,
                window_seconds=settings.rate_limit_window_seconds,
            )
        except Exception as exc:  # pragma: no cover - depends on a live redis
            logger.warning("redis rate limiter unavailable, falling back to in-memory: %s", exc)

    logger.info("rate limiter using in-memory backend")
    return SlidingWindowRateLimiter(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )


def build_service(
    settings: Settings, repository: AccountRepository
) -> tuple[AccountLifecycleService, NotificationDispatcher]:
    """Assemble the lifecycle service and the dispatcher it owns.

    Raises ``ValueError`` when no JWT secret is configured.
    """
    tokens = TokenService(settings.token_settings())
    dispatcher = NotificationDispatcher(
        JinjaTemplateRenderer(),
        build_transport(settings.mail_settings()),
        settings.mail_settings(),
    )
    service = AccountLifecycleService(
        repository=repository,
        hasher=PasswordHasher(rounds=settings.bcrypt_rounds),
        tokens=tokens,
        dispatcher=dispatcher,
        images=ImageIngestionPipeline(settings.image_settings(), repository),
        policy=settings.lifecycle_policy(),
    )
    return service, dispatcher


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (Postgres pool, services) for the app lifecycle."""
    pool = ConnectionPool(settings.database_url, open=False)
    service, dispatcher = build_service(settings, AccountRepository(pool))
    pool.open()
    app.state.pool = pool
    app.state.settings = settings
    app.state.account_service = service
    app.state.rate_limiter = build_rate_limiter(settings)
    try:
        yield
    finally:
        dispatcher.close()
        pool.close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)

# CORS for local frontend dev
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.app_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600,
)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


app.include_router(v1_router)


@app.get("/metrics")
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
