"""FastAPI application wiring for the authentication service."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from psycopg_pool import ConnectionPool

from .api.routes import register_error_handlers, router as v1_router
from .config import Settings, get_settings
from .context import configure_logging
from .domain.service import AuthService
from .events import build_event_publisher
from .mail import Mailer, build_mailer
from .security.passwords import Argon2PasswordHasher
from .security.tokens import TokenCodec
from .storage.memory import MemoryStore
from .storage.postgres import PostgresStore

settings = get_settings()
configure_logging(settings.log_level)


def build_service(settings: Settings, store, mailer: Mailer) -> AuthService:
    """Assemble the service from configured collaborators."""
    return AuthService(
        store,
        codec=TokenCodec(settings.jwt_secret, issuer=settings.jwt_issuer),
        hasher=Argon2PasswordHasher(),
        mailer=mailer,
        publisher=build_event_publisher(settings),
        settings=settings,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (Postgres pool, mailer, services) for the app lifecycle."""
    mailer = build_mailer(settings)
    app.state.mailer = mailer
    pool = None
    try:
        if settings.storage_backend == "memory":
            store = MemoryStore()
        else:
            pool = ConnectionPool(settings.database_url, open=False)
            pool.open()
            app.state.pool = pool
            store = PostgresStore(pool)
            if settings.apply_schema:
                store.apply_schema()
        app.state.auth_service = build_service(settings, store, mailer)
        yield
    finally:
        mailer.close()
        if pool is not None:
            pool.close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)
register_error_handlers(app)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


app.include_router(v1_router)


# Prometheus metrics endpoint for Prometheus scrapes
try:
    from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
except ImportError:  # pragma: no cover - metrics are optional in dev
    pass


def run() -> None:
    """Serve the application with uvicorn using the configured host and port."""
    import uvicorn

    uvicorn.run(app, host=settings.http_host, port=settings.http_port, log_config=None)
