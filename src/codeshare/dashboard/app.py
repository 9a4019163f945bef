"""FastAPI dashboard application — shared views, share links, publishers."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.templating import Jinja2Templates

from codeshare import __version__
from codeshare.backend import Backend
from codeshare.config import settings
from codeshare.dashboard.resume import ResumeRegistry
from codeshare.db import close_pool, init_pool
from codeshare.publisher import PublisherRegistry
from codeshare.realtime import PostgresChangeFeed, RealtimeHub

logger = logging.getLogger(__name__)

DASHBOARD_DIR = Path(__file__).parent
TEMPLATES_DIR = DASHBOARD_DIR / "templates"

templates = Jinja2Templates(directory=str(TEMPLATES_DIR))


def get_backend(request: Request) -> Backend:
    return request.app.state.backend


def get_hub(request: Request) -> RealtimeHub:
    return request.app.state.hub


def get_registry(request: Request) -> PublisherRegistry:
    return request.app.state.registry


def get_resumes(request: Request) -> ResumeRegistry:
    return request.app.state.resumes


def get_user_email(request: Request) -> str | None:
    """Viewer email from the header named by ``trusted_email_header``.

    Only that header counts, so identity comes from whatever the operator put
    in front of the dashboard (auth proxy, session middleware). Without one
    configured there is no viewer identity.
    """
    header = request.app.state.email_header
    if not header:
        return None
    return request.headers.get(header) or None


def create_app(
    backend: Backend | None = None,
    hub: RealtimeHub | None = None,
    *,
    start_publishers: bool | None = None,
    email_header: str | None = None,
) -> FastAPI:
    """Build the app.

    Without a backend, the app runs against PostgreSQL: the pool and the
    LISTEN/NOTIFY change feed are opened by the lifespan.
    """
    use_postgres = backend is None
    if start_publishers is None:
        start_publishers = settings.publish_on_startup

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        feed: PostgresChangeFeed | None = None
        if use_postgres:
            await init_pool()
            feed = PostgresChangeFeed(app.state.hub)
            feed.start()
        if start_publishers:
            await app.state.registry.start_all()
        yield
        app.state.registry.stop_all()
        if feed is not None:
            await feed.stop()
        if use_postgres:
            await close_pool()

    app = FastAPI(
        title="CodeShare Dashboard",
        description="Shared 2FA codes with live share links",
        version=__version__,
        lifespan=lifespan,
    )

    if use_postgres:
        from codeshare.repository import PostgresBackend
        backend = PostgresBackend()
    app.state.backend = backend
    app.state.hub = hub or getattr(backend, "hub", None) or RealtimeHub()
    app.state.registry = PublisherRegistry(backend)
    app.state.resumes = ResumeRegistry()
    app.state.email_header = settings.trusted_email_header if email_header is None else email_header

    app.include_router(health.router)
    app.include_router(shared.router)
    app.include_router(links.router)
    app.include_router(publishers.router)
    return app


# Import and include route modules
from codeshare.dashboard.routes import health, links, publishers, shared  # noqa: E402

app = create_app()
