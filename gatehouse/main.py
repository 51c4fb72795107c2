"""Gatehouse API — FastAPI application factory.

Invariants:
    - Routes registered explicitly (no auto-discovery)
    - Pipeline installed once, in fixed order (api/pipeline.install_pipeline)
    - Every error response comes from api/error_handlers.handle()
    - The Bootstrapper is reachable at app.state.bootstrapper

Design Decisions:
    - Lifespan over @app.on_event: boot is launched in the background after
      startup so liveness answers while storage connects; shutdown awaits
      the Bootstrapper's graceful stop
    - create_app() takes its collaborators: tests build apps against their own
      settings and store without touching module globals
"""

import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable

from fastapi import FastAPI

from gatehouse import __version__
from gatehouse.api.error_handlers import register_error_handlers
from gatehouse.api.pipeline import install_pipeline
from gatehouse.api.routes import health, service_info
from gatehouse.config import Settings
from gatehouse.lifecycle import Bootstrapper

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings,
    bootstrapper: Bootstrapper | None = None,
    wait_for_listener: Callable[[], Awaitable[None]] | None = None,
) -> FastAPI:
    boot = bootstrapper or Bootstrapper(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup/shutdown lifecycle."""
        boot.launch(wait_for_listener)
        yield
        await boot.shutdown()

    app = FastAPI(title="Gatehouse API", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.bootstrapper = boot

    install_pipeline(
        app, boot,
        cors_origins=settings.cors_origins,
        trust_forwarded_for=settings.trust_forwarded_for,
        proxy_hops=settings.trusted_proxy_hops,
    )
    register_error_handlers(app)

    app.include_router(service_info.router)
    app.include_router(health.router)
    return app
