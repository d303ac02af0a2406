"""Elara: FastAPI application entrypoint."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from elara.accounts import AccountResolver
from elara.config import get_config
from elara.db.engine import Database
from elara.errors import GatewayError
from elara.gateway import GatewayService
from elara.logging import setup_logging
from elara.pow.solver import PowSolver
from elara.providers.registry import build_default_registry
from elara.sessions import RequestQueue, SessionStore
from elara.shim.claude import ClaudeShim

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application startup/shutdown lifecycle."""
    config = get_config()
    setup_logging(level=config.log_level, fmt=config.log_format)

    logger.info("elara.starting", version="1.0.0", data_dir=config.data_dir)

    # Initialize database
    db = Database(
        config.data_dir,
        journal_mode=config.db_journal_mode,
        busy_timeout_ms=config.db_busy_timeout_ms,
    )
    await db.initialize()

    # Providers
    solver = PowSolver(config.pow.workers)
    registry = build_default_registry(config, credentials=db, solver=solver)

    resolver = AccountResolver(
        registry=registry,
        credentials=db,
        sequences=db,
        disabled_providers=config.disabled_providers,
    )
    sessions = SessionStore()
    queue = RequestQueue()
    gateway = GatewayService(registry=registry, disabled_providers=config.disabled_providers)
    shim = ClaudeShim(
        gateway=gateway,
        resolver=resolver,
        sessions=sessions,
        queue=queue,
        model_mapping=config.model_mapping,
        config_store=db,
    )

    # Store on app state
    app.state.config = config
    app.state.db = db
    app.state.registry = registry
    app.state.resolver = resolver
    app.state.sessions = sessions
    app.state.queue = queue
    app.state.solver = solver
    app.state.gateway = gateway
    app.state.shim = shim

    logger.info("elara.ready", providers=registry.names(), provider_count=len(registry))

    yield

    # Shutdown
    logger.info("elara.shutting_down")
    solver.shutdown()
    await db.close()
    logger.info("elara.stopped")


async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    """Render typed gateway errors raised inside route handlers."""
    logger.warning("request.failed", path=request.url.path, status=exc.status_code, error=exc.message)
    return JSONResponse(
        {"error": {"type": exc.error_type, "message": exc.message}},
        status_code=exc.status_code,
    )


def create_app() -> FastAPI:
    """Create the FastAPI application."""
    app = FastAPI(
        title="Elara: multi-provider chat gateway",
        version="1.0.0",
        description="One Anthropic- and OpenAI-style surface over many web chat providers.",
        lifespan=lifespan,
    )
    app.add_exception_handler(GatewayError, gateway_error_handler)

    # Register routes
    from elara.api.routes.chat import router as chat_router
    from elara.api.routes.conversations import router as conversations_router
    from elara.api.routes.health import router as health_router
    from elara.api.routes.messages import router as messages_router
    from elara.api.routes.providers import router as providers_router

    app.include_router(health_router, tags=["health"])
    app.include_router(messages_router, tags=["messages"])
    app.include_router(chat_router, tags=["chat"])
    app.include_router(conversations_router, tags=["conversations"])
    app.include_router(providers_router, tags=["providers"])

    return app


app = create_app()


def main() -> None:
    """Run the server directly."""
    config = get_config()
    setup_logging(level=config.log_level, fmt=config.log_format)
    uvicorn.run(
        "elara.main:app",
        host=config.host,
        port=config.port,
        log_level="warning",
    )


if __name__ == "__main__":
    main()
