"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from swapresolver import __version__
from swapresolver.config import Settings, get_settings
from swapresolver.errors import (
    FlowInProgressError,
    InvalidSecretError,
    InvalidStateError,
    OrderNotFoundError,
    SwapError,
    UnsupportedChainError,
    ValidationError,
)
from swapresolver.ledger.database import OrderStore
from swapresolver.notifications.telegram import OperatorNotifier
from swapresolver.resolvers.factory import ResolverFactory
from swapresolver.services.order_service import OrderService
from swapresolver.services.orchestrator import SwapOrchestrator
from swapresolver.utils.clock import Clock

logger = logging.getLogger(__name__)

ERROR_STATUS: list[tuple[type[SwapError], int]] = [
    (OrderNotFoundError, 404),
    (InvalidStateError, 409),
    (FlowInProgressError, 409),
    (ValidationError, 400),
    (InvalidSecretError, 400),
    (UnsupportedChainError, 400),
]


def status_for(error: SwapError) -> int:
    """HTTP status code for a swap error."""
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


async def swap_error_handler(request: Request, exc: SwapError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=status,
        content={"error": type(exc).__name__, "detail": exc.message, "order_id": exc.order_id},
    )


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[OrderStore] = None,
    resolvers: Optional[ResolverFactory] = None,
    clock: Optional[Clock] = None,
    notifier: Optional[OperatorNotifier] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Collaborators default to ones built from settings; tests inject their
    own store, clock and resolver factory.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        # Startup
        app_clock = clock or Clock()
        order_store = store or OrderStore(settings.database_url)
        factory = resolvers or ResolverFactory(settings, clock=app_clock)
        alerts = notifier or OperatorNotifier(settings)
        await order_store.init()

        orchestrator = SwapOrchestrator(
            order_store, factory, settings=settings, clock=app_clock, notifier=alerts
        )
        app.state.orchestrator = orchestrator
        app.state.order_service = OrderService(orchestrator)
        await orchestrator.resume_pending()

        yield

        # Shutdown
        await orchestrator.shutdown()
        await factory.close()
        await alerts.close()
        if store is None:
            await order_store.close()

    app = FastAPI(
        title="Swap Resolver API",
        description="Cross-chain HTLC atomic swap resolver",
        version=__version__,
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.settings = settings

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(SwapError, swap_error_handler)

    # Register routes
    from swapresolver.api.routes import health, orders

    app.include_router(health.router, tags=["Health"])
    app.include_router(orders.router)

    return app
