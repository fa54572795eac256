"""
FastAPI application entry point.

WHAT: Main application setup and wiring
WHY: Initialize all components and routes
HOW: Create FastAPI app, build live trade components in the lifespan,
     register middleware, routers, handlers
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy.engine import Engine

from .core.config import settings
from .core import database
from .core.database import build_session_factory, init_db, close_db
from .services.connection_registry import ConnectionRegistry
from .services.dispatcher import MessageDispatcher
from .services.inventory_store import InventoryStore
from .services.negotiation_engine import LiveTradeEngine
from .services.notification_sink import NotificationSink
from .services.settlement import SettlementExecutor
from .services.trade_history import TradeHistoryService
from .utils.logger import setup_logging, get_logger
from .middleware.error_handler import register_exception_handlers
from .api.v1.router import api_router

logger = get_logger(__name__)


def create_app(db_engine: Optional[Engine] = None, run_cleanup: bool = True) -> FastAPI:
    """
    Build the application.

    Args:
        db_engine: Engine to use instead of the configured one (tests)
        run_cleanup: Start the periodic session eviction task

    Returns:
        FastAPI app
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        WHAT: Startup and shutdown logic
        WHY: Live trade state is scoped to one server lifetime
        HOW: Build registry/engine on startup, hang them on app.state
        """
        # Startup
        logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
        bind = db_engine or database.engine
        init_db(bind)
        session_factory = build_session_factory(bind)

        inventory = InventoryStore(session_factory)
        trade_engine = LiveTradeEngine(
            registry=ConnectionRegistry(),
            inventory=inventory,
            settlement=SettlementExecutor(inventory),
            notifications=NotificationSink(session_factory),
        )
        app.state.db_engine = bind
        app.state.live_trade_engine = trade_engine
        app.state.live_trade_dispatcher = MessageDispatcher(trade_engine)
        app.state.trade_history = TradeHistoryService(session_factory)

        if run_cleanup:
            trade_engine.start_cleanup()
        logger.info("Application startup complete")

        yield

        # Shutdown
        logger.info("Shutting down application")
        await trade_engine.stop_cleanup()
        if db_engine is None:
            close_db()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        lifespan=lifespan
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_cors_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register exception handlers
    register_exception_handlers(app)

    # Include API router
    app.include_router(api_router)

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "app": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "status": "running"
        }

    return app


# Setup logging
setup_logging()

app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )
