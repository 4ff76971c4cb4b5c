"""FastAPI application entry point for the escrow settlement engine.

Lifecycle:
    1. Startup: Initialize logging, database, Redis, create tables (dev mode).
       If the ledger is configured, build the gateway and start the event
       ingestor, the deadline sweeper loop and (optionally) a reconciliation
       pass over history.
    2. Running: Serve the operator REST API on a single Uvicorn process.
    3. Shutdown: Stop background jobs, close database and Redis connections.

Without RPC / contract settings the API still starts, with escrow features
disabled (ledger-backed routes answer 503).

Run with:
    uv run uvicorn escrow_settlement.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from escrow_settlement.config import get_settings
from escrow_settlement.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


async def _reconcile_in_background(reconciler) -> None:
    logger = get_logger(__name__)
    try:
        await reconciler.run()
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.error("app.startup_reconcile_failed", error=str(exc), exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    settings = get_settings()

    # 1. Setup structured logging
    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
    )
    logger = get_logger(__name__)
    logger.info(
        "app.starting",
        env=settings.app_env,
        debug=settings.app_debug,
    )

    # 2. Initialize database
    from escrow_settlement.infrastructure.database.engine import close_db, init_db

    await init_db()

    # 3. Initialize Redis
    from escrow_settlement.infrastructure.redis_client import close_redis, init_redis

    try:
        await init_redis()
    except Exception as exc:
        logger.warning("app.redis_unavailable", error=str(exc))

    # 4. Ledger gateway and background jobs
    app.state.ledger = None
    app.state.sweeper = None
    app.state.reconciler = None
    ingestor = None
    background: list[asyncio.Task] = []

    if settings.ledger_configured:
        from escrow_settlement.infrastructure.ledger.gateway import create_gateway
        from escrow_settlement.services.deadline_sweeper import DeadlineSweeper
        from escrow_settlement.services.event_ingestor import EventIngestor
        from escrow_settlement.services.reconciler import Reconciler

        ledger = create_gateway(settings)
        try:
            chain_id = await ledger.get_chain_id()
            logger.info("app.ledger_connected", chain_id=chain_id)
        except Exception as exc:
            logger.warning("app.ledger_unreachable", error=str(exc))

        app.state.ledger = ledger
        app.state.sweeper = DeadlineSweeper(ledger, settings=settings)
        app.state.reconciler = Reconciler(ledger, settings=settings)

        if settings.ingestor_enabled:
            ingestor = EventIngestor(ledger, settings=settings)
            await ingestor.start()
        if settings.sweeper_enabled:
            background.append(
                asyncio.create_task(app.state.sweeper.run_forever(), name="deadline-sweeper")
            )
        if settings.reconcile_on_startup:
            background.append(
                asyncio.create_task(
                    _reconcile_in_background(app.state.reconciler), name="startup-reconcile"
                )
            )
    else:
        logger.warning("app.ledger_disabled", reason="RPC_URL or ESCROW_CONTRACT_ADDRESS not set")

    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    yield

    # Shutdown
    logger.info("app.shutting_down")
    for task in background:
        task.cancel()
    await asyncio.gather(*background, return_exceptions=True)
    if ingestor is not None:
        await ingestor.stop()
    await close_db()
    await close_redis()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Application factory: creates and configures the FastAPI app."""
    settings = get_settings()

    app = FastAPI(
        title="Escrow Settlement Engine",
        description=(
            "Reconciles on-chain escrow deposits with the off-chain task store "
            "and settles expired escrows."
        ),
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # --- Middleware ---
    from escrow_settlement.api.middleware import setup_middleware

    setup_middleware(app)

    # --- REST API Routes ---
    from escrow_settlement.api.routes.escrow import router as escrow_router
    from escrow_settlement.api.routes.health import router as health_router
    from escrow_settlement.api.routes.tasks import router as tasks_router

    app.include_router(health_router)
    app.include_router(escrow_router)
    app.include_router(tasks_router)

    return app


# The app instance used by Uvicorn
app = create_app()
