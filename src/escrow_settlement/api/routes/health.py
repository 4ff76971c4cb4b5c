"""Health check endpoint.

Verifies connectivity to PostgreSQL, Redis and the chain node, returns
structured status. Used by Docker healthchecks, load balancers, and
monitoring systems.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from sqlalchemy import text

from escrow_settlement.infrastructure.database.engine import get_engine
from escrow_settlement.infrastructure.redis_client import get_redis, redis_available
from escrow_settlement.logging_config import get_logger
from escrow_settlement.schemas.escrow import HealthResponse

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns the health status of the application and its dependencies.",
)
async def health_check(request: Request) -> HealthResponse:
    """Check connectivity to PostgreSQL, Redis and the ledger node."""
    db_status = "unknown"
    redis_status = "unknown"
    ledger_status = "disabled"

    # Check PostgreSQL
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        db_status = "healthy"
    except Exception as exc:
        db_status = f"unhealthy: {exc}"
        logger.error("health.db_check_failed", error=str(exc))

    # Check Redis
    if redis_available():
        try:
            await get_redis().ping()
            redis_status = "healthy"
        except Exception as exc:
            redis_status = f"unhealthy: {exc}"
            logger.error("health.redis_check_failed", error=str(exc))
    else:
        redis_status = "unavailable"

    # Check the chain node
    ledger = getattr(request.app.state, "ledger", None)
    if ledger is not None:
        try:
            head = await ledger.get_head_block()
            ledger_status = f"healthy: block {head}"
        except Exception as exc:
            ledger_status = f"unhealthy: {exc}"
            logger.error("health.ledger_check_failed", error=str(exc))

    overall = (
        "ok"
        if db_status == "healthy" and not ledger_status.startswith("unhealthy")
        else "degraded"
    )

    return HealthResponse(
        status=overall,
        version="0.1.0",
        database=db_status,
        redis=redis_status,
        ledger=ledger_status,
    )
