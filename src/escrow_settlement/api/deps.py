"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject database sessions,
the ledger gateway, background services, the caller's profile id, and
idempotency guards.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import Depends, Header, Request

from escrow_settlement.config import Settings, get_settings
from escrow_settlement.domain.exceptions import (
    DuplicateOperationError,
    LedgerNotConfiguredError,
    NotAdminError,
    may_be_broadcast,
)
from escrow_settlement.infrastructure.database.engine import get_async_session
from escrow_settlement.infrastructure.redis_client import (
    complete_idempotency,
    redis_available,
    release_idempotency,
    reserve_idempotency,
)
from escrow_settlement.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_settlement.domain.ledger_protocol import LedgerClient
    from escrow_settlement.services.deadline_sweeper import DeadlineSweeper
    from escrow_settlement.services.reconciler import Reconciler

logger = get_logger(__name__)


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for a request."""
    async for session in get_async_session():
        yield session


def get_ledger(request: Request) -> LedgerClient:
    """Provide the ledger gateway created at startup."""
    ledger = getattr(request.app.state, "ledger", None)
    if ledger is None:
        raise LedgerNotConfiguredError()
    return ledger


def get_sweeper(request: Request) -> DeadlineSweeper:
    """Provide the process-wide sweeper (shared so single-flight holds)."""
    sweeper = getattr(request.app.state, "sweeper", None)
    if sweeper is None:
        raise LedgerNotConfiguredError()
    return sweeper


def get_reconciler(request: Request) -> Reconciler:
    reconciler = getattr(request.app.state, "reconciler", None)
    if reconciler is None:
        raise LedgerNotConfiguredError()
    return reconciler


def get_profile_id(x_profile_id: str = Header(..., alias="X-Profile-ID")) -> str:
    """Caller identity, set by the upstream auth layer."""
    return x_profile_id


def get_idempotency_key(
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> str | None:
    return idempotency_key


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()


def require_admin(
    profile_id: str = Depends(get_profile_id),
    settings: Settings = Depends(get_app_settings),
) -> str:
    """Caller identity, restricted to the configured admin profiles."""
    if profile_id not in settings.admin_profile_ids:
        raise NotAdminError(profile_id)
    return profile_id


@asynccontextmanager
async def idempotent(scope: str, key: str | None) -> AsyncGenerator[dict, None]:
    """Reserve an Idempotency-Key around a settlement request.

    The body stores the resulting tx hash in the yielded dict under "tx_hash".
    A key that was already used raises DuplicateOperationError. The key is
    freed again when the request fails before anything was broadcast.
    """
    outcome: dict = {}
    if key is None or not redis_available():
        if key is not None:
            logger.warning("idempotency.redis_unavailable", scope=scope)
        yield outcome
        return

    full_key = f"{scope}:{key}"
    if not await reserve_idempotency(full_key):
        raise DuplicateOperationError(key)
    try:
        yield outcome
    except Exception as exc:
        if not may_be_broadcast(exc):
            await release_idempotency(full_key)
        raise
    if outcome.get("tx_hash"):
        await complete_idempotency(full_key, outcome["tx_hash"])
