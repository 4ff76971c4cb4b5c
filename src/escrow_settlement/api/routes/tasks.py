"""Employer settlement routes for off-chain tasks.

Routes:
    POST   /api/v1/tasks/{task_id}/complete Release escrow to the freelancer
    POST   /api/v1/tasks/{task_id}/cancel   Refund escrow to the employer

Both require the caller (X-Profile-ID) to own the task and the deadline not
to have passed; after the deadline the sweeper settles the escrow.
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Body, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_settlement.api.deps import (
    get_db_session,
    get_idempotency_key,
    get_ledger,
    get_profile_id,
    idempotent,
)
from escrow_settlement.api.routes.escrow import settlement_response
from escrow_settlement.domain.ledger_protocol import LedgerClient
from escrow_settlement.schemas.escrow import SettlementResponse, TaskSettlementRequest
from escrow_settlement.services.settlement_service import (
    DEFAULT_CANCEL_REASON,
    DEFAULT_COMPLETE_REASON,
    SettlementService,
)

router = APIRouter(prefix="/api/v1/tasks", tags=["Tasks"])


@router.post(
    "/{task_id}/complete",
    response_model=SettlementResponse,
    summary="Complete a task and release its escrow to the freelancer",
)
async def complete_task(
    task_id: uuid.UUID,
    request: TaskSettlementRequest | None = Body(default=None),
    session: AsyncSession = Depends(get_db_session),
    ledger: LedgerClient = Depends(get_ledger),
    profile_id: str = Depends(get_profile_id),
    idempotency_key: str | None = Depends(get_idempotency_key),
) -> SettlementResponse:
    reason = (request.reason if request else None) or DEFAULT_COMPLETE_REASON
    async with idempotent(f"complete:{task_id}", idempotency_key) as outcome:
        result = await SettlementService(session, ledger).complete_task(
            task_id, profile_id, reason=reason
        )
        outcome["tx_hash"] = result.receipt.tx_hash
    return settlement_response(result)


@router.post(
    "/{task_id}/cancel",
    response_model=SettlementResponse,
    summary="Cancel a task and refund its escrow to the employer",
)
async def cancel_task(
    task_id: uuid.UUID,
    request: TaskSettlementRequest | None = Body(default=None),
    session: AsyncSession = Depends(get_db_session),
    ledger: LedgerClient = Depends(get_ledger),
    profile_id: str = Depends(get_profile_id),
    idempotency_key: str | None = Depends(get_idempotency_key),
) -> SettlementResponse:
    reason = (request.reason if request else None) or DEFAULT_CANCEL_REASON
    async with idempotent(f"cancel:{task_id}", idempotency_key) as outcome:
        result = await SettlementService(session, ledger).cancel_task(
            task_id, profile_id, reason=reason
        )
        outcome["tx_hash"] = result.receipt.tx_hash
    return settlement_response(result)
