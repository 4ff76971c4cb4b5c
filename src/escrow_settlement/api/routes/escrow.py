"""Escrow operator REST API routes.

Routes:
    GET    /api/v1/escrow                   List all escrow mirror records
    GET    /api/v1/escrow/review            Audit entries flagged for manual review
    GET    /api/v1/escrow/external/{id}     Mirror record by off-chain task id
    GET    /api/v1/escrow/{task_id}         Mirror record + live ledger view
    POST   /api/v1/escrow/{task_id}/sync    Force-sync one record from the ledger
    POST   /api/v1/escrow/release           Admin-only release (Idempotency-Key aware)
    POST   /api/v1/escrow/estimate-release  Gas / cost estimate, never submits
    POST   /api/v1/escrow/reconcile         Bounded historical reconciliation
    POST   /api/v1/escrow/sweep             Trigger a deadline sweep now
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_settlement.api.deps import (
    get_db_session,
    get_idempotency_key,
    get_ledger,
    get_reconciler,
    get_sweeper,
    idempotent,
    require_admin,
)
from escrow_settlement.domain.ledger_protocol import LedgerClient
from escrow_settlement.logging_config import get_logger
from escrow_settlement.schemas.escrow import (
    CostEstimateResponse,
    EscrowDetailResponse,
    EscrowRecordResponse,
    EstimateReleaseRequest,
    OnchainEscrowResponse,
    ReconcileRequest,
    ReconcileResponse,
    ReleaseRequest,
    SettlementLogResponse,
    SettlementResponse,
    SweepResponse,
    TxReceiptResponse,
)
from escrow_settlement.services.deadline_sweeper import DeadlineSweeper
from escrow_settlement.services.escrow_sync import EscrowSyncService
from escrow_settlement.services.reconciler import Reconciler
from escrow_settlement.services.settlement_service import SettlementService

if TYPE_CHECKING:
    from escrow_settlement.services.settlement_service import SettlementResult

router = APIRouter(prefix="/api/v1/escrow", tags=["Escrow"])
logger = get_logger(__name__)


def settlement_response(result: SettlementResult) -> SettlementResponse:
    return SettlementResponse(
        task_id=result.task_id,
        method=result.method.value,
        recipient=result.recipient,
        reason=result.reason,
        receipt=TxReceiptResponse(**result.receipt.to_dict()),
        task_status=result.task.status if result.task is not None else None,
    )


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@router.get(
    "",
    response_model=list[EscrowRecordResponse],
    summary="List escrow records",
)
async def list_escrows(
    session: AsyncSession = Depends(get_db_session),
    ledger: LedgerClient = Depends(get_ledger),
) -> list[EscrowRecordResponse]:
    records = await EscrowSyncService(session, ledger).list_escrows()
    return [EscrowRecordResponse.model_validate(r) for r in records]


@router.get(
    "/review",
    response_model=list[SettlementLogResponse],
    summary="List settlements flagged for manual review",
)
async def list_review(
    session: AsyncSession = Depends(get_db_session),
    ledger: LedgerClient = Depends(get_ledger),
) -> list[SettlementLogResponse]:
    entries = await SettlementService(session, ledger).list_review()
    return [SettlementLogResponse.model_validate(e) for e in entries]


@router.get(
    "/external/{external_task_id}",
    response_model=EscrowRecordResponse,
    summary="Get one escrow record by its off-chain task id",
)
async def get_escrow_by_external_id(
    external_task_id: str,
    session: AsyncSession = Depends(get_db_session),
    ledger: LedgerClient = Depends(get_ledger),
) -> EscrowRecordResponse:
    record = await EscrowSyncService(session, ledger).get_by_external_id(external_task_id)
    return EscrowRecordResponse.model_validate(record)


@router.get(
    "/{task_id}",
    response_model=EscrowDetailResponse,
    summary="Get one escrow record with its live ledger state",
)
async def get_escrow(
    task_id: str,
    session: AsyncSession = Depends(get_db_session),
    ledger: LedgerClient = Depends(get_ledger),
) -> EscrowDetailResponse:
    view = await EscrowSyncService(session, ledger).get_escrow_view(task_id)
    onchain = OnchainEscrowResponse.from_snapshot(view.onchain) if view.onchain else None
    return EscrowDetailResponse(
        record=EscrowRecordResponse.model_validate(view.record),
        onchain=onchain,
        in_sync=onchain is not None and onchain.settled == view.record.settled,
    )


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


@router.post(
    "/{task_id}/sync",
    response_model=EscrowRecordResponse,
    summary="Force-sync one record from the ledger",
)
async def sync_escrow(
    task_id: int,
    session: AsyncSession = Depends(get_db_session),
    ledger: LedgerClient = Depends(get_ledger),
) -> EscrowRecordResponse:
    record = await EscrowSyncService(session, ledger).sync_task(task_id)
    return EscrowRecordResponse.model_validate(record)


# ---------------------------------------------------------------------------
# Release
# ---------------------------------------------------------------------------


@router.post(
    "/release",
    response_model=SettlementResponse,
    summary="Admin release of an escrow",
)
async def release_escrow(
    request: ReleaseRequest,
    session: AsyncSession = Depends(get_db_session),
    ledger: LedgerClient = Depends(get_ledger),
    profile_id: str = Depends(require_admin),
    idempotency_key: str | None = Depends(get_idempotency_key),
) -> SettlementResponse:
    """Release funds to any address. Admin profiles only; the ledger guards still apply."""
    async with idempotent(f"release:{request.task_id}", idempotency_key) as outcome:
        result = await SettlementService(session, ledger).release_escrow(
            task_id=request.task_id,
            to=request.to,
            reason=request.reason,
            actor=profile_id,
        )
        outcome["tx_hash"] = result.receipt.tx_hash
    return settlement_response(result)


@router.post(
    "/estimate-release",
    response_model=CostEstimateResponse,
    summary="Estimate the gas and cost of a release",
)
async def estimate_release(
    request: EstimateReleaseRequest,
    session: AsyncSession = Depends(get_db_session),
    ledger: LedgerClient = Depends(get_ledger),
) -> CostEstimateResponse:
    estimate = await SettlementService(session, ledger).estimate_release(
        task_id=request.task_id, to=request.to, reason=request.reason
    )
    return CostEstimateResponse(**estimate.to_dict())


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


@router.post(
    "/reconcile",
    response_model=ReconcileResponse,
    summary="Reconcile a block range",
)
async def reconcile(
    request: ReconcileRequest,
    reconciler: Reconciler = Depends(get_reconciler),
) -> ReconcileResponse:
    try:
        report = await reconciler.run(from_block=request.from_block, to_block=request.to_block)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ReconcileResponse(**report.to_dict())


@router.post(
    "/sweep",
    response_model=SweepResponse,
    summary="Run a deadline sweep now",
)
async def sweep(sweeper: DeadlineSweeper = Depends(get_sweeper)) -> SweepResponse:
    report = await sweeper.run_once()
    return SweepResponse(**report.to_dict())
