"""Pydantic schemas for the escrow settlement API.

These schemas define the request/response shapes for the REST API. They are
separate from the ORM models and the ledger dataclasses to keep clean
boundaries between the API, database and chain layers.

uint256 values (amounts, gas, wei costs) are serialized as decimal strings.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

_ADDRESS_PATTERN = r"^0x[0-9a-fA-F]{40}$"

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class ReleaseRequest(BaseModel):
    """Request body for an admin release of an escrow."""

    task_id: str = Field(
        ...,
        pattern=r"^\d+$",
        description="On-chain task id (decimal string)",
        examples=["42"],
    )
    to: str = Field(
        ...,
        pattern=_ADDRESS_PATTERN,
        description="Recipient address (0x-prefixed, 42 chars)",
        examples=["0x742d35Cc6634C0532925a3b844Bc9e7595f2bD18"],
    )
    reason: str = Field(
        default="released by admin",
        min_length=1,
        max_length=500,
        description="Reason recorded on-chain with the release",
    )


class EstimateReleaseRequest(ReleaseRequest):
    """Request body for estimating the cost of a release without submitting it."""


class TaskSettlementRequest(BaseModel):
    """Optional body for an employer completing or cancelling a task."""

    reason: str | None = Field(
        default=None,
        min_length=1,
        max_length=500,
        description="Reason recorded on-chain (a default is used when omitted)",
    )


class ReconcileRequest(BaseModel):
    """Block range for a reconciliation pass."""

    from_block: int | None = Field(
        default=None, ge=0, description="First block to scan (defaults to the configured start)"
    )
    to_block: int | None = Field(
        default=None, ge=0, description="Last block to scan (defaults to the chain head)"
    )


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class EscrowRecordResponse(BaseModel):
    """Off-chain mirror of one escrow."""

    model_config = ConfigDict(from_attributes=True)

    task_id: str
    external_task_id: str
    employer: str
    freelancer: str
    amount: str
    deadline: int
    settled: bool
    deposit_tx_hash: str | None
    deposited_at: datetime | None
    release_tx_hash: str | None
    released_at: datetime | None
    release_to: str | None
    release_reason: str | None
    settlement_kind: str | None
    updated_at: datetime


class OnchainEscrowResponse(BaseModel):
    """Live contract view of one escrow."""

    task_id: int
    employer: str
    freelancer: str
    amount: str
    deadline: int
    settled: bool
    external_task_id: str

    @classmethod
    def from_snapshot(cls, snapshot) -> OnchainEscrowResponse:
        return cls(
            task_id=snapshot.task_id,
            employer=snapshot.employer,
            freelancer=snapshot.freelancer,
            amount=str(snapshot.amount),
            deadline=snapshot.deadline,
            settled=snapshot.settled,
            external_task_id=snapshot.external_task_id,
        )


class EscrowDetailResponse(BaseModel):
    """Mirror row together with the live ledger state."""

    record: EscrowRecordResponse
    onchain: OnchainEscrowResponse | None = Field(
        default=None, description="None when the contract has no escrow for this id"
    )
    in_sync: bool = Field(description="True when the mirror's settled flag matches the ledger")


class TxReceiptResponse(BaseModel):
    tx_hash: str
    block_number: int
    gas_used: str
    effective_gas_price: str | None = None


class SettlementResponse(BaseModel):
    """Result of a submitted release / complete / cancel."""

    task_id: str
    method: str
    recipient: str
    reason: str
    receipt: TxReceiptResponse
    task_status: str | None = Field(
        default=None, description="Off-chain Task status after the settlement, if a Task was touched"
    )


class CostEstimateResponse(BaseModel):
    method: str
    gas_estimate: str
    gas_limit: str
    max_fee_per_gas: str
    cost_wei: str
    cost_native: str
    cost_usd: str
    within_limits: bool


class ReconcileResponse(BaseModel):
    from_block: int
    to_block: int
    events: int
    applied: int
    failed: int
    by_kind: dict[str, int]


class SweepOutcomeResponse(BaseModel):
    task_id: str
    outcome: str
    action: str
    reason: str
    recipient: str | None
    tx_hash: str | None
    error_code: str | None


class SweepResponse(BaseModel):
    sweep_id: str
    busy: bool = Field(description="True when another sweep was already running")
    examined: int
    submitted: int
    skipped: int
    failed: int
    needs_review: int
    outcomes: list[SweepOutcomeResponse]


class SettlementLogResponse(BaseModel):
    """Response schema for one settlement audit entry."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: uuid.UUID
    task_id: str
    action: str
    actor: str
    outcome: str
    reason: str | None
    recipient: str | None
    tx_hash: str | None
    error_code: str | None
    requires_review: bool
    metadata: dict | None = Field(default=None, validation_alias="metadata_json")
    created_at: datetime


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
    ledger: str = "unknown"
