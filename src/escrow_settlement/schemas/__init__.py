"""Pydantic API schemas."""

from escrow_settlement.schemas.escrow import (
    CostEstimateResponse,
    EscrowDetailResponse,
    EscrowRecordResponse,
    EstimateReleaseRequest,
    HealthResponse,
    OnchainEscrowResponse,
    ReconcileRequest,
    ReconcileResponse,
    ReleaseRequest,
    SettlementLogResponse,
    SettlementResponse,
    SweepResponse,
    TaskSettlementRequest,
    TxReceiptResponse,
)

__all__ = [
    "CostEstimateResponse",
    "EscrowDetailResponse",
    "EscrowRecordResponse",
    "EstimateReleaseRequest",
    "HealthResponse",
    "OnchainEscrowResponse",
    "ReconcileRequest",
    "ReconcileResponse",
    "ReleaseRequest",
    "SettlementLogResponse",
    "SettlementResponse",
    "SweepResponse",
    "TaskSettlementRequest",
    "TxReceiptResponse",
]
