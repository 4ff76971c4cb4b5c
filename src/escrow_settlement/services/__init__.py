"""Application services: use case orchestration."""

from escrow_settlement.services.deadline_sweeper import DeadlineSweeper, SweepReport
from escrow_settlement.services.escrow_sync import EscrowSyncService
from escrow_settlement.services.event_ingestor import EventIngestor
from escrow_settlement.services.reconciler import ReconcileReport, Reconciler
from escrow_settlement.services.settlement_service import SettlementResult, SettlementService

__all__ = [
    "DeadlineSweeper",
    "EscrowSyncService",
    "EventIngestor",
    "ReconcileReport",
    "Reconciler",
    "SettlementResult",
    "SettlementService",
    "SweepReport",
]
