"""Domain layer: pure business logic with zero framework dependencies."""

from escrow_settlement.domain.enums import (
    ApplicationStatus,
    LedgerEventType,
    LedgerMethod,
    SettlementAction,
    SettlementKind,
    SettlementOutcome,
    TaskStatus,
)
from escrow_settlement.domain.exceptions import (
    AlreadySettledError,
    CostTooHighError,
    EmptyEscrowError,
    EscrowError,
    GasTooHighError,
    LedgerTimeoutError,
    NotFoundOnChainError,
    TransactionRevertedError,
    UnknownApplicationStatusError,
)
from escrow_settlement.domain.ledger_protocol import (
    CancelledEvent,
    DepositedEvent,
    EscrowSnapshot,
    LedgerClient,
    LedgerEvent,
    ReleasedEvent,
    TxReceipt,
)
from escrow_settlement.domain.settlement_policy import (
    SettlementDecision,
    decide_settlement,
)
from escrow_settlement.domain.state_machine import (
    EscrowSettlementMachine,
    validate_transition,
)

__all__ = [
    "ApplicationStatus",
    "LedgerEventType",
    "LedgerMethod",
    "SettlementAction",
    "SettlementKind",
    "SettlementOutcome",
    "TaskStatus",
    "AlreadySettledError",
    "CostTooHighError",
    "EmptyEscrowError",
    "EscrowError",
    "GasTooHighError",
    "LedgerTimeoutError",
    "NotFoundOnChainError",
    "TransactionRevertedError",
    "UnknownApplicationStatusError",
    "CancelledEvent",
    "DepositedEvent",
    "EscrowSnapshot",
    "LedgerClient",
    "LedgerEvent",
    "ReleasedEvent",
    "TxReceipt",
    "SettlementDecision",
    "decide_settlement",
    "EscrowSettlementMachine",
    "validate_transition",
]
