"""Ledger Client Protocol and value types.

Defines the typed surface of the escrow ledger that the ingestor, reconciler,
sweeper and operator services depend on. This is a Protocol (structural
subtyping): the web3-backed LedgerGateway and the in-memory fakes used in
tests both satisfy it without a shared base class.

The domain layer has ZERO imports from web3 or any RPC library. Amounts are
Python ints (arbitrary precision wei), never floats.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, ClassVar, Protocol, runtime_checkable

from escrow_settlement.domain.enums import LedgerEventType, LedgerMethod

if TYPE_CHECKING:
    from collections.abc import Iterable

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


@dataclass(frozen=True)
class EscrowSnapshot:
    """Live state of one escrow as returned by the contract's escrows() view.

    Attributes:
        task_id: On-chain task id.
        employer: Depositing address (zero address when the escrow does not exist).
        freelancer: Designated recipient on completion.
        amount: Deposited amount in token base units.
        deadline: Absolute Unix timestamp.
        settled: Contract-side settled flag.
        external_task_id: Off-chain task id the deposit was made for.
    """

    task_id: int
    employer: str
    freelancer: str
    amount: int
    deadline: int
    settled: bool
    external_task_id: str = ""

    @property
    def exists(self) -> bool:
        return self.employer.lower() != ZERO_ADDRESS


@dataclass(frozen=True)
class FeeQuote:
    """Current EIP-1559 fee data (wei per gas)."""

    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    gas_price: int | None = None


@dataclass(frozen=True)
class CostEstimate:
    """Gas and cost estimate for one admin write, computed without submitting."""

    method: LedgerMethod
    gas_estimate: int
    gas_limit: int
    max_fee_per_gas: int
    cost_wei: int
    cost_native: Decimal
    cost_usd: Decimal
    within_limits: bool

    def to_dict(self) -> dict:
        return {
            "method": self.method.value,
            "gas_estimate": str(self.gas_estimate),
            "gas_limit": str(self.gas_limit),
            "max_fee_per_gas": str(self.max_fee_per_gas),
            "cost_wei": str(self.cost_wei),
            "cost_native": str(self.cost_native),
            "cost_usd": str(self.cost_usd.quantize(Decimal("0.01"))),
            "within_limits": self.within_limits,
        }


@dataclass(frozen=True)
class TxReceipt:
    """Receipt of a mined admin transaction."""

    tx_hash: str
    block_number: int
    gas_used: int
    effective_gas_price: int | None = None

    def to_dict(self) -> dict:
        return {
            "tx_hash": self.tx_hash,
            "block_number": self.block_number,
            "gas_used": str(self.gas_used),
            "effective_gas_price": (
                str(self.effective_gas_price) if self.effective_gas_price is not None else None
            ),
        }


@dataclass(frozen=True)
class DepositVerification:
    """Result of checking that a deposit exists for a task and freelancer."""

    valid: bool
    onchain_task_id: int | None = None
    snapshot: EscrowSnapshot | None = None
    reason: str = ""


# ---------------------------------------------------------------------------
# Typed contract events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LedgerEvent:
    """Common envelope of a decoded escrow contract log."""

    kind: ClassVar[LedgerEventType]

    task_id: int
    tx_hash: str
    block_number: int
    log_index: int

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


@dataclass(frozen=True)
class DepositedEvent(LedgerEvent):
    """Deposited(taskId, externalId, employer, amount).

    external_id is indexed as a string in the contract, so the log only carries
    its keccak hash; the readable id comes from the escrow snapshot.
    """

    kind: ClassVar[LedgerEventType] = LedgerEventType.DEPOSITED

    external_id_hash: str = ""
    employer: str = ""
    amount: int = 0


@dataclass(frozen=True)
class ReleasedEvent(LedgerEvent):
    """Released(taskId, to, amount, reason)."""

    kind: ClassVar[LedgerEventType] = LedgerEventType.RELEASED

    to: str = ""
    amount: int = 0
    reason: str = ""


@dataclass(frozen=True)
class CancelledEvent(LedgerEvent):
    """Cancelled(taskId, employer, amount, reason): a refund to the employer."""

    kind: ClassVar[LedgerEventType] = LedgerEventType.CANCELLED

    employer: str = ""
    amount: int = 0
    reason: str = ""


ALL_EVENT_TYPES: tuple[LedgerEventType, ...] = tuple(LedgerEventType)


@runtime_checkable
class LedgerClient(Protocol):
    """Protocol every ledger implementation must satisfy.

    Concrete implementations:
        - infrastructure/ledger/gateway.py (web3.py AsyncWeb3)
        - tests/conftest.py FakeLedger     (in-memory ledger)
    """

    async def get_escrow(self, task_id: int) -> EscrowSnapshot | None:
        """Return the live escrow, or None when the contract has none."""
        ...

    async def get_task_id_by_external_id(self, external_id: str) -> int | None:
        """Resolve the external-id mapping; None when unmapped."""
        ...

    async def get_head_block(self) -> int:
        """Return the current chain head block number."""
        ...

    async def fetch_events(
        self,
        from_block: int,
        to_block: int,
        kinds: Iterable[LedgerEventType] = ALL_EVENT_TYPES,
    ) -> list[LedgerEvent]:
        """Return decoded events in [from_block, to_block], sorted by chain position."""
        ...

    async def release(self, task_id: int, to: str, reason: str) -> TxReceipt:
        """Release funds to an address (admin, before deadline)."""
        ...

    async def cancel(self, task_id: int, reason: str) -> TxReceipt:
        """Refund the employer (admin, before deadline)."""
        ...

    async def release_after_deadline(self, task_id: int, to: str, reason: str) -> TxReceipt:
        """Settle an expired escrow to the given address."""
        ...

    async def estimate_cost(
        self,
        method: LedgerMethod,
        task_id: int,
        to: str | None,
        reason: str,
    ) -> CostEstimate:
        """Estimate gas and cost for a write without submitting it."""
        ...

    async def verify_deposit(
        self, external_id: str, expected_freelancer: str
    ) -> DepositVerification:
        """Check that a live, unsettled deposit exists for the given freelancer."""
        ...
