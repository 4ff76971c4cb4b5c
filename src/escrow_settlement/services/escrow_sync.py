"""Escrow Sync Service: the single write path from ledger to mirror.

The live ingestor, the reconciler and the force-sync operator route all land
here, so replaying any event in any order converges on the same row.

    Deposited  -> re-read snapshot, upsert, link the off-chain Task
    Released   -> compare-and-set settlement metadata (kind "released")
    Cancelled  -> compare-and-set settlement metadata (kind "cancelled"),
                  recipient is the employer, reason prefixed "Cancelled: "

A settlement event for a task with no row yet re-reads the snapshot and
inserts the row first.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from escrow_settlement.domain.enums import LedgerEventType, SettlementKind
from escrow_settlement.domain.exceptions import (
    EscrowError,
    EscrowRecordNotFoundError,
    NotFoundOnChainError,
)
from escrow_settlement.domain.ledger_protocol import (
    CancelledEvent,
    DepositedEvent,
    LedgerEvent,
    ReleasedEvent,
)
from escrow_settlement.domain.state_machine import can_transition, settlement_state_of
from escrow_settlement.infrastructure.database.repositories import (
    EscrowTaskRepository,
    TaskRepository,
)
from escrow_settlement.logging_config import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_settlement.domain.ledger_protocol import EscrowSnapshot, LedgerClient
    from escrow_settlement.infrastructure.database.orm_models import EscrowTask

logger = get_logger(__name__)

CANCELLED_REASON_PREFIX = "Cancelled: "

_SETTLEMENT_EVENTS = {
    LedgerEventType.RELEASED: ("record_release", SettlementKind.RELEASED),
    LedgerEventType.CANCELLED: ("record_cancel", SettlementKind.CANCELLED),
}


@dataclass(frozen=True)
class EscrowView:
    """Mirror row alongside the live ledger snapshot (None if unreachable)."""

    record: EscrowTask
    onchain: EscrowSnapshot | None


class EscrowSyncService:
    """Applies ledger events and snapshots to the escrow mirror."""

    def __init__(self, session: AsyncSession, ledger: LedgerClient) -> None:
        self._session = session
        self._ledger = ledger
        self._escrow_repo = EscrowTaskRepository(session)
        self._task_repo = TaskRepository(session)

    async def apply(self, event: LedgerEvent) -> EscrowTask | None:
        """Dispatch one typed ledger event."""
        if isinstance(event, DepositedEvent):
            return await self.apply_deposited(event)
        if isinstance(event, ReleasedEvent):
            return await self.apply_released(event)
        if isinstance(event, CancelledEvent):
            return await self.apply_cancelled(event)
        raise TypeError(f"Unsupported ledger event: {type(event).__name__}")

    # ------------------------------------------------------------------
    # Deposits
    # ------------------------------------------------------------------

    async def apply_deposited(self, event: DepositedEvent) -> EscrowTask | None:
        snapshot = await self._ledger.get_escrow(event.task_id)
        if snapshot is None:
            logger.warning(
                "sync.deposit_without_escrow",
                task_id=str(event.task_id),
                tx_hash=event.tx_hash,
            )
            return None

        await self._upsert(snapshot, deposit_tx_hash=event.tx_hash)
        linked = await self._task_repo.link_deposit(
            snapshot.external_task_id, str(snapshot.task_id), event.tx_hash
        )
        logger.info(
            "sync.deposit_applied",
            task_id=str(event.task_id),
            external_task_id=snapshot.external_task_id,
            amount=str(snapshot.amount),
            task_linked=linked,
        )
        return await self._escrow_repo.get_by_task_id(str(event.task_id))

    # ------------------------------------------------------------------
    # Settlements
    # ------------------------------------------------------------------

    async def apply_released(self, event: ReleasedEvent) -> EscrowTask | None:
        return await self._apply_settlement(event, recipient=event.to, reason=event.reason)

    async def apply_cancelled(self, event: CancelledEvent) -> EscrowTask | None:
        return await self._apply_settlement(
            event,
            recipient=event.employer,
            reason=f"{CANCELLED_REASON_PREFIX}{event.reason}",
        )

    async def _apply_settlement(
        self,
        event: ReleasedEvent | CancelledEvent,
        recipient: str,
        reason: str,
    ) -> EscrowTask | None:
        task_id = str(event.task_id)
        transition, kind = _SETTLEMENT_EVENTS[event.kind]
        log = logger.bind(task_id=task_id, event=event.kind.value, tx_hash=event.tx_hash)

        record = await self._escrow_repo.get_by_task_id(task_id)
        if record is None:
            snapshot = await self._ledger.get_escrow(event.task_id)
            if snapshot is None:
                log.warning("sync.settlement_without_escrow")
                return None
            await self._upsert(snapshot)
            record = await self._escrow_repo.get_by_task_id(task_id)
            log.info("sync.settlement_before_deposit")

        state = settlement_state_of(record.settled, record.settlement_kind)
        if not can_transition(state, transition):
            log.debug("sync.settlement_already_recorded", state=state)
            return record

        written = await self._escrow_repo.record_settlement(
            task_id=task_id,
            kind=kind,
            tx_hash=event.tx_hash,
            recipient=recipient,
            reason=reason,
        )
        if written:
            log.info("sync.settlement_recorded", kind=kind.value, recipient=recipient.lower())
        return await self._escrow_repo.get_by_task_id(task_id)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def _upsert(self, snapshot: EscrowSnapshot, deposit_tx_hash: str | None = None) -> None:
        await self._escrow_repo.upsert_from_snapshot(
            snapshot,
            external_task_id=snapshot.external_task_id,
            deposit_tx_hash=deposit_tx_hash,
        )

    async def sync_task(self, task_id: int) -> EscrowTask:
        """Force-refresh one mirror row from the live snapshot.

        Raises:
            NotFoundOnChainError: the contract has no escrow for task_id.
        """
        snapshot = await self._ledger.get_escrow(task_id)
        if snapshot is None:
            raise NotFoundOnChainError(task_id)
        await self._upsert(snapshot)
        record = await self._escrow_repo.get_by_task_id(str(task_id))
        logger.info("sync.task_synced", task_id=str(task_id), settled=record.settled)
        return record

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_escrows(self) -> list[EscrowTask]:
        return await self._escrow_repo.list_all()

    async def get_escrow_view(self, task_id: str) -> EscrowView:
        """Return the mirror row together with the live ledger state."""
        record = await self._escrow_repo.get_by_task_id(task_id)
        if record is None:
            raise EscrowRecordNotFoundError(task_id)
        try:
            onchain = await self._ledger.get_escrow(int(task_id))
        except EscrowError as exc:
            logger.warning("sync.live_view_unavailable", task_id=task_id, error=exc.message)
            onchain = None
        return EscrowView(record=record, onchain=onchain)

    async def get_by_external_id(self, external_task_id: str) -> EscrowTask:
        record = await self._escrow_repo.get_by_external_id(external_task_id)
        if record is None:
            raise EscrowRecordNotFoundError(external_task_id)
        return record
