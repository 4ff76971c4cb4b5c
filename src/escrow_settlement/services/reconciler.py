"""Reconciler: bounded historical scan of escrow contract events.

Re-reads Deposited, Released and Cancelled logs over a block range and
applies them, in chain order, through the same EscrowSyncService path the
live ingestor uses. Overlapping or repeated passes converge on the same rows.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from escrow_settlement.config import Settings, get_settings
from escrow_settlement.infrastructure.database.engine import get_session_factory, session_scope
from escrow_settlement.logging_config import bind_job_context, clear_job_context, get_logger
from escrow_settlement.services.escrow_sync import EscrowSyncService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_settlement.domain.ledger_protocol import LedgerClient

logger = get_logger(__name__)


@dataclass
class ReconcileReport:
    """Summary of one reconciliation pass."""

    from_block: int
    to_block: int
    events: int = 0
    applied: int = 0
    failed: int = 0
    by_kind: Counter = field(default_factory=Counter)

    def to_dict(self) -> dict:
        return {
            "from_block": self.from_block,
            "to_block": self.to_block,
            "events": self.events,
            "applied": self.applied,
            "failed": self.failed,
            "by_kind": dict(self.by_kind),
        }


class Reconciler:
    def __init__(
        self,
        ledger: LedgerClient,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._ledger = ledger
        self._session_factory = session_factory or get_session_factory()
        self._settings = settings or get_settings()

    async def run(self, from_block: int | None = None, to_block: int | None = None) -> ReconcileReport:
        """Scan [from_block, to_block] and apply every event found.

        from_block defaults to reconciler_start_block, to_block to the chain head.
        Per-event failures are counted and logged; they never abort the pass.
        """
        start = self._settings.reconciler_start_block if from_block is None else from_block
        end = await self._ledger.get_head_block() if to_block is None else to_block
        if end < start:
            raise ValueError(f"to_block {end} is before from_block {start}")

        report = ReconcileReport(from_block=start, to_block=end)
        bind_job_context(reconcile_from=start, reconcile_to=end)
        try:
            logger.info("reconciler.started")
            events = await self._ledger.fetch_events(start, end)
            report.events = len(events)

            for event in sorted(events, key=lambda e: e.sort_key):
                report.by_kind[event.kind.value] += 1
                try:
                    async with session_scope(self._session_factory) as session:
                        await EscrowSyncService(session, self._ledger).apply(event)
                except Exception as exc:
                    report.failed += 1
                    logger.error(
                        "reconciler.event_failed",
                        event=event.kind.value,
                        task_id=str(event.task_id),
                        tx_hash=event.tx_hash,
                        error=str(exc),
                    )
                    continue
                report.applied += 1

            logger.info("reconciler.finished", **report.to_dict())
        finally:
            clear_job_context("reconcile_from", "reconcile_to")
        return report
