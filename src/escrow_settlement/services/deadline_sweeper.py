"""Deadline Sweeper: settles expired, unsettled escrows.

Each run lists mirror rows with settled=false and deadline < now, and for
each one (independently):

    1. load the Task (by external id) and its first Application,
    2. ask the settlement policy who gets the funds,
    3. claim the row (compare-and-set lease),
    4. call release_after_deadline on the ledger,
    5. apply the policy's Task / Application transitions and write an audit row.

Any failure is logged, audited and skipped; the next run retries. The row is
marked settled only when the ingestor observes the resulting event.

Only one run executes at a time per process: a run requested while another
is in progress returns immediately with a busy report.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from escrow_settlement.config import Settings, get_settings
from escrow_settlement.domain.enums import (
    ApplicationStatus,
    LedgerMethod,
    SettlementOutcome,
)
from escrow_settlement.domain.exceptions import (
    UnknownApplicationStatusError,
    may_be_broadcast,
)
from escrow_settlement.domain.settlement_policy import decide_settlement
from escrow_settlement.infrastructure.database.engine import get_session_factory, session_scope
from escrow_settlement.infrastructure.database.repositories import (
    ApplicationRepository,
    EscrowTaskRepository,
    SettlementLogRepository,
    TaskRepository,
)
from escrow_settlement.logging_config import bind_job_context, clear_job_context, get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_settlement.domain.ledger_protocol import LedgerClient
    from escrow_settlement.domain.settlement_policy import SettlementDecision

logger = get_logger(__name__)

SWEEPER_ACTOR = "deadline-sweeper"


@dataclass
class SweepOutcome:
    """What happened to one expired escrow during a sweep."""

    task_id: str
    outcome: SettlementOutcome
    reason: str
    action: str = "skip"
    recipient: str | None = None
    tx_hash: str | None = None
    error_code: str | None = None

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "outcome": self.outcome.value,
            "action": self.action,
            "reason": self.reason,
            "recipient": self.recipient,
            "tx_hash": self.tx_hash,
            "error_code": self.error_code,
        }


@dataclass
class SweepReport:
    sweep_id: str
    busy: bool = False
    examined: int = 0
    outcomes: list[SweepOutcome] = field(default_factory=list)

    def count(self, outcome: SettlementOutcome) -> int:
        return sum(1 for o in self.outcomes if o.outcome == outcome)

    def to_dict(self) -> dict:
        return {
            "sweep_id": self.sweep_id,
            "busy": self.busy,
            "examined": self.examined,
            "submitted": self.count(SettlementOutcome.SUBMITTED),
            "skipped": self.count(SettlementOutcome.SKIPPED),
            "failed": self.count(SettlementOutcome.FAILED),
            "needs_review": self.count(SettlementOutcome.NEEDS_REVIEW),
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


class DeadlineSweeper:
    """Single-flight settlement of expired escrows."""

    def __init__(
        self,
        ledger: LedgerClient,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._ledger = ledger
        self._session_factory = session_factory or get_session_factory()
        self._settings = settings or get_settings()
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def run_once(self, now: int | None = None) -> SweepReport:
        """Run one sweep, or return a busy report if one is already running."""
        sweep_id = uuid.uuid4().hex[:12]
        if self._lock.locked():
            logger.info("sweeper.already_running", sweep_id=sweep_id)
            return SweepReport(sweep_id=sweep_id, busy=True)

        async with self._lock:
            bind_job_context(sweep_id=sweep_id)
            try:
                return await self._sweep(sweep_id, now if now is not None else int(time.time()))
            finally:
                clear_job_context("sweep_id")

    async def run_forever(self, interval: float | None = None) -> None:
        """Sweep on a fixed interval until cancelled."""
        interval = interval or self._settings.sweeper_interval_seconds
        logger.info("sweeper.scheduled", interval=interval)
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("sweeper.run_failed", error=str(exc), exc_info=True)
            await asyncio.sleep(interval)

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def _sweep(self, sweep_id: str, now_ts: int) -> SweepReport:
        async with session_scope(self._session_factory) as session:
            expired = await EscrowTaskRepository(session).list_expired_unsettled(now_ts)
            task_ids = [record.task_id for record in expired]

        report = SweepReport(sweep_id=sweep_id, examined=len(task_ids))
        logger.info("sweeper.started", expired=len(task_ids), now=now_ts)

        for task_id in task_ids:
            try:
                outcome = await self._settle_one(task_id, now_ts)
            except Exception as exc:
                code = getattr(exc, "code", type(exc).__name__)
                logger.error(
                    "sweeper.record_failed",
                    task_id=task_id,
                    error=str(exc),
                    code=code,
                    exc_info=True,
                )
                outcome = SweepOutcome(
                    task_id=task_id,
                    outcome=SettlementOutcome.FAILED,
                    reason=str(exc),
                    error_code=code,
                )
            report.outcomes.append(outcome)

        logger.info(
            "sweeper.finished",
            examined=report.examined,
            submitted=report.count(SettlementOutcome.SUBMITTED),
            failed=report.count(SettlementOutcome.FAILED),
            needs_review=report.count(SettlementOutcome.NEEDS_REVIEW),
        )
        return report

    async def _settle_one(self, task_id: str, now_ts: int) -> SweepOutcome:
        log = logger.bind(task_id=task_id)
        try:
            decision = await self._decide_and_claim(task_id, now_ts)
        except UnknownApplicationStatusError as exc:
            log.error("sweeper.unknown_application_status", status=exc.status)
            await self._audit(
                task_id,
                action="skip",
                outcome=SettlementOutcome.NEEDS_REVIEW,
                reason=exc.message,
                error_code=exc.code,
                requires_review=True,
                metadata={"application_status": exc.status},
            )
            return SweepOutcome(
                task_id=task_id,
                outcome=SettlementOutcome.NEEDS_REVIEW,
                reason=exc.message,
                error_code=exc.code,
            )

        if isinstance(decision, SweepOutcome):
            return decision

        method = LedgerMethod.RELEASE_AFTER_DEADLINE
        try:
            receipt = await self._ledger.release_after_deadline(
                int(task_id), decision.recipient, decision.reason
            )
        except Exception as exc:
            code = getattr(exc, "code", type(exc).__name__)
            tx_hash = getattr(exc, "tx_hash", None)
            log.error("sweeper.record_failed", error=str(exc), code=code, tx_hash=tx_hash)
            async with session_scope(self._session_factory) as session:
                # A broadcast-but-unconfirmed tx keeps its claim until the lease expires.
                if not may_be_broadcast(exc):
                    await EscrowTaskRepository(session).release_claim(task_id, SWEEPER_ACTOR)
                await SettlementLogRepository(session).record(
                    task_id=task_id,
                    action=method.value,
                    outcome=SettlementOutcome.FAILED,
                    actor=SWEEPER_ACTOR,
                    reason=decision.reason,
                    recipient=decision.recipient,
                    tx_hash=tx_hash,
                    error_code=code,
                    metadata={"error": str(exc)},
                )
            return SweepOutcome(
                task_id=task_id,
                outcome=SettlementOutcome.FAILED,
                action=method.value,
                reason=decision.reason,
                recipient=decision.recipient,
                tx_hash=tx_hash,
                error_code=code,
            )

        submitted = SweepOutcome(
            task_id=task_id,
            outcome=SettlementOutcome.SUBMITTED,
            action=method.value,
            reason=decision.reason,
            recipient=decision.recipient,
            tx_hash=receipt.tx_hash,
        )
        try:
            await self._apply_transitions(task_id, decision, receipt.tx_hash)
        except Exception as exc:
            # The tx is mined; the claim stays until the ingestor records the event.
            submitted.error_code = getattr(exc, "code", type(exc).__name__)
            log.error(
                "sweeper.transitions_failed",
                tx_hash=receipt.tx_hash,
                error=str(exc),
                exc_info=True,
            )
            return submitted

        log.info(
            "sweeper.record_settled",
            action=decision.action.value,
            recipient=decision.recipient,
            tx_hash=receipt.tx_hash,
        )
        return submitted

    async def _decide_and_claim(self, task_id: str, now_ts: int) -> SettlementDecision | SweepOutcome:
        """Run the policy for one record and claim it, in one transaction.

        Returns the decision to execute, or a final SweepOutcome when there is
        nothing to submit.
        """
        async with session_scope(self._session_factory) as session:
            escrow_repo = EscrowTaskRepository(session)
            record = await escrow_repo.get_by_task_id(task_id)
            if record is None or record.settled or record.deadline >= now_ts:
                return SweepOutcome(
                    task_id=task_id, outcome=SettlementOutcome.SKIPPED, reason="no longer expired"
                )

            task = await TaskRepository(session).get_by_external_id(record.external_task_id)
            if task is None:
                logger.warning(
                    "sweeper.task_missing",
                    task_id=task_id,
                    external_task_id=record.external_task_id,
                )
                return SweepOutcome(
                    task_id=task_id, outcome=SettlementOutcome.SKIPPED, reason="task not found"
                )

            applications = await ApplicationRepository(session).list_for_task(task.id)
            decision = decide_settlement(record, task, applications[0] if applications else None)
            if decision.is_skip:
                logger.info("sweeper.record_skipped", task_id=task_id, reason=decision.reason)
                return SweepOutcome(
                    task_id=task_id, outcome=SettlementOutcome.SKIPPED, reason=decision.reason
                )

            claimed = await escrow_repo.claim_for_settlement(
                task_id, SWEEPER_ACTOR, self._settings.settlement_claim_ttl_seconds
            )
            if not claimed:
                logger.info("sweeper.claim_lost", task_id=task_id)
                return SweepOutcome(
                    task_id=task_id,
                    outcome=SettlementOutcome.SKIPPED,
                    reason="settlement in progress",
                )
            return decision

    async def _apply_transitions(
        self, task_id: str, decision: SettlementDecision, tx_hash: str
    ) -> None:
        async with session_scope(self._session_factory) as session:
            record = await EscrowTaskRepository(session).get_by_task_id(task_id)
            task = await TaskRepository(session).get_by_external_id(record.external_task_id)
            if task is not None and decision.task_status is not None:
                await TaskRepository(session).update_status(task, decision.task_status)
            if task is not None and decision.application_status is not None:
                app_repo = ApplicationRepository(session)
                applications = await app_repo.list_for_task(task.id)
                if applications:
                    completed_at = (
                        datetime.now(UTC)
                        if decision.application_status == ApplicationStatus.COMPLETED
                        else None
                    )
                    await app_repo.update_status(
                        applications[0], decision.application_status, completed_at=completed_at
                    )
            await SettlementLogRepository(session).record(
                task_id=task_id,
                action=LedgerMethod.RELEASE_AFTER_DEADLINE.value,
                outcome=SettlementOutcome.SUBMITTED,
                actor=SWEEPER_ACTOR,
                reason=decision.reason,
                recipient=decision.recipient,
                tx_hash=tx_hash,
                metadata={"decision": decision.action.value},
            )

    async def _audit(self, task_id: str, **fields) -> None:
        async with session_scope(self._session_factory) as session:
            await SettlementLogRepository(session).record(
                task_id=task_id, actor=SWEEPER_ACTOR, **fields
            )
