"""Settlement Service: operator and employer settlement paths.

Covers the manual counterparts of the deadline sweeper:
    - release_escrow:  admin releases an escrow to any address
    - complete_task:   employer releases to the freelancer before the deadline
    - cancel_task:     employer refunds themselves before the deadline
    - estimate_release: cost of a release without submitting it

Every write claims the mirror row first (compare-and-set) and commits the
claim before the ledger call, so a concurrent sweep or second request sees it
and backs off with AlreadySettledError.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from escrow_settlement.config import Settings, get_settings
from escrow_settlement.domain.enums import (
    ApplicationStatus,
    LedgerMethod,
    SettlementOutcome,
    TaskStatus,
)
from escrow_settlement.domain.exceptions import (
    AlreadySettledError,
    DeadlinePassedError,
    EscrowNotInitializedError,
    EscrowRecordNotFoundError,
    NotTaskOwnerError,
    TaskNotFoundError,
    may_be_broadcast,
)
from escrow_settlement.infrastructure.database.repositories import (
    ApplicationRepository,
    EscrowTaskRepository,
    SettlementLogRepository,
    TaskRepository,
)
from escrow_settlement.logging_config import get_logger

if TYPE_CHECKING:
    import uuid
    from collections.abc import Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_settlement.domain.ledger_protocol import CostEstimate, LedgerClient, TxReceipt
    from escrow_settlement.infrastructure.database.orm_models import (
        EscrowTask,
        SettlementLog,
        Task,
    )

logger = get_logger(__name__)

DEFAULT_COMPLETE_REASON = "task completed"
DEFAULT_CANCEL_REASON = "cancelled by employer"


@dataclass(frozen=True)
class SettlementResult:
    """A submitted settlement and the off-chain Task it touched (if any)."""

    task_id: str
    method: LedgerMethod
    recipient: str
    reason: str
    receipt: TxReceipt
    task: Task | None = None


class SettlementService:
    def __init__(
        self,
        session: AsyncSession,
        ledger: LedgerClient,
        settings: Settings | None = None,
    ) -> None:
        self._session = session
        self._ledger = ledger
        self._settings = settings or get_settings()
        self._escrow_repo = EscrowTaskRepository(session)
        self._task_repo = TaskRepository(session)
        self._app_repo = ApplicationRepository(session)
        self._log_repo = SettlementLogRepository(session)

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    async def release_escrow(
        self, task_id: str, to: str, reason: str, actor: str
    ) -> SettlementResult:
        """Admin release of an escrow to an arbitrary address."""
        record = await self._get_unsettled_record(task_id)
        receipt = await self._submit_claimed(
            record,
            LedgerMethod.RELEASE,
            actor=actor,
            recipient=to,
            reason=reason,
            submit=lambda: self._ledger.release(int(record.task_id), to, reason),
        )
        return SettlementResult(
            task_id=record.task_id,
            method=LedgerMethod.RELEASE,
            recipient=to.lower(),
            reason=reason,
            receipt=receipt,
        )

    async def estimate_release(self, task_id: str, to: str, reason: str) -> CostEstimate:
        return await self._ledger.estimate_cost(LedgerMethod.RELEASE, int(task_id), to, reason)

    async def list_review(self) -> list[SettlementLog]:
        return await self._log_repo.list_requiring_review()

    # ------------------------------------------------------------------
    # Employer
    # ------------------------------------------------------------------

    async def complete_task(
        self,
        task_id: uuid.UUID,
        profile_id: str,
        reason: str = DEFAULT_COMPLETE_REASON,
    ) -> SettlementResult:
        """Release the escrow to the freelancer and mark the Task completed."""
        task, record = await self._load_owned_escrow(task_id, profile_id)
        receipt = await self._submit_claimed(
            record,
            LedgerMethod.RELEASE,
            actor=profile_id,
            recipient=record.freelancer,
            reason=reason,
            submit=lambda: self._ledger.release(int(record.task_id), record.freelancer, reason),
        )

        await self._task_repo.update_status(task, TaskStatus.COMPLETED)
        await self._app_repo.update_status_for_task(
            task.id, ApplicationStatus.COMPLETED, completed_at=datetime.now(UTC)
        )
        logger.info("settlement.task_completed", task_id=str(task.id), tx_hash=receipt.tx_hash)
        return SettlementResult(
            task_id=record.task_id,
            method=LedgerMethod.RELEASE,
            recipient=record.freelancer,
            reason=reason,
            receipt=receipt,
            task=task,
        )

    async def cancel_task(
        self,
        task_id: uuid.UUID,
        profile_id: str,
        reason: str = DEFAULT_CANCEL_REASON,
    ) -> SettlementResult:
        """Refund the escrow to the employer and mark the Task cancelled."""
        task, record = await self._load_owned_escrow(task_id, profile_id)
        receipt = await self._submit_claimed(
            record,
            LedgerMethod.CANCEL,
            actor=profile_id,
            recipient=record.employer,
            reason=reason,
            submit=lambda: self._ledger.cancel(int(record.task_id), reason),
        )

        await self._task_repo.update_status(task, TaskStatus.CANCELLED)
        await self._app_repo.update_status_for_task(task.id, ApplicationStatus.REJECTED)
        logger.info("settlement.task_cancelled", task_id=str(task.id), tx_hash=receipt.tx_hash)
        return SettlementResult(
            task_id=record.task_id,
            method=LedgerMethod.CANCEL,
            recipient=record.employer,
            reason=reason,
            receipt=receipt,
            task=task,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _get_unsettled_record(self, task_id: str) -> EscrowTask:
        record = await self._escrow_repo.get_by_task_id(task_id)
        if record is None:
            raise EscrowRecordNotFoundError(task_id)
        if record.settled:
            raise AlreadySettledError(task_id)
        return record

    async def _load_owned_escrow(
        self, task_id: uuid.UUID, profile_id: str
    ) -> tuple[Task, EscrowTask]:
        task = await self._task_repo.get_by_id(task_id)
        if task is None:
            raise TaskNotFoundError(str(task_id))
        if task.employer_profile_id != profile_id:
            raise NotTaskOwnerError(str(task_id), profile_id)
        if not task.external_task_id:
            raise EscrowNotInitializedError(str(task_id))

        record = await self._escrow_repo.get_by_external_id(task.external_task_id)
        if record is None:
            raise EscrowRecordNotFoundError(task.external_task_id)
        if record.settled:
            raise AlreadySettledError(record.task_id)
        if record.deadline < int(time.time()):
            raise DeadlinePassedError(str(task_id), record.deadline)
        return task, record

    async def _submit_claimed(
        self,
        record: EscrowTask,
        method: LedgerMethod,
        actor: str,
        recipient: str,
        reason: str,
        submit: Callable[[], Awaitable[TxReceipt]],
    ) -> TxReceipt:
        """Claim the row, commit the claim, then call the ledger."""
        task_id = record.task_id
        claimed = await self._escrow_repo.claim_for_settlement(
            task_id, actor, self._settings.settlement_claim_ttl_seconds
        )
        if not claimed:
            raise AlreadySettledError(task_id, "settlement in progress")
        await self._session.commit()

        log = logger.bind(task_id=task_id, method=method.value, actor=actor)
        try:
            receipt = await submit()
        except Exception as exc:
            code = getattr(exc, "code", type(exc).__name__)
            log.error("settlement.submit_failed", error=str(exc), code=code)
            if not may_be_broadcast(exc):
                await self._escrow_repo.release_claim(task_id, actor)
            await self._log_repo.record(
                task_id=task_id,
                action=method.value,
                outcome=SettlementOutcome.FAILED,
                actor=actor,
                reason=reason,
                recipient=recipient,
                tx_hash=getattr(exc, "tx_hash", None),
                error_code=code,
                metadata={"error": str(exc)},
            )
            await self._session.commit()
            raise

        await self._log_repo.record(
            task_id=task_id,
            action=method.value,
            outcome=SettlementOutcome.SUBMITTED,
            actor=actor,
            reason=reason,
            recipient=recipient,
            tx_hash=receipt.tx_hash,
            metadata={"block_number": receipt.block_number, "gas_used": str(receipt.gas_used)},
        )
        log.info("settlement.submitted", tx_hash=receipt.tx_hash, recipient=recipient.lower())
        return receipt
