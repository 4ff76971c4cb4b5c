"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).

Every write that can race is a single conditional statement:
    - upsert_from_snapshot: INSERT ... ON CONFLICT (task_id) DO UPDATE ... WHERE NOT settled
    - record_settlement:    UPDATE ... WHERE release_tx_hash IS NULL
    - claim_for_settlement: UPDATE ... WHERE NOT settled AND claim free or expired
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from escrow_settlement.infrastructure.database.orm_models import (
    EscrowTask,
    SettlementLog,
    SyncCursor,
    Task,
    TaskApplication,
)

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_settlement.domain.enums import (
        ApplicationStatus,
        SettlementKind,
        SettlementOutcome,
        TaskStatus,
    )
    from escrow_settlement.domain.ledger_protocol import EscrowSnapshot


def _insert_for(session: AsyncSession):
    """Pick the dialect's INSERT construct (both support ON CONFLICT)."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert
    return sqlite_insert


class EscrowTaskRepository:
    """Data access for escrow mirror rows."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_task_id(self, task_id: str) -> EscrowTask | None:
        """Fetch a mirror row by on-chain task id (always fresh from the DB)."""
        result = await self._session.execute(
            select(EscrowTask)
            .where(EscrowTask.task_id == task_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_external_id(self, external_task_id: str) -> EscrowTask | None:
        """Fetch a mirror row by the off-chain external task id."""
        result = await self._session.execute(
            select(EscrowTask)
            .where(EscrowTask.external_task_id == external_task_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def list_all(self) -> list[EscrowTask]:
        """Fetch every mirror row, soonest deadline first."""
        result = await self._session.execute(
            select(EscrowTask)
            .order_by(EscrowTask.deadline.asc(), EscrowTask.task_id.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_expired_unsettled(self, now_ts: int) -> list[EscrowTask]:
        """Fetch rows with settled=false AND deadline < now_ts."""
        result = await self._session.execute(
            select(EscrowTask)
            .where(EscrowTask.settled.is_(False), EscrowTask.deadline < now_ts)
            .order_by(EscrowTask.deadline.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def upsert_from_snapshot(
        self,
        snapshot: EscrowSnapshot,
        external_task_id: str,
        deposit_tx_hash: str | None = None,
    ) -> None:
        """Insert the mirror row, or refresh amount/deadline/settled while unsettled.

        Keyed by on-chain task id, so re-applying the same snapshot is a no-op
        and a settled row is never modified here.
        """
        now = datetime.now(UTC)
        insert = _insert_for(self._session)
        stmt = insert(EscrowTask).values(
            task_id=str(snapshot.task_id),
            external_task_id=external_task_id,
            employer=snapshot.employer.lower(),
            freelancer=snapshot.freelancer.lower(),
            amount=str(snapshot.amount),
            deadline=snapshot.deadline,
            settled=snapshot.settled,
            deposit_tx_hash=deposit_tx_hash,
            deposited_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[EscrowTask.task_id],
            set_={
                "amount": stmt.excluded.amount,
                "deadline": stmt.excluded.deadline,
                "settled": stmt.excluded.settled,
            },
            where=EscrowTask.settled.is_(False),
        )
        await self._session.execute(stmt)

        if deposit_tx_hash:
            await self._session.execute(
                update(EscrowTask)
                .where(
                    EscrowTask.task_id == str(snapshot.task_id),
                    EscrowTask.deposit_tx_hash.is_(None),
                )
                .values(deposit_tx_hash=deposit_tx_hash)
                .execution_options(synchronize_session=False)
            )

    async def record_settlement(
        self,
        task_id: str,
        kind: SettlementKind,
        tx_hash: str,
        recipient: str,
        reason: str,
        released_at: datetime | None = None,
    ) -> bool:
        """Mark settled and write release metadata, only if none is written yet.

        Returns True if this call wrote the metadata.
        """
        result = await self._session.execute(
            update(EscrowTask)
            .where(
                EscrowTask.task_id == task_id,
                EscrowTask.release_tx_hash.is_(None),
            )
            .values(
                settled=True,
                release_tx_hash=tx_hash,
                released_at=released_at or datetime.now(UTC),
                release_to=recipient.lower(),
                release_reason=reason,
                settlement_kind=kind.value,
                claimed_by=None,
                claimed_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def claim_for_settlement(
        self,
        task_id: str,
        actor: str,
        lease_seconds: int,
    ) -> bool:
        """Compare-and-set a settlement claim on an unsettled row.

        Succeeds when no live claim exists (none, or older than the lease).
        Returns True if the caller now holds the claim.
        """
        now = datetime.now(UTC)
        cutoff = now - timedelta(seconds=lease_seconds)
        result = await self._session.execute(
            update(EscrowTask)
            .where(
                EscrowTask.task_id == task_id,
                EscrowTask.settled.is_(False),
                EscrowTask.release_tx_hash.is_(None),
                or_(EscrowTask.claimed_at.is_(None), EscrowTask.claimed_at < cutoff),
            )
            .values(claimed_by=actor, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def release_claim(self, task_id: str, actor: str) -> None:
        """Drop a claim held by actor (after a failed submission)."""
        await self._session.execute(
            update(EscrowTask)
            .where(EscrowTask.task_id == task_id, EscrowTask.claimed_by == actor)
            .values(claimed_by=None, claimed_at=None)
            .execution_options(synchronize_session=False)
        )


class TaskRepository:
    """Data access for off-chain tasks."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, task_id: uuid.UUID) -> Task | None:
        result = await self._session.execute(select(Task).where(Task.id == task_id))
        return result.scalar_one_or_none()

    async def get_by_external_id(self, external_task_id: str) -> Task | None:
        """Fetch the Task linked to an escrow by its external id."""
        result = await self._session.execute(
            select(Task).where(Task.external_task_id == external_task_id)
        )
        return result.scalar_one_or_none()

    async def update_status(self, task: Task, new_status: TaskStatus) -> Task:
        """Update the status of a task."""
        task.status = new_status.value
        await self._session.flush()
        return task

    async def link_deposit(
        self,
        external_task_id: str,
        onchain_task_id: str,
        deposit_tx_hash: str | None,
    ) -> bool:
        """Attach the confirmed on-chain id to the Task, once."""
        values: dict = {"onchain_task_id": onchain_task_id}
        if deposit_tx_hash:
            values["deposit_tx_hash"] = deposit_tx_hash
        result = await self._session.execute(
            update(Task)
            .where(
                Task.external_task_id == external_task_id,
                Task.onchain_task_id.is_(None),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class ApplicationRepository:
    """Data access for task applications."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def list_for_task(self, task_id: uuid.UUID) -> list[TaskApplication]:
        """Fetch all applications for a task, oldest first."""
        result = await self._session.execute(
            select(TaskApplication)
            .where(TaskApplication.task_id == task_id)
            .order_by(TaskApplication.applied_at.asc())
        )
        return list(result.scalars().all())

    async def update_status(
        self,
        application: TaskApplication,
        new_status: ApplicationStatus,
        completed_at: datetime | None = None,
    ) -> TaskApplication:
        """Update the status of an application (and completion time, if given)."""
        application.status = new_status.value
        if completed_at is not None:
            application.completed_at = completed_at
        await self._session.flush()
        return application

    async def update_status_for_task(
        self,
        task_id: uuid.UUID,
        new_status: ApplicationStatus,
        completed_at: datetime | None = None,
    ) -> int:
        """Set the status of every application of a task. Returns rows changed."""
        values: dict = {"status": new_status.value}
        if completed_at is not None:
            values["completed_at"] = completed_at
        result = await self._session.execute(
            update(TaskApplication)
            .where(TaskApplication.task_id == task_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


class SettlementLogRepository:
    """Data access for the append-only settlement audit log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        task_id: str,
        action: str,
        outcome: SettlementOutcome,
        actor: str = "SYSTEM",
        reason: str | None = None,
        recipient: str | None = None,
        tx_hash: str | None = None,
        error_code: str | None = None,
        requires_review: bool = False,
        metadata: dict | None = None,
    ) -> SettlementLog:
        """Append a new audit row. This is the ONLY write operation allowed."""
        entry = SettlementLog(
            task_id=task_id,
            action=action,
            outcome=outcome.value,
            actor=actor,
            reason=reason,
            recipient=recipient.lower() if recipient else None,
            tx_hash=tx_hash,
            error_code=error_code,
            requires_review=requires_review,
            metadata_json=metadata,
        )
        self._session.add(entry)
        await self._session.flush()
        return entry

    async def get_by_task(self, task_id: str) -> list[SettlementLog]:
        """Fetch the audit trail of one escrow in chronological order."""
        result = await self._session.execute(
            select(SettlementLog)
            .where(SettlementLog.task_id == task_id)
            .order_by(SettlementLog.created_at.asc())
        )
        return list(result.scalars().all())

    async def list_requiring_review(self) -> list[SettlementLog]:
        """Fetch entries flagged for manual operator review, newest first."""
        result = await self._session.execute(
            select(SettlementLog)
            .where(SettlementLog.requires_review.is_(True))
            .order_by(SettlementLog.created_at.desc())
        )
        return list(result.scalars().all())


class SyncCursorRepository:
    """Data access for resumable ingestion cursors."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, name: str) -> int | None:
        result = await self._session.execute(
            select(SyncCursor.last_block).where(SyncCursor.name == name)
        )
        return result.scalar_one_or_none()

    async def advance(self, name: str, last_block: int) -> None:
        """Move the cursor forward; never backwards."""
        insert = _insert_for(self._session)
        stmt = insert(SyncCursor).values(
            name=name, last_block=last_block, updated_at=datetime.now(UTC)
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[SyncCursor.name],
            set_={"last_block": stmt.excluded.last_block, "updated_at": stmt.excluded.updated_at},
            where=SyncCursor.last_block < stmt.excluded.last_block,
        )
        await self._session.execute(stmt)
