"""SQLAlchemy 2.0 ORM models for the escrow settlement engine.

Five tables:
    1. escrow_tasks       Off-chain mirror of each on-chain escrow deposit.
    2. tasks              Off-chain freelance tasks (status consumed by settlement).
    3. task_applications  Freelancer applications to a task.
    4. settlement_log     Append-only audit of settlement attempts and review flags.
    5. sync_cursors       Last block processed by the live event ingestor.

Design decisions:
    - escrow_tasks is keyed by the immutable on-chain task id, so replaying
      events in any order lands on the same row.
    - Token amounts are decimal strings: uint256 does not fit NUMERIC(18, 6)
      and must never pass through a float.
    - Generic Uuid / JSON types (JSONB on PostgreSQL) so the schema also runs
      on SQLite.
    - CHECK constraints on status columns guard enum values at DB level.
    - settlement_log is append-only: no UPDATE or DELETE at the application level.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# 1. escrow_tasks
# ---------------------------------------------------------------------------
class EscrowTask(Base):
    """Mirror of one on-chain escrow. Created and settled only by ledger events."""

    __tablename__ = "escrow_tasks"

    # --- Natural Key ---
    task_id: Mapped[str] = mapped_column(
        String(78),
        primary_key=True,
        comment="On-chain task id (uint256 as decimal string)",
    )
    external_task_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Off-chain task id the deposit was made for",
    )

    # --- Participants ---
    employer: Mapped[str] = mapped_column(
        String(42),
        nullable=False,
        comment="Lower-cased depositing address",
    )
    freelancer: Mapped[str] = mapped_column(
        String(42),
        nullable=False,
        comment="Lower-cased designated freelancer address",
    )

    # --- Financials ---
    amount: Mapped[str] = mapped_column(
        String(78),
        nullable=False,
        comment="Deposited amount in token base units (decimal string)",
    )
    deadline: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Absolute Unix timestamp after which deadline settlement applies",
    )
    settled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Monotonic: false -> true, never reset",
    )

    # --- Deposit ---
    deposit_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True, default=None)
    deposited_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=_utcnow
    )

    # --- Settlement metadata (written exactly once) ---
    release_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True, default=None)
    released_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )
    release_to: Mapped[str | None] = mapped_column(String(42), nullable=True, default=None)
    release_reason: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    settlement_kind: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
        default=None,
        comment="released | cancelled",
    )

    # --- Settlement claim (compare-and-set lease) ---
    claimed_by: Mapped[str | None] = mapped_column(String(64), nullable=True, default=None)
    claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (
        CheckConstraint(
            "settlement_kind IS NULL OR settlement_kind IN ('released', 'cancelled')",
            name="ck_escrow_settlement_kind",
        ),
        CheckConstraint(
            "settlement_kind IS NULL OR settled",
            name="ck_escrow_kind_implies_settled",
        ),
        Index("idx_escrow_external", "external_task_id"),
        Index("idx_escrow_settled_deadline", "settled", "deadline"),
    )

    def __repr__(self) -> str:
        return (
            f"<EscrowTask task_id={self.task_id} settled={self.settled} "
            f"amount={self.amount}>"
        )


# ---------------------------------------------------------------------------
# 2. tasks
# ---------------------------------------------------------------------------
class Task(Base):
    """A freelance task posted by an employer profile."""

    __tablename__ = "tasks"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    employer_profile_id: Mapped[str] = mapped_column(String(255), nullable=False)
    freelancer_profile_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, default=None
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")

    # --- Escrow linkage ---
    external_task_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        unique=True,
        default=None,
        comment="Set once an escrow is created for this task",
    )
    onchain_task_id: Mapped[str | None] = mapped_column(
        String(78),
        nullable=True,
        default=None,
        comment="Set once the deposit is observed on-chain",
    )
    deposit_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True, default=None)

    deadline: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    applications: Mapped[list[TaskApplication]] = relationship(
        "TaskApplication",
        back_populates="task",
        cascade="all, delete-orphan",
        order_by="TaskApplication.applied_at.asc()",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('open', 'in_review', 'in_progress', 'completed', 'cancelled')",
            name="ck_task_valid_status",
        ),
        Index("idx_task_employer", "employer_profile_id"),
    )

    def __repr__(self) -> str:
        return f"<Task id={self.id} status={self.status} external={self.external_task_id}>"


# ---------------------------------------------------------------------------
# 3. task_applications
# ---------------------------------------------------------------------------
class TaskApplication(Base):
    """A freelancer's application to a task."""

    __tablename__ = "task_applications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    task_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("tasks.id", ondelete="CASCADE"),
        nullable=False,
    )
    applicant_profile_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="submitted")
    submission_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )
    applied_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    task: Mapped[Task] = relationship("Task", back_populates="applications")

    # No CHECK on status: unknown values must load and reach review.
    __table_args__ = (
        CheckConstraint("submission_count >= 0", name="ck_application_submissions"),
        Index("idx_application_task", "task_id"),
    )

    def __repr__(self) -> str:
        return f"<TaskApplication id={self.id} task={self.task_id} status={self.status}>"


# ---------------------------------------------------------------------------
# 4. settlement_log (Append-Only Audit Log)
# ---------------------------------------------------------------------------
class SettlementLog(Base):
    """Immutable record of one settlement attempt or review flag."""

    __tablename__ = "settlement_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    task_id: Mapped[str] = mapped_column(
        String(78),
        nullable=False,
        comment="On-chain task id",
    )
    action: Mapped[str] = mapped_column(
        String(40),
        nullable=False,
        comment="release | cancel | releaseAfterDeadline | skip",
    )
    actor: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="SYSTEM",
        comment="sweeper, admin profile id, or employer profile id",
    )
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    recipient: Mapped[str | None] = mapped_column(String(42), nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(40), nullable=True)
    requires_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata",
        JSONType,
        nullable=True,
        default=None,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "outcome IN ('SUBMITTED', 'FAILED', 'SKIPPED', 'NEEDS_REVIEW')",
            name="ck_settlement_log_outcome",
        ),
        Index("idx_settlement_log_task", "task_id"),
        Index("idx_settlement_log_review", "requires_review"),
    )

    def __repr__(self) -> str:
        return f"<SettlementLog task={self.task_id} action={self.action} outcome={self.outcome}>"


# ---------------------------------------------------------------------------
# 5. sync_cursors
# ---------------------------------------------------------------------------
class SyncCursor(Base):
    """Named block cursor for resumable event ingestion."""

    __tablename__ = "sync_cursors"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    last_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
