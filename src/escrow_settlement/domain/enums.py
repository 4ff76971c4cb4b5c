"""Domain enumerations for the escrow settlement engine.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class TaskStatus(enum.StrEnum):
    """Lifecycle states of an off-chain Task."""

    OPEN = "open"
    IN_REVIEW = "in_review"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ApplicationStatus(enum.StrEnum):
    """Lifecycle states of a freelancer's application to a Task.

    IN_PROGRESS is a legacy value still present on older rows; the settlement
    policy treats it like ACCEPTED.
    """

    SUBMITTED = "submitted"
    ACCEPTED = "accepted"
    IN_REVIEW = "in_review"
    REJECTED = "rejected"
    NEEDS_REVISION = "needs_revision"
    COMPLETED = "completed"
    IN_PROGRESS = "in_progress"


class LedgerEventType(enum.StrEnum):
    """Escrow contract events mirrored into the off-chain store."""

    DEPOSITED = "Deposited"
    RELEASED = "Released"
    CANCELLED = "Cancelled"


class SettlementAction(enum.StrEnum):
    """Outcome of the deadline settlement policy for one escrow."""

    SKIP = "skip"
    REFUND_EMPLOYER = "refund_employer"
    RELEASE_FREELANCER = "release_freelancer"


class SettlementKind(enum.StrEnum):
    """How an escrow was terminated on-chain."""

    RELEASED = "released"
    CANCELLED = "cancelled"


class LedgerMethod(enum.StrEnum):
    """Admin-signed write functions on the escrow contract."""

    RELEASE = "release"
    CANCEL = "cancel"
    RELEASE_AFTER_DEADLINE = "releaseAfterDeadline"


class SettlementOutcome(enum.StrEnum):
    """Result recorded in the settlement audit log."""

    SUBMITTED = "SUBMITTED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    NEEDS_REVIEW = "NEEDS_REVIEW"
