"""Deadline Settlement Policy.

Pure decision function: given an expired, unsettled escrow, its Task and the
Task's first Application, decide whether the funds go back to the employer,
go to the freelancer, or stay untouched.

Decision table (checked top to bottom):
    task or application completed          -> skip (already handled)
    task cancelled or application rejected -> refund employer, "cancelled"
    no application                         -> refund employer, "no application submitted"
    application in_review                  -> release freelancer,
                                              task -> completed, application -> completed
    application accepted / submitted /
      needs_revision / in_progress         -> refund employer,
                                              task -> cancelled, application -> rejected
    anything else                          -> UnknownApplicationStatusError

Expiry favors the employer unless there is affirmative evidence that work
was delivered. The function reads only its arguments.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from escrow_settlement.domain.enums import (
    ApplicationStatus,
    SettlementAction,
    TaskStatus,
)
from escrow_settlement.domain.exceptions import UnknownApplicationStatusError

REASON_CANCELLED = "cancelled"
REASON_NO_APPLICATION = "no application submitted"
REASON_WORK_SUBMITTED = "deadline passed, work was submitted"
REASON_NO_SUBMISSION = "deadline passed, no submission"
REASON_ALREADY_HANDLED = "already handled"

_UNDELIVERED_STATUSES = frozenset(
    {
        ApplicationStatus.ACCEPTED,
        ApplicationStatus.SUBMITTED,
        ApplicationStatus.NEEDS_REVISION,
        ApplicationStatus.IN_PROGRESS,
    }
)


class EscrowView(Protocol):
    task_id: str
    employer: str
    freelancer: str


class TaskView(Protocol):
    status: str


class ApplicationView(Protocol):
    status: str


@dataclass(frozen=True)
class SettlementDecision:
    """What to do with one expired escrow.

    Attributes:
        action: skip, refund the employer, or release to the freelancer.
        reason: Reason string passed on-chain with the settlement call.
        recipient: Address receiving the funds (None for skip).
        task_status: Off-chain Task status to apply after a successful settlement.
        application_status: Off-chain Application status to apply after settlement.
    """

    action: SettlementAction
    reason: str
    recipient: str | None = None
    task_status: TaskStatus | None = None
    application_status: ApplicationStatus | None = None

    @property
    def is_skip(self) -> bool:
        return self.action == SettlementAction.SKIP


def _refund(escrow: EscrowView, reason: str, **transitions) -> SettlementDecision:
    return SettlementDecision(
        action=SettlementAction.REFUND_EMPLOYER,
        reason=reason,
        recipient=escrow.employer,
        **transitions,
    )


def decide_settlement(
    escrow: EscrowView,
    task: TaskView,
    application: ApplicationView | None,
) -> SettlementDecision:
    """Apply the deadline decision table.

    Raises:
        UnknownApplicationStatusError: when the application status has no rule.
            The caller must leave the escrow untouched and flag it for review.
    """
    app_status = application.status if application is not None else None

    if task.status == TaskStatus.COMPLETED or app_status == ApplicationStatus.COMPLETED:
        return SettlementDecision(action=SettlementAction.SKIP, reason=REASON_ALREADY_HANDLED)

    if task.status == TaskStatus.CANCELLED or app_status == ApplicationStatus.REJECTED:
        return _refund(escrow, REASON_CANCELLED)

    if application is None:
        return _refund(escrow, REASON_NO_APPLICATION)

    if app_status == ApplicationStatus.IN_REVIEW:
        return SettlementDecision(
            action=SettlementAction.RELEASE_FREELANCER,
            reason=REASON_WORK_SUBMITTED,
            recipient=escrow.freelancer,
            task_status=TaskStatus.COMPLETED,
            application_status=ApplicationStatus.COMPLETED,
        )

    if app_status in _UNDELIVERED_STATUSES:
        return _refund(
            escrow,
            REASON_NO_SUBMISSION,
            task_status=TaskStatus.CANCELLED,
            application_status=ApplicationStatus.REJECTED,
        )

    raise UnknownApplicationStatusError(escrow.task_id, str(app_status))
