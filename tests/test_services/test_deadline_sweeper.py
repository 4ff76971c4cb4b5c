"""Tests for the DeadlineSweeper.

Covers the policy outcomes end to end, the settlement claim, failure
handling and the single-flight guard.
"""

from __future__ import annotations

import asyncio
import time

import pytest

from escrow_settlement.domain.enums import LedgerMethod, SettlementOutcome
from escrow_settlement.domain.exceptions import (
    LedgerRPCError,
    LedgerTimeoutError,
    TransactionRevertedError,
)
from escrow_settlement.domain.settlement_policy import (
    REASON_NO_APPLICATION,
    REASON_NO_SUBMISSION,
    REASON_WORK_SUBMITTED,
)
from escrow_settlement.infrastructure.database.orm_models import EscrowTask, Task
from escrow_settlement.infrastructure.database.repositories import (
    ApplicationRepository,
    SettlementLogRepository,
)
from escrow_settlement.services.deadline_sweeper import SWEEPER_ACTOR, DeadlineSweeper
from escrow_settlement.services.escrow_sync import EscrowSyncService

EMPLOYER = "0x1111111111111111111111111111111111111111"
FREELANCER = "0x2222222222222222222222222222222222222222"
EXPIRED = int(time.time()) - 3600


@pytest.fixture
def mirror(session_factory, ledger):
    """Create an expired escrow on the ledger and apply its deposit."""

    async def _mirror(task_id: int, external_id: str, deadline: int = EXPIRED) -> None:
        event = ledger.add_escrow(task_id, external_id, deadline=deadline)
        async with session_factory() as session:
            await EscrowSyncService(session, ledger).apply(event)
            await session.commit()

    return _mirror


@pytest.fixture
def sweeper(ledger, session_factory, settings) -> DeadlineSweeper:
    return DeadlineSweeper(ledger, session_factory, settings)


async def load_task(session_factory, task_id):
    async with session_factory() as session:
        task = await session.get(Task, task_id)
        applications = await ApplicationRepository(session).list_for_task(task_id)
    return task, applications


async def audit_trail(session_factory, task_id: str):
    async with session_factory() as session:
        return await SettlementLogRepository(session).get_by_task(task_id)


class TestPolicyOutcomes:
    @pytest.mark.asyncio
    async def test_work_in_review_releases_to_freelancer(
        self, sweeper, ledger, mirror, seed_task, session_factory
    ) -> None:
        await mirror(1, "task-1")
        task_id = await seed_task("task-1", status="in_review", application_status="in_review")

        report = await sweeper.run_once()

        assert report.examined == 1
        assert report.count(SettlementOutcome.SUBMITTED) == 1
        assert ledger.writes() == [
            (LedgerMethod.RELEASE_AFTER_DEADLINE, 1, FREELANCER, REASON_WORK_SUBMITTED)
        ]
        task, applications = await load_task(session_factory, task_id)
        assert task.status == "completed"
        assert applications[0].status == "completed"
        assert applications[0].completed_at is not None

        trail = await audit_trail(session_factory, "1")
        assert [entry.outcome for entry in trail] == ["SUBMITTED"]
        assert trail[0].actor == SWEEPER_ACTOR
        assert trail[0].tx_hash == report.outcomes[0].tx_hash

    @pytest.mark.asyncio
    async def test_accepted_without_delivery_refunds_employer(
        self, sweeper, ledger, mirror, seed_task, session_factory
    ) -> None:
        await mirror(1, "task-1")
        task_id = await seed_task("task-1", status="in_progress", application_status="accepted")

        await sweeper.run_once()

        assert ledger.writes() == [
            (LedgerMethod.RELEASE_AFTER_DEADLINE, 1, EMPLOYER, REASON_NO_SUBMISSION)
        ]
        task, applications = await load_task(session_factory, task_id)
        assert task.status == "cancelled"
        assert applications[0].status == "rejected"
        assert applications[0].completed_at is None

    @pytest.mark.asyncio
    async def test_no_application_refunds_without_status_change(
        self, sweeper, ledger, mirror, seed_task, session_factory
    ) -> None:
        await mirror(1, "task-1")
        task_id = await seed_task("task-1")

        await sweeper.run_once()

        assert ledger.writes() == [
            (LedgerMethod.RELEASE_AFTER_DEADLINE, 1, EMPLOYER, REASON_NO_APPLICATION)
        ]
        task, _ = await load_task(session_factory, task_id)
        assert task.status == "open"

    @pytest.mark.asyncio
    async def test_completed_task_is_skipped(self, sweeper, ledger, mirror, seed_task) -> None:
        await mirror(1, "task-1")
        await seed_task("task-1", status="completed", application_status="completed")

        report = await sweeper.run_once()

        assert report.count(SettlementOutcome.SKIPPED) == 1
        assert ledger.writes() == []

    @pytest.mark.asyncio
    async def test_missing_task_is_skipped(self, sweeper, ledger, mirror) -> None:
        await mirror(1, "task-1")
        report = await sweeper.run_once()
        assert report.outcomes[0].reason == "task not found"
        assert ledger.writes() == []

    @pytest.mark.asyncio
    async def test_future_deadline_is_not_examined(self, sweeper, ledger, mirror, seed_task) -> None:
        await mirror(1, "task-1", deadline=int(time.time()) + 86_400)
        await seed_task("task-1", status="in_review", application_status="in_review")

        report = await sweeper.run_once()

        assert report.examined == 0
        assert ledger.writes() == []


class TestUnknownStatus:
    @pytest.mark.asyncio
    async def test_flagged_for_review_without_ledger_call(
        self, sweeper, ledger, mirror, seed_task, session_factory
    ) -> None:
        await mirror(1, "task-1")
        await seed_task("task-1", status="open", application_status="withdrawn")

        report = await sweeper.run_once()

        assert report.count(SettlementOutcome.NEEDS_REVIEW) == 1
        assert report.outcomes[0].error_code == "UNKNOWN_APPLICATION_STATUS"
        assert ledger.writes() == []

        async with session_factory() as session:
            flagged = await SettlementLogRepository(session).list_requiring_review()
            record = await session.get(EscrowTask, "1")
        assert [entry.task_id for entry in flagged] == ["1"]
        assert flagged[0].metadata_json == {"application_status": "withdrawn"}
        assert record.claimed_by is None
        assert record.settled is False


class TestClaims:
    @pytest.mark.asyncio
    async def test_submitted_escrow_is_not_resubmitted(
        self, sweeper, ledger, mirror, seed_task
    ) -> None:
        await mirror(1, "task-1")
        await seed_task("task-1", status="in_review", application_status="in_review")

        await sweeper.run_once()
        # Event not observed yet: the row is still unsettled but claimed.
        report = await sweeper.run_once()

        assert report.outcomes[0].reason == "settlement in progress"
        assert len(ledger.writes()) == 1

    @pytest.mark.asyncio
    async def test_observed_event_settles_the_row(
        self, sweeper, ledger, mirror, seed_task, session_factory
    ) -> None:
        await mirror(1, "task-1")
        await seed_task("task-1", status="in_review", application_status="in_review")
        await sweeper.run_once()

        async with session_factory() as session:
            record = await EscrowSyncService(session, ledger).apply(ledger.events[-1])
            await session.commit()
        assert record.settled is True
        assert record.claimed_by is None

        report = await sweeper.run_once()
        assert report.examined == 0

    @pytest.mark.asyncio
    async def test_failed_submission_releases_claim(
        self, sweeper, ledger, mirror, seed_task, session_factory
    ) -> None:
        await mirror(1, "task-1")
        await seed_task("task-1", status="in_review", application_status="in_review")
        ledger.fail_with = TransactionRevertedError("deadline not reached")

        report = await sweeper.run_once()

        assert report.count(SettlementOutcome.FAILED) == 1
        assert report.outcomes[0].error_code == "TRANSACTION_REVERTED"
        trail = await audit_trail(session_factory, "1")
        assert [entry.outcome for entry in trail] == ["FAILED"]

        ledger.fail_with = None
        retry = await sweeper.run_once()
        assert retry.count(SettlementOutcome.SUBMITTED) == 1

    @pytest.mark.asyncio
    async def test_unconfirmed_broadcast_keeps_claim(
        self, sweeper, ledger, mirror, seed_task, session_factory
    ) -> None:
        await mirror(1, "task-1")
        await seed_task("task-1", status="in_review", application_status="in_review")
        ledger.fail_with = LedgerTimeoutError("releaseAfterDeadline", 180, tx_hash="0x" + "ef" * 32)

        report = await sweeper.run_once()
        assert report.outcomes[0].tx_hash == "0x" + "ef" * 32

        async with session_factory() as session:
            record = await session.get(EscrowTask, "1")
        assert record.claimed_by == SWEEPER_ACTOR

        ledger.fail_with = None
        retry = await sweeper.run_once()
        assert retry.outcomes[0].reason == "settlement in progress"

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_sweep(
        self, sweeper, ledger, mirror, seed_task
    ) -> None:
        await mirror(1, "task-1")
        await mirror(2, "task-2")
        await seed_task("task-1", status="in_review", application_status="in_review")
        await seed_task("task-2", status="in_review", application_status="in_review")
        real_release = ledger.release_after_deadline

        async def flaky(task_id, to, reason):
            if task_id == 1:
                raise TransactionRevertedError("boom")
            return await real_release(task_id, to, reason)

        ledger.release_after_deadline = flaky
        report = await sweeper.run_once()

        assert report.count(SettlementOutcome.FAILED) == 1
        assert report.count(SettlementOutcome.SUBMITTED) == 1

    @pytest.mark.asyncio
    async def test_database_error_on_one_record_does_not_stop_the_sweep(
        self, sweeper, ledger, mirror, seed_task, monkeypatch
    ) -> None:
        await mirror(1, "task-1")
        await mirror(2, "task-2")
        await seed_task("task-1", status="in_review", application_status="in_review")
        await seed_task("task-2", status="in_review", application_status="in_review")
        real_list = ApplicationRepository.list_for_task
        calls = []

        async def failing_once(self, task_id):
            calls.append(task_id)
            if len(calls) == 1:
                raise RuntimeError("connection reset")
            return await real_list(self, task_id)

        monkeypatch.setattr(ApplicationRepository, "list_for_task", failing_once)
        report = await sweeper.run_once()

        assert report.examined == 2
        failed = [o for o in report.outcomes if o.outcome == SettlementOutcome.FAILED]
        assert len(failed) == 1
        assert failed[0].error_code == "RuntimeError"
        assert report.count(SettlementOutcome.SUBMITTED) == 1
        assert len(ledger.writes()) == 1

    @pytest.mark.asyncio
    async def test_transition_failure_after_submit_still_reports_submitted(
        self, sweeper, ledger, mirror, seed_task, session_factory, monkeypatch
    ) -> None:
        await mirror(1, "task-1")
        await mirror(2, "task-2")
        await seed_task("task-1", status="in_review", application_status="in_review")
        await seed_task("task-2", status="in_review", application_status="in_review")
        real_apply = DeadlineSweeper._apply_transitions

        async def failing_for_first(self, task_id, decision, tx_hash):
            if task_id == "1":
                raise RuntimeError("deadlock detected")
            return await real_apply(self, task_id, decision, tx_hash)

        monkeypatch.setattr(DeadlineSweeper, "_apply_transitions", failing_for_first)
        report = await sweeper.run_once()

        assert report.count(SettlementOutcome.SUBMITTED) == 2
        by_task = {o.task_id: o for o in report.outcomes}
        assert by_task["1"].tx_hash is not None
        assert by_task["1"].error_code == "RuntimeError"
        assert by_task["2"].error_code is None
        assert len(ledger.writes()) == 2
        async with session_factory() as session:
            assert (await session.get(EscrowTask, "1")).claimed_by == SWEEPER_ACTOR

    @pytest.mark.asyncio
    async def test_node_rejection_releases_claim(
        self, sweeper, ledger, mirror, seed_task, session_factory
    ) -> None:
        await mirror(1, "task-1")
        await seed_task("task-1", status="in_review", application_status="in_review")
        ledger.fail_with = LedgerRPCError("send:releaseAfterDeadline", "nonce too low")

        report = await sweeper.run_once()

        assert report.outcomes[0].outcome == SettlementOutcome.FAILED
        assert report.outcomes[0].error_code == "LEDGER_RPC_ERROR"
        async with session_factory() as session:
            assert (await session.get(EscrowTask, "1")).claimed_by is None

    @pytest.mark.asyncio
    async def test_connection_lost_after_send_keeps_claim(
        self, sweeper, ledger, mirror, seed_task, session_factory
    ) -> None:
        await mirror(1, "task-1")
        await seed_task("task-1", status="in_review", application_status="in_review")
        ledger.fail_with = LedgerRPCError(
            "send:releaseAfterDeadline", "connection reset", tx_hash="0x" + "cd" * 32
        )

        await sweeper.run_once()

        async with session_factory() as session:
            assert (await session.get(EscrowTask, "1")).claimed_by == SWEEPER_ACTOR


class TestDeadlineBoundary:
    @pytest.mark.asyncio
    async def test_deadline_equal_to_now_is_not_expired(
        self, sweeper, ledger, mirror, seed_task
    ) -> None:
        await mirror(1, "task-1")
        await seed_task("task-1", status="in_review", application_status="in_review")

        at_deadline = await sweeper.run_once(now=EXPIRED)
        assert at_deadline.examined == 0

        after = await sweeper.run_once(now=EXPIRED + 1)
        assert after.count(SettlementOutcome.SUBMITTED) == 1


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_run_reports_busy(self, sweeper, ledger, mirror, seed_task) -> None:
        await mirror(1, "task-1")
        await seed_task("task-1", status="in_review", application_status="in_review")
        ledger.submit_delay = 0.2

        first = asyncio.create_task(sweeper.run_once())
        await asyncio.sleep(0.05)
        assert sweeper.running
        second = await sweeper.run_once()
        result = await first

        assert second.busy is True
        assert second.to_dict()["examined"] == 0
        assert result.busy is False
        assert result.count(SettlementOutcome.SUBMITTED) == 1
        assert len(ledger.writes()) == 1
