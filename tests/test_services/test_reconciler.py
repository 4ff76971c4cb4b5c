"""Tests for the Reconciler historical scan."""

from __future__ import annotations

import pytest
from sqlalchemy import select

from escrow_settlement.infrastructure.database.orm_models import EscrowTask
from escrow_settlement.services.reconciler import Reconciler


async def snapshot_rows(session_factory) -> list[dict]:
    async with session_factory() as session:
        rows = (
            await session.execute(select(EscrowTask).order_by(EscrowTask.task_id))
        ).scalars().all()
    return [
        {c.key: getattr(row, c.key) for c in EscrowTask.__mapper__.column_attrs}
        for row in rows
    ]


@pytest.fixture
def populated_ledger(ledger):
    ledger.add_escrow(1, "task-1")
    ledger.add_escrow(2, "task-2")
    ledger.add_escrow(3, "task-3")
    return ledger


class TestReconcile:
    @pytest.mark.asyncio
    async def test_full_scan_mirrors_every_escrow(
        self, session_factory, populated_ledger, settings
    ) -> None:
        ledger = populated_ledger
        await ledger.release(1, ledger.escrows[1].freelancer, "done")
        await ledger.cancel(2, "changed plans")

        report = await Reconciler(ledger, session_factory, settings).run()

        assert report.from_block == settings.reconciler_start_block
        assert report.to_block == ledger.head
        assert report.events == 5
        assert report.applied == 5
        assert report.failed == 0
        assert report.by_kind == {"Deposited": 3, "Released": 1, "Cancelled": 1}

        rows = {row["task_id"]: row for row in await snapshot_rows(session_factory)}
        assert rows["1"]["settlement_kind"] == "released"
        assert rows["2"]["settlement_kind"] == "cancelled"
        assert rows["2"]["release_reason"] == "Cancelled: changed plans"
        assert rows["3"]["settled"] is False

    @pytest.mark.asyncio
    async def test_second_pass_changes_nothing(
        self, session_factory, populated_ledger, settings
    ) -> None:
        ledger = populated_ledger
        await ledger.release(1, ledger.escrows[1].freelancer, "done")
        reconciler = Reconciler(ledger, session_factory, settings)

        await reconciler.run()
        first = await snapshot_rows(session_factory)
        await reconciler.run()
        second = await snapshot_rows(session_factory)

        assert first == second

    @pytest.mark.asyncio
    async def test_bounded_range(self, session_factory, populated_ledger, settings) -> None:
        report = await Reconciler(populated_ledger, session_factory, settings).run(
            from_block=102, to_block=102
        )
        assert report.events == 1
        assert [row["task_id"] for row in await snapshot_rows(session_factory)] == ["2"]

    @pytest.mark.asyncio
    async def test_inverted_range_rejected(self, session_factory, ledger, settings) -> None:
        with pytest.raises(ValueError, match="before from_block"):
            await Reconciler(ledger, session_factory, settings).run(from_block=10, to_block=5)

    @pytest.mark.asyncio
    async def test_failures_are_counted_not_raised(
        self, session_factory, populated_ledger, settings
    ) -> None:
        ledger = populated_ledger
        real_get_escrow = ledger.get_escrow

        async def flaky(task_id):
            if int(task_id) == 2:
                raise RuntimeError("rpc exploded")
            return await real_get_escrow(task_id)

        ledger.get_escrow = flaky
        report = await Reconciler(ledger, session_factory, settings).run()

        assert report.failed == 1
        assert report.applied == 2
        assert report.to_dict()["failed"] == 1
        assert [row["task_id"] for row in await snapshot_rows(session_factory)] == ["1", "3"]
