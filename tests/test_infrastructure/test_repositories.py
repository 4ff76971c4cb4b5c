"""Tests for the conditional writes in the repository layer (SQLite)."""

from __future__ import annotations

import pytest

from escrow_settlement.domain.enums import SettlementKind
from escrow_settlement.domain.ledger_protocol import EscrowSnapshot
from escrow_settlement.infrastructure.database.engine import session_scope
from escrow_settlement.infrastructure.database.repositories import (
    EscrowTaskRepository,
    SyncCursorRepository,
)

EMPLOYER = "0xAAaAaAaaAaAaAaaAaAAAAAAAAaaaAaAaAaaAaaAa"
FREELANCER = "0x2222222222222222222222222222222222222222"


def snapshot(amount: int = 100, settled: bool = False, deadline: int = 2_000_000_000) -> EscrowSnapshot:
    return EscrowSnapshot(
        task_id=1,
        employer=EMPLOYER,
        freelancer=FREELANCER,
        amount=amount,
        deadline=deadline,
        settled=settled,
        external_task_id="task-1",
    )


async def upsert(session_factory, snap: EscrowSnapshot, deposit_tx_hash: str | None = None) -> None:
    async with session_scope(session_factory) as session:
        await EscrowTaskRepository(session).upsert_from_snapshot(
            snap, "task-1", deposit_tx_hash=deposit_tx_hash
        )


async def fetch(session_factory, task_id: str = "1"):
    async with session_factory() as session:
        return await EscrowTaskRepository(session).get_by_task_id(task_id)


class TestUpsert:
    @pytest.mark.asyncio
    async def test_addresses_are_lower_cased(self, session_factory) -> None:
        await upsert(session_factory, snapshot())
        record = await fetch(session_factory)
        assert record.employer == EMPLOYER.lower()
        assert record.amount == "100"

    @pytest.mark.asyncio
    async def test_unsettled_row_is_refreshed(self, session_factory) -> None:
        await upsert(session_factory, snapshot(amount=100))
        await upsert(session_factory, snapshot(amount=250))
        assert (await fetch(session_factory)).amount == "250"

    @pytest.mark.asyncio
    async def test_settled_row_is_frozen(self, session_factory) -> None:
        await upsert(session_factory, snapshot(settled=True))
        await upsert(session_factory, snapshot(amount=1, settled=False))
        record = await fetch(session_factory)
        assert record.settled is True
        assert record.amount == "100"

    @pytest.mark.asyncio
    async def test_deposit_hash_written_once(self, session_factory) -> None:
        await upsert(session_factory, snapshot(), deposit_tx_hash="0x01")
        await upsert(session_factory, snapshot(), deposit_tx_hash="0x02")
        assert (await fetch(session_factory)).deposit_tx_hash == "0x01"

    @pytest.mark.asyncio
    async def test_uint256_amount_round_trips(self, session_factory) -> None:
        huge = 2**256 - 1
        await upsert(session_factory, snapshot(amount=huge))
        assert int((await fetch(session_factory)).amount) == huge


class TestRecordSettlement:
    @pytest.mark.asyncio
    async def test_first_writer_wins(self, session_factory) -> None:
        await upsert(session_factory, snapshot())
        async with session_scope(session_factory) as session:
            repo = EscrowTaskRepository(session)
            first = await repo.record_settlement("1", SettlementKind.RELEASED, "0xaa", FREELANCER, "done")
            second = await repo.record_settlement("1", SettlementKind.CANCELLED, "0xbb", EMPLOYER, "x")

        assert first is True
        assert second is False
        record = await fetch(session_factory)
        assert record.release_tx_hash == "0xaa"
        assert record.settlement_kind == "released"

    @pytest.mark.asyncio
    async def test_clears_claim(self, session_factory) -> None:
        await upsert(session_factory, snapshot())
        async with session_scope(session_factory) as session:
            repo = EscrowTaskRepository(session)
            await repo.claim_for_settlement("1", "sweeper", 900)
            await repo.record_settlement("1", SettlementKind.RELEASED, "0xaa", FREELANCER, "done")
        record = await fetch(session_factory)
        assert record.claimed_by is None
        assert record.claimed_at is None


class TestClaims:
    @pytest.mark.asyncio
    async def test_second_claim_loses(self, session_factory) -> None:
        await upsert(session_factory, snapshot())
        async with session_scope(session_factory) as session:
            assert await EscrowTaskRepository(session).claim_for_settlement("1", "a", 900)
        async with session_scope(session_factory) as session:
            assert not await EscrowTaskRepository(session).claim_for_settlement("1", "b", 900)

    @pytest.mark.asyncio
    async def test_expired_lease_can_be_taken_over(self, session_factory) -> None:
        await upsert(session_factory, snapshot())
        async with session_scope(session_factory) as session:
            await EscrowTaskRepository(session).claim_for_settlement("1", "a", 900)
        async with session_scope(session_factory) as session:
            assert await EscrowTaskRepository(session).claim_for_settlement("1", "b", -1)
        assert (await fetch(session_factory)).claimed_by == "b"

    @pytest.mark.asyncio
    async def test_release_only_by_holder(self, session_factory) -> None:
        await upsert(session_factory, snapshot())
        async with session_scope(session_factory) as session:
            repo = EscrowTaskRepository(session)
            await repo.claim_for_settlement("1", "a", 900)
            await repo.release_claim("1", "b")
        assert (await fetch(session_factory)).claimed_by == "a"

    @pytest.mark.asyncio
    async def test_settled_row_cannot_be_claimed(self, session_factory) -> None:
        await upsert(session_factory, snapshot(settled=True))
        async with session_scope(session_factory) as session:
            assert not await EscrowTaskRepository(session).claim_for_settlement("1", "a", 900)

    @pytest.mark.asyncio
    async def test_expired_listing(self, session_factory) -> None:
        await upsert(session_factory, snapshot(deadline=1000))
        async with session_factory() as session:
            repo = EscrowTaskRepository(session)
            assert [r.task_id for r in await repo.list_expired_unsettled(1001)] == ["1"]
            assert await repo.list_expired_unsettled(1000) == []


class TestSyncCursor:
    @pytest.mark.asyncio
    async def test_never_moves_backwards(self, session_factory) -> None:
        async with session_scope(session_factory) as session:
            repo = SyncCursorRepository(session)
            assert await repo.get("events") is None
            await repo.advance("events", 50)
            await repo.advance("events", 40)
            await repo.advance("events", 60)
        async with session_factory() as session:
            assert await SyncCursorRepository(session).get("events") == 60
