"""Shared test fixtures for the escrow settlement test suite.

Provides:
    - A file-backed SQLite database per test (sqlite+aiosqlite)
    - FakeLedger: in-memory ledger satisfying the LedgerClient protocol
    - Factory fixtures for seeding tasks, applications and escrows
    - Async test support via pytest-asyncio
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
import uuid
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from escrow_settlement.config import Settings
from escrow_settlement.domain.enums import LedgerMethod
from escrow_settlement.domain.exceptions import AlreadySettledError, NotFoundOnChainError
from escrow_settlement.domain.ledger_protocol import (
    ALL_EVENT_TYPES,
    CancelledEvent,
    CostEstimate,
    DepositedEvent,
    DepositVerification,
    EscrowSnapshot,
    ReleasedEvent,
    TxReceipt,
)
from escrow_settlement.infrastructure.database.orm_models import Base, Task, TaskApplication

EMPLOYER = "0x1111111111111111111111111111111111111111"
FREELANCER = "0x2222222222222222222222222222222222222222"
NOW = int(time.time())
PAST_DEADLINE = NOW - 3600
FUTURE_DEADLINE = NOW + 86_400


# ---------------------------------------------------------------------------
# Fake ledger
# ---------------------------------------------------------------------------


class FakeLedger:
    """In-memory escrow contract.

    Writes settle the snapshot and append the matching event, the way the
    contract would. Set ``fail_with`` to make every write raise, and
    ``submit_delay`` to hold writes open (for race tests).
    """

    def __init__(self) -> None:
        self.escrows: dict[int, EscrowSnapshot] = {}
        self.external: dict[str, int] = {}
        self.events: list = []
        self.head = 100
        self.calls: list[tuple] = []
        self.fail_with: Exception | None = None
        self.submit_delay = 0.0
        self._tx_counter = 0

    def _next_tx(self) -> str:
        self._tx_counter += 1
        return "0x" + f"{self._tx_counter:064x}"

    def _next_block(self) -> int:
        self.head += 1
        return self.head

    def add_escrow(
        self,
        task_id: int,
        external_id: str,
        amount: int = 10**18,
        deadline: int = FUTURE_DEADLINE,
        employer: str = EMPLOYER,
        freelancer: str = FREELANCER,
    ) -> DepositedEvent:
        """Create an escrow and its Deposited event."""
        self.escrows[task_id] = EscrowSnapshot(
            task_id=task_id,
            employer=employer,
            freelancer=freelancer,
            amount=amount,
            deadline=deadline,
            settled=False,
            external_task_id=external_id,
        )
        self.external[external_id] = task_id
        event = DepositedEvent(
            task_id=task_id,
            tx_hash=self._next_tx(),
            block_number=self._next_block(),
            log_index=0,
            external_id_hash="0x" + "ab" * 32,
            employer=employer,
            amount=amount,
        )
        self.events.append(event)
        return event

    # --- reads ---

    async def get_escrow(self, task_id: int) -> EscrowSnapshot | None:
        return self.escrows.get(int(task_id))

    async def get_task_id_by_external_id(self, external_id: str) -> int | None:
        return self.external.get(external_id)

    async def get_head_block(self) -> int:
        return self.head

    async def fetch_events(self, from_block, to_block, kinds=ALL_EVENT_TYPES) -> list:
        kinds = set(kinds)
        found = [
            e for e in self.events
            if from_block <= e.block_number <= to_block and e.kind in kinds
        ]
        return sorted(found, key=lambda e: e.sort_key)

    async def estimate_cost(self, method, task_id, to, reason) -> CostEstimate:
        self.calls.append(("estimate", method, int(task_id), to, reason))
        return CostEstimate(
            method=method,
            gas_estimate=100_000,
            gas_limit=120_000,
            max_fee_per_gas=2 * 10**9,
            cost_wei=240_000 * 10**9,
            cost_native=Decimal("0.00024"),
            cost_usd=Decimal("0.72"),
            within_limits=True,
        )

    async def verify_deposit(self, external_id, expected_freelancer) -> DepositVerification:
        task_id = self.external.get(external_id)
        snapshot = self.escrows.get(task_id) if task_id is not None else None
        if snapshot is None:
            return DepositVerification(valid=False, reason="no deposit for external id")
        valid = (
            not snapshot.settled
            and snapshot.freelancer.lower() == expected_freelancer.lower()
        )
        return DepositVerification(valid=valid, onchain_task_id=task_id, snapshot=snapshot)

    # --- writes ---

    async def _settle(self, method: LedgerMethod, task_id: int, to: str | None, reason: str):
        task_id = int(task_id)
        self.calls.append((method, task_id, to, reason))
        if self.submit_delay:
            await asyncio.sleep(self.submit_delay)
        if self.fail_with is not None:
            raise self.fail_with
        snapshot = self.escrows.get(task_id)
        if snapshot is None:
            raise NotFoundOnChainError(task_id)
        if snapshot.settled:
            raise AlreadySettledError(task_id)

        self.escrows[task_id] = dataclasses.replace(snapshot, settled=True)
        tx_hash = self._next_tx()
        block = self._next_block()
        if method == LedgerMethod.CANCEL:
            event = CancelledEvent(
                task_id=task_id, tx_hash=tx_hash, block_number=block, log_index=0,
                employer=snapshot.employer, amount=snapshot.amount, reason=reason,
            )
        else:
            event = ReleasedEvent(
                task_id=task_id, tx_hash=tx_hash, block_number=block, log_index=0,
                to=to, amount=snapshot.amount, reason=reason,
            )
        self.events.append(event)
        return TxReceipt(tx_hash=tx_hash, block_number=block, gas_used=80_000)

    async def release(self, task_id, to, reason) -> TxReceipt:
        return await self._settle(LedgerMethod.RELEASE, task_id, to, reason)

    async def cancel(self, task_id, reason) -> TxReceipt:
        return await self._settle(LedgerMethod.CANCEL, task_id, None, reason)

    async def release_after_deadline(self, task_id, to, reason) -> TxReceipt:
        return await self._settle(LedgerMethod.RELEASE_AFTER_DEADLINE, task_id, to, reason)

    def writes(self) -> list[tuple]:
        return [c for c in self.calls if c[0] != "estimate"]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        app_env="development",
        database_url="sqlite+aiosqlite://",
        ledger_read_attempts=2,
        ledger_retry_backoff_seconds=0,
        ingestor_workers=1,
        ingestor_poll_interval_seconds=0.01,
        settlement_claim_ttl_seconds=900,
    )


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(
        bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    yield factory
    await engine.dispose()


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def seed_task(session_factory):
    """Return an async factory that inserts a Task and optional Application."""

    async def _seed(
        external_task_id: str,
        status: str = "open",
        application_status: str | None = None,
        employer_profile_id: str = "employer-1",
    ) -> uuid.UUID:
        async with session_factory() as session:
            task = Task(
                employer_profile_id=employer_profile_id,
                title=f"Task {external_task_id}",
                status=status,
                external_task_id=external_task_id,
            )
            session.add(task)
            await session.flush()
            if application_status is not None:
                session.add(
                    TaskApplication(
                        task_id=task.id,
                        applicant_profile_id="freelancer-1",
                        status=application_status,
                    )
                )
            await session.commit()
            return task.id

    return _seed
