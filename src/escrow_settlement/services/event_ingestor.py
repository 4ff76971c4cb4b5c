"""Event Ingestor: live listener that mirrors escrow contract events.

One producer task polls the chain head, fetches Deposited / Released /
Cancelled logs for the new block range and puts typed events on an
asyncio.Queue. ``ingestor_workers`` consumer tasks apply them through
EscrowSyncService, each event in its own transaction.

A failing event is logged and counted; the loop keeps going and the
reconciler can re-apply the range later. The block cursor is persisted in
sync_cursors once every event of a range has been dispatched, so a restart
resumes where the previous process stopped.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING

from escrow_settlement.config import Settings, get_settings
from escrow_settlement.infrastructure.database.engine import get_session_factory, session_scope
from escrow_settlement.infrastructure.database.repositories import SyncCursorRepository
from escrow_settlement.logging_config import get_logger
from escrow_settlement.services.escrow_sync import EscrowSyncService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_settlement.domain.ledger_protocol import LedgerClient, LedgerEvent

logger = get_logger(__name__)

CURSOR_NAME = "escrow_events"


class EventIngestor:
    """Polls the ledger and feeds events to a pool of sync workers."""

    def __init__(
        self,
        ledger: LedgerClient,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._ledger = ledger
        self._session_factory = session_factory or get_session_factory()
        self._settings = settings or get_settings()
        self._queue: asyncio.Queue[LedgerEvent] = asyncio.Queue(
            maxsize=self._settings.ingestor_queue_size
        )
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self.processed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn the worker pool and the polling producer."""
        if self.running:
            return
        self._stopping.clear()
        workers = max(1, self._settings.ingestor_workers)
        self._tasks = [
            asyncio.create_task(self._consume(), name=f"ingestor-worker-{i}")
            for i in range(workers)
        ]
        self._tasks.append(asyncio.create_task(self._produce(), name="ingestor-producer"))
        logger.info(
            "ingestor.started",
            workers=workers,
            poll_interval=self._settings.ingestor_poll_interval_seconds,
        )

    async def stop(self) -> None:
        """Cancel the producer and workers and wait for them to exit."""
        self._stopping.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("ingestor.stopped", processed=self.processed, failed=self.failed)

    # ------------------------------------------------------------------
    # Producer
    # ------------------------------------------------------------------

    async def _produce(self) -> None:
        interval = self._settings.ingestor_poll_interval_seconds
        while not self._stopping.is_set():
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("ingestor.poll_failed", error=str(exc), exc_info=True)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)

    async def poll_once(self) -> int:
        """Fetch and dispatch events up to the confirmed head.

        Returns the number of events dispatched.
        """
        head = await self._ledger.get_head_block()
        target = head - self._settings.ingestor_confirmations
        if target < 0:
            return 0

        cursor = await self._load_cursor()
        if cursor is None:
            # First run starts at the head; history is the reconciler's job.
            cursor = target - 1
            logger.info("ingestor.cursor_initialized", block=target)

        start = cursor + 1
        if start > target:
            return 0

        events = await self._ledger.fetch_events(start, target)
        for event in events:
            await self._queue.put(event)
        await self._queue.join()

        await self._save_cursor(target)
        if events:
            logger.info("ingestor.range_dispatched", from_block=start, to_block=target, events=len(events))
        return len(events)

    async def _load_cursor(self) -> int | None:
        async with session_scope(self._session_factory) as session:
            return await SyncCursorRepository(session).get(CURSOR_NAME)

    async def _save_cursor(self, block: int) -> None:
        async with session_scope(self._session_factory) as session:
            await SyncCursorRepository(session).advance(CURSOR_NAME, block)

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.handle_event(event)
            finally:
                self._queue.task_done()

    async def handle_event(self, event: LedgerEvent) -> bool:
        """Apply one event in its own transaction. Never raises.

        Returns True if the event was applied.
        """
        try:
            async with session_scope(self._session_factory) as session:
                await EscrowSyncService(session, self._ledger).apply(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.failed += 1
            logger.error(
                "ingestor.event_failed",
                event=event.kind.value,
                task_id=str(event.task_id),
                tx_hash=event.tx_hash,
                block_number=event.block_number,
                error=str(exc),
                exc_info=True,
            )
            return False
        self.processed += 1
        return True
