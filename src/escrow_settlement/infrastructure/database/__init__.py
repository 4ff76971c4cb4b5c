"""Database infrastructure: engine, ORM models, and repositories."""

from escrow_settlement.infrastructure.database.engine import (
    close_db,
    get_async_session,
    get_session_factory,
    init_db,
    session_scope,
)
from escrow_settlement.infrastructure.database.orm_models import (
    Base,
    EscrowTask,
    SettlementLog,
    SyncCursor,
    Task,
    TaskApplication,
)
from escrow_settlement.infrastructure.database.repositories import (
    ApplicationRepository,
    EscrowTaskRepository,
    SettlementLogRepository,
    SyncCursorRepository,
    TaskRepository,
)

__all__ = [
    "Base",
    "EscrowTask",
    "SettlementLog",
    "SyncCursor",
    "Task",
    "TaskApplication",
    "ApplicationRepository",
    "EscrowTaskRepository",
    "SettlementLogRepository",
    "SyncCursorRepository",
    "TaskRepository",
    "get_async_session",
    "get_session_factory",
    "session_scope",
    "init_db",
    "close_db",
]
