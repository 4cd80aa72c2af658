"""Storage layer - Database schemas and repositories."""

from omnipair_indexer.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from omnipair_indexer.storage.models import (
    Base,
    PairModel,
    TransactionModel,
    TransactionStatus,
    TransactionType,
    TransactionWatcherModel,
    UserPositionModel,
    WatchStatus,
)
from omnipair_indexer.storage.repos import (
    EventRecordRepository,
    PairRepository,
    TransactionRepository,
    UserPositionRepository,
    WatermarkDTO,
    WatermarkRepository,
)

__all__ = [
    "Base",
    "DatabaseManager",
    "EventRecordRepository",
    "PairModel",
    "PairRepository",
    "TransactionModel",
    "TransactionRepository",
    "TransactionStatus",
    "TransactionType",
    "TransactionWatcherModel",
    "UserPositionModel",
    "UserPositionRepository",
    "WatchStatus",
    "WatermarkDTO",
    "WatermarkRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
