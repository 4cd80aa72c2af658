"""Ingestion layer - history crawling, live log subscription and event processing."""

from omnipair_indexer.ingestor.crawler import HistoryCrawler, IngestResult
from omnipair_indexer.ingestor.processor import (
    ProcessResult,
    TransactionProcessor,
    classify,
    implied_price,
)
from omnipair_indexer.ingestor.subscriber import (
    ConnectionState,
    LiveTransactionHandler,
    LogNotification,
    LogSubscriber,
    SubscriptionError,
)

__all__ = [
    "ConnectionState",
    "HistoryCrawler",
    "IngestResult",
    "LiveTransactionHandler",
    "LogNotification",
    "LogSubscriber",
    "ProcessResult",
    "SubscriptionError",
    "TransactionProcessor",
    "classify",
    "implied_price",
]
