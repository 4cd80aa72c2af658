"""Indexer orchestrator.

This module provides the Indexer class that wires together the ledger client,
the transaction processor, and a crawler plus live subscription per watched
address, and schedules the periodic gap fill.

Per watched address the indexer runs:
    optional startup backfill -> live log subscription
and for all addresses together:
    gap fill every ``gap_fill_interval_seconds``
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from redis.asyncio import Redis

from omnipair_indexer.config import Settings, get_settings
from omnipair_indexer.ingestor.crawler import HistoryCrawler, IngestResult
from omnipair_indexer.ingestor.processor import TransactionProcessor
from omnipair_indexer.ingestor.subscriber import (
    ConnectionState,
    LiveTransactionHandler,
    LogSubscriber,
)
from omnipair_indexer.ledger.client import LedgerClient
from omnipair_indexer.storage.database import DatabaseManager
from omnipair_indexer.storage.models import WatchStatus
from omnipair_indexer.storage.repos import WatermarkRepository

if TYPE_CHECKING:
    from omnipair_indexer.storage.repos import WatermarkDTO

logger = logging.getLogger(__name__)

WATCHER_DESCRIPTION = "Omnipair program"


class UnknownAddressError(ValueError):
    """Raised when a job is requested for an address that is not watched."""


class IndexerState(str, Enum):
    """Indexer lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class IndexerStats:
    """Statistics for the indexer."""

    started_at: datetime | None = None
    backfills_run: int = 0
    gap_fills_run: int = 0
    transactions_processed: int = 0
    errors: int = 0
    last_error: str | None = None


@dataclass
class JobRun:
    """Last run of one named job, as served on the health endpoints."""

    name: str
    message: str = ""
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "message": self.message,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error_count": self.error_count,
        }


@dataclass
class WatchedAddress:
    """Components serving one watched address."""

    address: str
    crawler: HistoryCrawler
    handler: LiveTransactionHandler | None = None
    subscriber: LogSubscriber | None = None
    subscription_state: ConnectionState = ConnectionState.DISCONNECTED
    tasks: list[asyncio.Task[None]] = field(default_factory=list)


def _watermark_to_dict(watermark: WatermarkDTO | None) -> dict[str, Any] | None:
    if watermark is None:
        return None
    return {
        "latest_tx_sig": watermark.latest_tx_sig,
        "first_tx_sig": watermark.first_tx_sig,
        "checked_up_to_slot": watermark.checked_up_to_slot,
        "status": watermark.status,
        "failure_log": watermark.failure_log,
        "updated_at": watermark.updated_at.isoformat() if watermark.updated_at else None,
    }


class Indexer:
    """Orchestrates backfill, live subscription and gap filling.

    Example:
        ```python
        from omnipair_indexer.config import get_settings
        from omnipair_indexer.indexer import Indexer

        indexer = Indexer(get_settings())
        await indexer.start()
        # Indexer runs until stop() is called
        await indexer.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        db: DatabaseManager | None = None,
        ledger: LedgerClient | None = None,
        redis: Redis | None = None,
        live: bool = True,
    ) -> None:
        """Initialize the indexer.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            db: Pre-built database manager (built from settings otherwise).
            ledger: Pre-built ledger client (built from settings otherwise).
            redis: Pre-built Redis client for the transaction cache.
            live: Whether to run live log subscriptions.
        """
        self._settings = settings or get_settings()
        self._live = live

        self._provided_db = db
        self._provided_ledger = ledger
        self._provided_redis = redis

        self._state = IndexerState.STOPPED
        self._stats = IndexerStats()

        # Components (initialized lazily)
        self._redis: Redis | None = None
        self._db: DatabaseManager | None = None
        self._ledger: LedgerClient | None = None
        self._processor: TransactionProcessor | None = None
        self._watched: dict[str, WatchedAddress] = {}

        self._jobs: dict[str, JobRun] = {}
        self._failed_addresses: dict[str, str] = {}

        # Synchronization
        self._stop_event: asyncio.Event | None = None
        self._gap_fill_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> IndexerState:
        """Current indexer state."""
        return self._state

    @property
    def stats(self) -> IndexerStats:
        """Current indexer statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        """Check if indexer is running."""
        return self._state == IndexerState.RUNNING

    @property
    def addresses(self) -> tuple[str, ...]:
        return tuple(self._settings.indexer.program_addresses)

    async def start(self) -> None:
        """Start the indexer.

        Raises:
            RuntimeError: If the indexer is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != IndexerState.STOPPED:
            raise RuntimeError(f"Cannot start indexer in state {self._state}")

        self._state = IndexerState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting indexer for %d addresses...", len(self.addresses))

        try:
            await self._initialize_components()
            await self._start_background_services()
            self._stats.started_at = datetime.now(UTC)
            self._state = IndexerState.RUNNING
            logger.info("Indexer started successfully")
        except Exception as e:
            self._state = IndexerState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start indexer: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the indexer gracefully.

        Unsubscribes, lets running backfills and gap fills finish their
        current chunk, drains in-flight live transactions and closes
        resources.
        """
        if self._state == IndexerState.STOPPED:
            return

        self._state = IndexerState.STOPPING
        logger.info("Stopping indexer...")

        if self._stop_event:
            self._stop_event.set()

        await self._stop_background_services()
        await self._cleanup()

        self._state = IndexerState.STOPPED
        logger.info("Indexer stopped")

    async def close(self) -> None:
        """Release resources after one-shot jobs run without ``start()``."""
        if self._state == IndexerState.STOPPED:
            await self._cleanup()

    async def _initialize_components(self) -> None:
        """Initialize clients, the processor and per-address components."""
        if self._processor is not None:
            return
        settings = self._settings

        if self._provided_redis is not None:
            self._redis = self._provided_redis
        elif settings.redis.url:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(settings.redis.url)

        logger.debug("Initializing database manager...")
        self._db = self._provided_db or DatabaseManager(
            settings.database.url,
            pool_size=settings.database.pool_size,
        )

        logger.debug("Initializing ledger client...")
        self._ledger = self._provided_ledger or LedgerClient(
            settings.solana.rpc_url,
            commitment=settings.solana.commitment,
            redis=self._redis,
            cache_ttl_seconds=settings.redis.transaction_cache_ttl_seconds,
            max_requests_per_second=settings.solana.max_requests_per_second,
            request_timeout=settings.solana.request_timeout_seconds,
        )

        self._processor = TransactionProcessor(self._db)

        indexer = settings.indexer
        for address in indexer.program_addresses:
            crawler = HistoryCrawler(
                address,
                ledger=self._ledger,
                processor=self._processor,
                db=self._db,
                description=WATCHER_DESCRIPTION,
                page_size=indexer.page_size,
                batch_size=indexer.batch_size,
                concurrency=indexer.concurrency,
                page_delay_seconds=indexer.page_delay_seconds,
                request_delay_seconds=indexer.request_delay_seconds,
            )
            watched = WatchedAddress(address=address, crawler=crawler)
            if self._live:
                watched.handler = LiveTransactionHandler(
                    address,
                    ledger=self._ledger,
                    processor=self._processor,
                    fetch_delay_seconds=indexer.live_fetch_delay_seconds,
                    max_in_flight=indexer.live_max_in_flight,
                )
                watched.subscriber = LogSubscriber(
                    ws_url=settings.solana.effective_ws_url,
                    address=address,
                    commitment=settings.solana.commitment,
                    on_notification=watched.handler.on_notification,
                    on_state_change=self._state_callback(watched),
                )
            self._watched[address] = watched

    def _state_callback(self, watched: WatchedAddress) -> Callable[[ConnectionState], Awaitable[None]]:
        async def on_state_change(state: ConnectionState) -> None:
            watched.subscription_state = state

        return on_state_change

    async def _start_background_services(self) -> None:
        """Start per-address tasks and the gap fill loop."""
        for watched in self._watched.values():
            logger.debug("Starting services for %s...", watched.address)
            watched.tasks.append(asyncio.create_task(self._run_address(watched)))

        logger.debug("Starting gap fill loop...")
        self._gap_fill_task = asyncio.create_task(self._run_gap_fill_loop())

    async def _run_address(self, watched: WatchedAddress) -> None:
        """Startup backfill, then the live subscription, for one address."""
        indexer = self._settings.indexer
        if not indexer.skip_backfill:
            await self.run_backfill(watched.address, from_slot=indexer.backfill_from_slot)
        if self._stop_event and self._stop_event.is_set():
            return
        if watched.subscriber is None:
            return
        try:
            await watched.subscriber.start()
        except asyncio.CancelledError:
            logger.debug("Log subscription task for %s cancelled", watched.address)
        except Exception as e:
            logger.error("Log subscription error for %s: %s", watched.address, e)
            self._stats.last_error = str(e)
            self._stats.errors += 1

    async def _run_gap_fill_loop(self) -> None:
        if not self._stop_event:
            return

        interval = self._settings.indexer.gap_fill_interval_seconds
        while not self._stop_event.is_set():
            try:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                    break
                except TimeoutError:
                    pass

                await self._flush_failed_marks()
                for address in self._watched:
                    if self._stop_event.is_set():
                        break
                    await self.run_gap_fill(address)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning("Gap fill loop error: %s", e)

    async def _stop_background_services(self) -> None:
        """Stop subscriptions and crawlers, then wait for their tasks."""
        for watched in self._watched.values():
            watched.crawler.stop()
            if watched.subscriber:
                logger.debug("Stopping log subscription for %s...", watched.address)
                await watched.subscriber.stop()

        for watched in self._watched.values():
            for task in watched.tasks:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            watched.tasks.clear()
            if watched.handler:
                await watched.handler.drain()

        if self._gap_fill_task:
            self._gap_fill_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._gap_fill_task
            self._gap_fill_task = None

    async def _cleanup(self) -> None:
        """Clean up resources."""
        if self._ledger:
            await self._ledger.close()
            self._ledger = None

        if self._db:
            await self._db.dispose_async()
            self._db = None

        if self._redis:
            await self._redis.aclose()
            self._redis = None

        self._processor = None
        self._watched = {}
        logger.debug("Resources cleaned up")

    def _get_watched(self, address: str) -> WatchedAddress:
        watched = self._watched.get(address)
        if watched is None:
            raise UnknownAddressError(f"{address} is not a watched address")
        return watched

    async def run_backfill(
        self,
        address: str,
        *,
        from_slot: int | None = None,
        to_slot: int | None = None,
        reprocess: bool = False,
        batch_size: int | None = None,
    ) -> IngestResult:
        """Run one backfill for a watched address.

        Raises:
            UnknownAddressError: If the address is not watched.
        """
        await self._initialize_components()
        watched = self._get_watched(address)
        result = await self._run_job(
            f"backfill:{address}",
            address,
            lambda: watched.crawler.backfill(
                from_slot=from_slot,
                to_slot=to_slot,
                reprocess=reprocess,
                batch_size=batch_size,
            ),
        )
        if not result.busy:
            self._stats.backfills_run += 1
        return result

    async def run_gap_fill(self, address: str) -> IngestResult:
        """Run one gap fill for a watched address.

        Raises:
            UnknownAddressError: If the address is not watched.
        """
        await self._initialize_components()
        watched = self._get_watched(address)
        result = await self._run_job(f"gap-fill:{address}", address, watched.crawler.gap_fill)
        if not result.busy:
            self._stats.gap_fills_run += 1
        return result

    async def _run_job(
        self,
        name: str,
        address: str,
        job: Callable[[], Awaitable[IngestResult]],
    ) -> IngestResult:
        """Run a crawl job, recording it in the health map.

        Errors escaping the crawler mean the store is unavailable: the address
        is marked failed and the other addresses keep running.
        """
        run = self._jobs.setdefault(name, JobRun(name=name))
        started_at = datetime.now(UTC)
        try:
            result = await job()
        except Exception as e:
            logger.error("Job %s failed: %s", name, e)
            self._stats.errors += 1
            self._stats.last_error = str(e)
            result = IngestResult(message=f"Job {name} failed", error=str(e))
            await self._mark_failed(address, f"{name}: {e}")
        else:
            if address in self._failed_addresses:
                await self._mark_active(address)

        if result.busy:
            return result

        run.started_at = started_at
        run.finished_at = datetime.now(UTC)
        run.message = result.message
        run.error = result.error
        if result.error:
            run.error_count += 1
        self._stats.transactions_processed += result.processed
        return result

    async def _mark_failed(self, address: str, failure_log: str) -> None:
        self._failed_addresses[address] = failure_log
        await self._flush_failed_marks()

    async def _flush_failed_marks(self) -> None:
        """Write pending failure marks; retried on the next gap fill tick."""
        if not self._db or not self._failed_addresses:
            return
        try:
            async with self._db.get_async_session() as session:
                repo = WatermarkRepository(session)
                for address, failure_log in self._failed_addresses.items():
                    await repo.mark_failed(address, failure_log)
        except Exception as e:
            logger.warning("Could not record watcher failure: %s", e)

    async def _mark_active(self, address: str) -> None:
        if not self._db:
            return
        try:
            async with self._db.get_async_session() as session:
                await WatermarkRepository(session).set_status(address, WatchStatus.ACTIVE)
        except Exception as e:
            logger.warning("Could not reactivate watcher %s: %s", address, e)
            return
        self._failed_addresses.pop(address, None)

    def health(self) -> dict[str, Any]:
        """Summarize subsystem health.

        Healthy when the indexer is running, every live subscription is
        connected, and no job's last run reported an error.
        """
        subscriptions = {
            w.address: w.subscription_state.value for w in self._watched.values() if w.subscriber
        }
        jobs = {name: run.to_dict() for name, run in sorted(self._jobs.items())}
        healthy = (
            self.is_running
            and all(state == ConnectionState.CONNECTED.value for state in subscriptions.values())
            and not any(run.error for run in self._jobs.values())
            and not self._failed_addresses
        )
        return {
            "healthy": healthy,
            "state": self._state.value,
            "subscriptions": subscriptions,
            "jobs": jobs,
            "failed_addresses": dict(self._failed_addresses),
        }

    async def status(self) -> dict[str, Any]:
        """Per-address watermark, subscription and last-run details."""
        watermarks: dict[str, WatermarkDTO] = {}
        db_error: str | None = None
        if self._db:
            try:
                async with self._db.get_async_session() as session:
                    for watermark in await WatermarkRepository(session).list_all():
                        watermarks[watermark.acct] = watermark
            except Exception as e:
                db_error = str(e)

        addresses: dict[str, Any] = {}
        for address in self.addresses:
            watched = self._watched.get(address)
            entry: dict[str, Any] = {
                "watermark": _watermark_to_dict(watermarks.get(address)),
                "backfill": self._job_dict(f"backfill:{address}"),
                "gap_fill": self._job_dict(f"gap-fill:{address}"),
                "crawling": watched.crawler.is_running if watched else False,
            }
            if watched and watched.subscriber:
                stats = watched.subscriber.stats
                entry["subscription"] = {
                    "state": watched.subscription_state.value,
                    "notifications_received": stats.notifications_received,
                    "reconnect_count": stats.reconnect_count,
                    "last_error": stats.last_error,
                }
            if watched and watched.handler:
                live = watched.handler.stats
                entry["live"] = {
                    "handled": live.handled,
                    "failed": live.failed,
                    "in_flight": watched.handler.in_flight,
                    "last_signature": live.last_signature,
                }
            addresses[address] = entry

        return {
            "state": self._state.value,
            "started_at": self._stats.started_at.isoformat() if self._stats.started_at else None,
            "backfills_run": self._stats.backfills_run,
            "gap_fills_run": self._stats.gap_fills_run,
            "transactions_processed": self._stats.transactions_processed,
            "errors": self._stats.errors,
            "last_error": self._stats.last_error,
            "database_error": db_error,
            "addresses": addresses,
        }

    def _job_dict(self, name: str) -> dict[str, Any] | None:
        run = self._jobs.get(name)
        return run.to_dict() if run else None

    async def run(self) -> None:
        """Start the indexer and run until interrupted."""
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    def request_stop(self) -> None:
        """Make ``run()`` return; safe to call from a signal handler."""
        if self._stop_event:
            self._stop_event.set()

    async def __aenter__(self) -> Indexer:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
