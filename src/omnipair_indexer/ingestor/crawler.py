"""Resumable history crawler: backfill and gap fill for one watched address.

Both operations page the remote signature index newest-first, reverse the
collected signatures to chronological order, and drive them through fetch,
decode and process with bounded concurrency. After each chunk the watermark
advances to the newest signature of the longest fully successful prefix, so a
signature that failed transiently stays after the watermark and is picked up
by the next gap fill.

Backfill and gap fill share one single-flight guard per address: a call made
while the other is running returns a busy result instead of waiting.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from omnipair_indexer.ledger.client import TransientLedgerError
from omnipair_indexer.storage.repos import WatermarkRepository

if TYPE_CHECKING:
    from omnipair_indexer.ingestor.processor import TransactionProcessor
    from omnipair_indexer.ledger.client import LedgerClient
    from omnipair_indexer.ledger.models import SignatureInfo
    from omnipair_indexer.storage.database import DatabaseManager
    from omnipair_indexer.storage.repos import WatermarkDTO

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 1000
DEFAULT_BATCH_SIZE = 1000
DEFAULT_CONCURRENCY = 10
DEFAULT_PAGE_DELAY_SECONDS = 0.1
DEFAULT_REQUEST_DELAY_SECONDS = 0.1


@dataclass
class IngestResult:
    """Outcome of a backfill or gap fill run."""

    message: str
    error: str | None = None
    processed: int = 0
    failed: int = 0
    busy: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "error": self.error,
            "processed": self.processed,
            "failed": self.failed,
        }


@dataclass
class _Walk:
    """Signatures collected by one pagination walk, oldest first."""

    signatures: list[SignatureInfo]
    # Whether the walk reached the watermark (or the start of history), so the
    # collected range joins up with what was already processed.
    connected: bool


class HistoryCrawler:
    """Backfills and gap-fills the signature history of one address.

    Example:
        ```python
        crawler = HistoryCrawler(program_id, ledger=ledger, processor=processor, db=db)
        result = await crawler.backfill(from_slot=250_000_000)
        result = await crawler.gap_fill()
        ```
    """

    def __init__(
        self,
        address: str,
        *,
        ledger: LedgerClient,
        processor: TransactionProcessor,
        db: DatabaseManager,
        description: str = "",
        page_size: int = DEFAULT_PAGE_SIZE,
        batch_size: int = DEFAULT_BATCH_SIZE,
        concurrency: int = DEFAULT_CONCURRENCY,
        page_delay_seconds: float = DEFAULT_PAGE_DELAY_SECONDS,
        request_delay_seconds: float = DEFAULT_REQUEST_DELAY_SECONDS,
    ) -> None:
        self.address = address
        self._ledger = ledger
        self._processor = processor
        self._db = db
        self._description = description
        self._page_size = page_size
        self._batch_size = batch_size
        self._page_delay = page_delay_seconds
        self._request_delay = request_delay_seconds

        self._run_lock = asyncio.Lock()
        self._semaphore = asyncio.Semaphore(concurrency)
        self._stop_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def stop(self) -> None:
        """Ask a running backfill or gap fill to return after its current chunk."""
        self._stop_event.set()

    def _busy(self) -> IngestResult:
        return IngestResult(
            message=f"Ingestion already running for {self.address}",
            error="busy",
            busy=True,
        )

    async def backfill(
        self,
        *,
        from_slot: int | None = None,
        to_slot: int | None = None,
        reprocess: bool = False,
        batch_size: int | None = None,
    ) -> IngestResult:
        """Crawl history after the watermark (or all of it with ``reprocess``).

        Args:
            from_slot: Stop paging once signatures fall below this slot.
            to_slot: Skip signatures above this slot.
            reprocess: Ignore the watermark and walk back through all history.
            batch_size: Signatures processed between watermark advances.
        """
        if self._run_lock.locked():
            return self._busy()

        async with self._run_lock:
            watermark = await self._initialize_watermark()
            until = None if reprocess else watermark.latest_tx_sig
            logger.info(
                "Backfill %s: from_slot=%s to_slot=%s until=%s",
                self.address,
                from_slot,
                to_slot,
                until,
            )
            try:
                walk = await self._collect(until=until, from_slot=from_slot, to_slot=to_slot)
            except TransientLedgerError as e:
                logger.warning("Backfill %s aborted while paging: %s", self.address, e)
                return IngestResult(message=f"Backfill aborted for {self.address}", error=str(e))

            connected = (
                walk.connected
                or watermark.latest_tx_sig is None
                or (from_slot is not None and from_slot <= watermark.checked_up_to_slot)
            )
            processed, failed = await self._process(
                walk.signatures, batch_size=batch_size or self._batch_size, advance=connected
            )

        message = f"Backfill completed for {self.address}: {processed} processed, {failed} failed"
        logger.info(message)
        return IngestResult(
            message=message,
            error=f"{failed} transactions failed" if failed else None,
            processed=processed,
            failed=failed,
        )

    async def gap_fill(self) -> IngestResult:
        """Process every signature newer than the watermark."""
        if self._run_lock.locked():
            return self._busy()

        async with self._run_lock:
            async with self._db.get_async_session() as session:
                watermark = await WatermarkRepository(session).get(self.address)
            if watermark is None or watermark.latest_tx_sig is None:
                return IngestResult(message=f"No watermark for {self.address}; no gap fill needed")

            try:
                walk = await self._collect(until=watermark.latest_tx_sig)
            except TransientLedgerError as e:
                logger.warning("Gap fill %s aborted while paging: %s", self.address, e)
                return IngestResult(message=f"Gap fill aborted for {self.address}", error=str(e))

            if not walk.signatures:
                return IngestResult(message=f"No gap for {self.address}")

            processed, failed = await self._process(
                walk.signatures, batch_size=self._batch_size, advance=walk.connected
            )

        message = f"Gap fill completed for {self.address}: {processed} processed, {failed} failed"
        logger.info(message)
        return IngestResult(
            message=message,
            error=f"{failed} transactions failed" if failed else None,
            processed=processed,
            failed=failed,
        )

    async def _initialize_watermark(self) -> WatermarkDTO:
        async with self._db.get_async_session() as session:
            return await WatermarkRepository(session).initialize(
                self.address, description=self._description
            )

    async def _collect(
        self,
        *,
        until: str | None,
        from_slot: int | None = None,
        to_slot: int | None = None,
    ) -> _Walk:
        """Page the signature index newest-first down to ``until`` or ``from_slot``.

        Raises:
            TransientLedgerError: If a page cannot be fetched.
        """
        collected: list[SignatureInfo] = []
        before: str | None = None
        connected = False
        pages = 0

        while not self._stop_event.is_set():
            if pages:
                await asyncio.sleep(self._page_delay)
            page = await self._ledger.get_signatures(
                self.address, before=before, until=until, limit=self._page_size
            )
            pages += 1
            if not page:
                connected = True
                break

            passed_from_slot = False
            for info in page:
                if until is not None and info.signature == until:
                    connected = True
                    break
                if from_slot is not None and info.slot < from_slot:
                    passed_from_slot = True
                    break
                if to_slot is not None and info.slot > to_slot:
                    continue
                collected.append(info)

            if connected or passed_from_slot:
                break
            if len(page) < self._page_size:
                connected = True
                break
            before = page[-1].signature

        logger.debug(
            "Collected %d signatures for %s over %d pages", len(collected), self.address, pages
        )
        collected.reverse()
        return _Walk(signatures=collected, connected=connected)

    async def _process(
        self,
        signatures: list[SignatureInfo],
        *,
        batch_size: int,
        advance: bool,
    ) -> tuple[int, int]:
        """Process oldest-first signatures in chunks, advancing the watermark.

        Returns:
            (processed, failed) counts.
        """
        processed = 0
        failed = 0
        first_signature = signatures[0].signature if signatures else None

        for start in range(0, len(signatures), batch_size):
            if self._stop_event.is_set():
                logger.info("Stopping %s crawl between chunks", self.address)
                break

            chunk = signatures[start : start + batch_size]
            # Every task settles before an error escapes, so none outlive the run.
            settled = await asyncio.gather(
                *(self._ingest(info) for info in chunk), return_exceptions=True
            )
            errors = [o for o in settled if isinstance(o, BaseException)]
            if errors:
                raise errors[0]
            outcomes: list[bool] = settled
            ok_count = sum(1 for ok in outcomes if ok)
            processed += ok_count
            failed += len(chunk) - ok_count

            prefix = 0
            for ok in outcomes:
                if not ok:
                    break
                prefix += 1

            if advance and prefix:
                newest = chunk[prefix - 1]
                async with self._db.get_async_session() as session:
                    await WatermarkRepository(session).advance(
                        self.address,
                        signature=newest.signature,
                        slot=newest.slot,
                        first_signature=first_signature,
                    )
                logger.debug("Watermark for %s advanced to slot %d", self.address, newest.slot)
            if prefix < len(chunk):
                # Everything after the first failure waits for the next gap fill.
                advance = False

        return processed, failed

    async def _ingest(self, info: SignatureInfo) -> bool:
        """Fetch, decode and process one signature. Returns True on success."""
        async with self._semaphore:
            try:
                if info.failed:
                    # Failed transactions carry no events; the index entry suffices.
                    result = await self._processor.process(
                        info.signature,
                        slot=info.slot,
                        block_time=(
                            None
                            if info.block_time is None
                            else datetime.fromtimestamp(info.block_time, tz=UTC)
                        ),
                        events=[],
                        failed=True,
                    )
                    return result.ok

                tx = await self._ledger.get_transaction(info.signature)
                if tx is None:
                    logger.warning("Transaction %s not found for %s", info.signature, self.address)
                    return False
                result = await self._processor.process_transaction(tx, self.address)
                return result.ok
            except TransientLedgerError as e:
                logger.warning("Skipping %s for %s: %s", info.signature, self.address, e)
                return False
            finally:
                if self._request_delay:
                    await asyncio.sleep(self._request_delay)
