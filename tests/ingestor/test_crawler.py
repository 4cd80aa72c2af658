"""Tests for the history crawler (backfill and gap fill)."""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select

from omnipair_indexer.ingestor.crawler import HistoryCrawler
from omnipair_indexer.ingestor.processor import TransactionProcessor
from omnipair_indexer.storage.models import SwapModel
from omnipair_indexer.storage.repos import (
    PairRepository,
    TransactionRepository,
    WatermarkRepository,
)

from conftest import FakeLedger


def _seed(ledger: FakeLedger, payloads, count: int, *, start: int = 1) -> None:
    """Add ``count`` swap transactions, one per slot, oldest first."""
    for n in range(start, start + count):
        ledger.add(f"s{n}", n * 10, payloads.logs(payloads.swap(n, reserve0=1_000 * n)))


def _crawler(ledger, db, payloads, **overrides) -> HistoryCrawler:
    options = {
        "page_size": 2,
        "concurrency": 1,
        "page_delay_seconds": 0,
        "request_delay_seconds": 0,
        "description": "Omnipair program",
    }
    options.update(overrides)
    return HistoryCrawler(
        payloads.program_id,
        ledger=ledger,
        processor=TransactionProcessor(db),
        db=db,
        **options,
    )


async def _watermark(db, address: str):
    async with db.get_async_session() as session:
        return await WatermarkRepository(session).get(address)


async def _swap_count(db) -> int:
    async with db.get_async_session() as session:
        return await session.scalar(select(func.count()).select_from(SwapModel))


# ============================================================================
# Backfill
# ============================================================================


class TestBackfill:
    @pytest.mark.asyncio
    async def test_processes_history_oldest_first(self, db, payloads, fake_ledger) -> None:
        _seed(fake_ledger, payloads, 5)
        crawler = _crawler(fake_ledger, db, payloads)

        result = await crawler.backfill()

        assert result.error is None
        assert result.processed == 5
        assert result.failed == 0
        assert result.message == f"Backfill completed for {payloads.program_id}: 5 processed, 0 failed"
        assert fake_ledger.fetched == ["s1", "s2", "s3", "s4", "s5"]

        watermark = await _watermark(db, payloads.program_id)
        assert watermark is not None
        assert watermark.latest_tx_sig == "s5"
        assert watermark.checked_up_to_slot == 50
        assert watermark.first_tx_sig == "s1"
        assert watermark.description == "Omnipair program"

        async with db.get_async_session() as session:
            pair = await PairRepository(session).get(payloads.pair)
        assert pair is not None
        assert pair.latest_seq_num_applied == 5

    @pytest.mark.asyncio
    async def test_resumes_from_watermark(self, db, payloads, fake_ledger) -> None:
        _seed(fake_ledger, payloads, 3)
        crawler = _crawler(fake_ledger, db, payloads)
        await crawler.backfill()

        _seed(fake_ledger, payloads, 2, start=4)
        fake_ledger.fetched.clear()
        result = await crawler.backfill()

        assert result.processed == 2
        assert fake_ledger.fetched == ["s4", "s5"]
        watermark = await _watermark(db, payloads.program_id)
        assert watermark is not None
        assert watermark.latest_tx_sig == "s5"
        assert watermark.first_tx_sig == "s1"

    @pytest.mark.asyncio
    async def test_reprocess_walks_all_history(self, db, payloads, fake_ledger) -> None:
        _seed(fake_ledger, payloads, 3)
        crawler = _crawler(fake_ledger, db, payloads)
        await crawler.backfill()

        result = await crawler.backfill(reprocess=True)

        assert result.processed == 3
        assert await _swap_count(db) == 3

    @pytest.mark.asyncio
    async def test_from_slot_bounds_the_walk(self, db, payloads, fake_ledger) -> None:
        _seed(fake_ledger, payloads, 5)
        crawler = _crawler(fake_ledger, db, payloads)

        result = await crawler.backfill(from_slot=30)

        assert result.processed == 3
        assert fake_ledger.fetched == ["s3", "s4", "s5"]
        watermark = await _watermark(db, payloads.program_id)
        assert watermark is not None
        assert watermark.latest_tx_sig == "s5"
        assert watermark.first_tx_sig == "s3"

    @pytest.mark.asyncio
    async def test_failed_signatures_are_recorded_without_fetch(self, db, payloads, fake_ledger) -> None:
        _seed(fake_ledger, payloads, 1)
        fake_ledger.add("s2", 20, payloads.logs(payloads.swap(2)), err={"InstructionError": [0, "Custom"]})
        crawler = _crawler(fake_ledger, db, payloads)

        result = await crawler.backfill()

        assert result.processed == 2
        assert "s2" not in fake_ledger.fetched
        async with db.get_async_session() as session:
            record = await TransactionRepository(session).get("s2")
        assert record is not None
        assert record.status == "failed"

    @pytest.mark.asyncio
    async def test_transient_failure_holds_watermark(self, db, payloads, fake_ledger) -> None:
        _seed(fake_ledger, payloads, 5)
        fake_ledger.failing.add("s3")
        crawler = _crawler(fake_ledger, db, payloads)

        result = await crawler.backfill()

        assert result.processed == 4
        assert result.failed == 1
        assert result.error == "1 transactions failed"
        watermark = await _watermark(db, payloads.program_id)
        assert watermark is not None
        assert watermark.latest_tx_sig == "s2"
        assert watermark.checked_up_to_slot == 20

        fake_ledger.failing.clear()
        gap = await crawler.gap_fill()

        assert gap.error is None
        assert gap.processed == 3
        watermark = await _watermark(db, payloads.program_id)
        assert watermark is not None
        assert watermark.latest_tx_sig == "s5"
        assert await _swap_count(db) == 5

    @pytest.mark.asyncio
    async def test_missing_transaction_counts_as_failed(self, db, payloads, fake_ledger) -> None:
        _seed(fake_ledger, payloads, 2)
        fake_ledger.missing.add("s1")
        crawler = _crawler(fake_ledger, db, payloads)

        result = await crawler.backfill()

        assert result.failed == 1
        watermark = await _watermark(db, payloads.program_id)
        assert watermark is not None
        assert watermark.latest_tx_sig is None

    @pytest.mark.asyncio
    async def test_paging_failure_aborts(self, db, payloads, fake_ledger) -> None:
        _seed(fake_ledger, payloads, 2)
        fake_ledger.fail_pages = True
        crawler = _crawler(fake_ledger, db, payloads)

        result = await crawler.backfill()

        assert result.message == f"Backfill aborted for {payloads.program_id}"
        assert result.error is not None
        assert fake_ledger.fetched == []
        watermark = await _watermark(db, payloads.program_id)
        assert watermark is not None
        assert watermark.latest_tx_sig is None

    @pytest.mark.asyncio
    async def test_converges_with_live_processing(self, db, payloads, fake_ledger) -> None:
        _seed(fake_ledger, payloads, 4)
        processor = TransactionProcessor(db)
        await processor.process_transaction(fake_ledger.transactions["s4"], payloads.program_id)
        await processor.process_transaction(fake_ledger.transactions["s2"], payloads.program_id)
        crawler = _crawler(fake_ledger, db, payloads, concurrency=2)

        result = await crawler.backfill()

        assert result.processed == 4
        assert await _swap_count(db) == 4
        async with db.get_async_session() as session:
            pair = await PairRepository(session).get(payloads.pair)
        assert pair is not None
        assert pair.latest_seq_num_applied == 4
        assert pair.reserve0 == 4_000


# ============================================================================
# Gap fill
# ============================================================================


class TestGapFill:
    @pytest.mark.asyncio
    async def test_without_watermark_is_noop(self, db, payloads, fake_ledger) -> None:
        _seed(fake_ledger, payloads, 2)
        crawler = _crawler(fake_ledger, db, payloads)

        result = await crawler.gap_fill()

        assert result.message == f"No watermark for {payloads.program_id}; no gap fill needed"
        assert result.error is None
        assert fake_ledger.page_calls == []

    @pytest.mark.asyncio
    async def test_no_gap(self, db, payloads, fake_ledger) -> None:
        _seed(fake_ledger, payloads, 2)
        crawler = _crawler(fake_ledger, db, payloads)
        await crawler.backfill()

        result = await crawler.gap_fill()

        assert result.message == f"No gap for {payloads.program_id}"
        assert result.processed == 0

    @pytest.mark.asyncio
    async def test_fills_new_signatures(self, db, payloads, fake_ledger) -> None:
        _seed(fake_ledger, payloads, 2)
        crawler = _crawler(fake_ledger, db, payloads)
        await crawler.backfill()
        _seed(fake_ledger, payloads, 3, start=3)

        result = await crawler.gap_fill()

        assert result.processed == 3
        assert fake_ledger.page_calls[-1]["until"] == "s2"
        watermark = await _watermark(db, payloads.program_id)
        assert watermark is not None
        assert watermark.latest_tx_sig == "s5"


# ============================================================================
# Single flight
# ============================================================================


class _GatedLedger(FakeLedger):
    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()

    async def get_signatures(self, address, **kwargs):
        await self.gate.wait()
        return await super().get_signatures(address, **kwargs)


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_run_reports_busy(self, db, payloads) -> None:
        ledger = _GatedLedger()
        _seed(ledger, payloads, 2)
        crawler = _crawler(ledger, db, payloads)

        running = asyncio.create_task(crawler.backfill())
        while not crawler.is_running:
            await asyncio.sleep(0)

        busy_backfill = await crawler.backfill()
        busy_gap = await crawler.gap_fill()
        ledger.gate.set()
        result = await running

        assert busy_backfill.busy is True
        assert busy_backfill.error == "busy"
        assert busy_gap.busy is True
        assert "busy" not in busy_gap.to_dict()
        assert result.processed == 2
        assert not crawler.is_running


# ============================================================================
# Concurrency and shutdown
# ============================================================================


class _TrackingLedger(FakeLedger):
    """Records how many ``get_transaction`` calls overlap."""

    def __init__(self, *, hold_seconds: float = 0.01) -> None:
        super().__init__()
        self.hold_seconds = hold_seconds
        self.in_flight = 0
        self.peak = 0
        self.finished: list[str] = []
        self.on_fetch = None

    async def get_transaction(self, signature: str):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            if self.on_fetch is not None:
                self.on_fetch(signature)
            await asyncio.sleep(self.hold_seconds)
            tx = await super().get_transaction(signature)
            self.finished.append(signature)
            return tx
        finally:
            self.in_flight -= 1


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_in_flight_fetches_never_exceed_concurrency(self, db, payloads) -> None:
        ledger = _TrackingLedger()
        _seed(ledger, payloads, 9)
        crawler = _crawler(ledger, db, payloads, page_size=100, concurrency=3)

        result = await crawler.backfill()

        assert result.processed == 9
        assert ledger.peak == 3

    @pytest.mark.asyncio
    async def test_stop_returns_between_chunks(self, db, payloads) -> None:
        ledger = _TrackingLedger(hold_seconds=0)
        _seed(ledger, payloads, 6)
        crawler = _crawler(ledger, db, payloads, page_size=100, batch_size=2)

        def stop_after_first_chunk(signature: str) -> None:
            if signature == "s2":
                crawler.stop()

        ledger.on_fetch = stop_after_first_chunk
        result = await crawler.backfill()

        assert result.processed == 2
        assert ledger.fetched == ["s1", "s2"]
        watermark = await _watermark(db, payloads.program_id)
        assert watermark is not None
        assert watermark.latest_tx_sig == "s2"
        assert watermark.checked_up_to_slot == 20

    @pytest.mark.asyncio
    async def test_fatal_error_waits_for_sibling_tasks(self, db, payloads) -> None:
        ledger = _TrackingLedger(hold_seconds=0.02)
        _seed(ledger, payloads, 5)
        crawler = _crawler(ledger, db, payloads, page_size=100, concurrency=10)

        def refuse_first(signature: str) -> None:
            if signature == "s1":
                raise ConnectionError("connection refused")

        ledger.on_fetch = refuse_first
        with pytest.raises(ConnectionError):
            await crawler.backfill()

        assert ledger.in_flight == 0
        assert sorted(ledger.finished) == ["s2", "s3", "s4", "s5"]
        assert not crawler.is_running

    @pytest.mark.asyncio
    async def test_bad_event_timestamp_does_not_block_backfill(self, db, payloads, fake_ledger) -> None:
        fake_ledger.add("s1", 10, payloads.logs(payloads.swap(1)))
        fake_ledger.add("s2", 20, payloads.logs(payloads.swap(2, timestamp=2**62)))
        fake_ledger.add("s3", 30, payloads.logs(payloads.swap(3)))
        crawler = _crawler(fake_ledger, db, payloads)

        result = await crawler.backfill()

        assert result.error is None
        assert result.processed == 3
        assert await _swap_count(db) == 3
        watermark = await _watermark(db, payloads.program_id)
        assert watermark is not None
        assert watermark.latest_tx_sig == "s3"
