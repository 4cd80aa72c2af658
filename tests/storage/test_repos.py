"""Tests for storage repositories."""

from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from omnipair_indexer.storage.models import (
    NO_SEQ_APPLIED,
    Base,
    SwapModel,
    TransactionStatus,
    TransactionType,
    WatchStatus,
)
from omnipair_indexer.storage.repos import (
    EventRecordRepository,
    PairRepository,
    PairStateValues,
    PositionStateValues,
    SwapDTO,
    TransactionDTO,
    TransactionRepository,
    UserPositionRepository,
    WatermarkRepository,
)

PAIR = "Pair1111111111111111111111111111111111111111"
POSITION = "Pos11111111111111111111111111111111111111111"
USER = "User1111111111111111111111111111111111111111"

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
async def async_engine():
    """Create an async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncSession:
    """Create an async session for testing."""
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def sample_transaction_dto() -> TransactionDTO:
    return TransactionDTO(
        tx_signature="5" * 88,
        slot=250_000_000,
        block_time=datetime.now(UTC),
        pair_address=PAIR,
        user_address=USER,
        transaction_type=TransactionType.SWAP.value,
        status=TransactionStatus.SUCCESS.value,
    )


def _pair_state(reserve0: int, reserve1: int) -> PairStateValues:
    return PairStateValues(
        reserve0=reserve0,
        reserve1=reserve1,
        total_supply=1_000,
        price0_ema=0,
        price1_ema=0,
        rate0=0,
        rate1=0,
    )


# ============================================================================
# TransactionRepository Tests
# ============================================================================


class TestTransactionRepository:
    """Tests for TransactionRepository."""

    @pytest.mark.asyncio
    async def test_get_not_found(self, async_session: AsyncSession) -> None:
        repo = TransactionRepository(async_session)
        assert await repo.get("missing") is None

    @pytest.mark.asyncio
    async def test_insert_if_absent_creates(
        self, async_session: AsyncSession, sample_transaction_dto: TransactionDTO
    ) -> None:
        repo = TransactionRepository(async_session)
        assert await repo.insert_if_absent(sample_transaction_dto) is True
        await async_session.commit()

        result = await repo.get(sample_transaction_dto.tx_signature)
        assert result is not None
        assert result.slot == 250_000_000
        assert result.transaction_type == "swap"

    @pytest.mark.asyncio
    async def test_duplicate_signature_is_noop(
        self, async_session: AsyncSession, sample_transaction_dto: TransactionDTO
    ) -> None:
        repo = TransactionRepository(async_session)
        await repo.insert_if_absent(sample_transaction_dto)
        await async_session.commit()

        sample_transaction_dto.transaction_type = TransactionType.OTHER.value
        assert await repo.insert_if_absent(sample_transaction_dto) is False
        await async_session.commit()

        result = await repo.get(sample_transaction_dto.tx_signature)
        assert result is not None
        assert result.transaction_type == "swap"

    @pytest.mark.asyncio
    async def test_list_for_pair_newest_first(
        self, async_session: AsyncSession, sample_transaction_dto: TransactionDTO
    ) -> None:
        repo = TransactionRepository(async_session)
        await repo.insert_if_absent(sample_transaction_dto)
        sample_transaction_dto.tx_signature = "6" * 88
        sample_transaction_dto.slot = 250_000_010
        await repo.insert_if_absent(sample_transaction_dto)
        await async_session.commit()

        results = await repo.list_for_pair(PAIR)
        assert [r.slot for r in results] == [250_000_010, 250_000_000]


# ============================================================================
# EventRecordRepository Tests
# ============================================================================


class TestEventRecordRepository:
    """Tests for EventRecordRepository."""

    @pytest.mark.asyncio
    async def test_swap_natural_key_dedupes(self, async_session: AsyncSession) -> None:
        repo = EventRecordRepository(async_session)
        dto = SwapDTO(
            pair_address=PAIR,
            seq_num=3,
            tx_signature="5" * 88,
            user_address=USER,
            is_token0_in=True,
            amount_in=100,
            amount_out=200,
            fee=1,
            reserve0=1_000,
            reserve1=2_000,
            event_time=datetime.now(UTC),
        )

        assert await repo.insert_swap(dto) is True
        assert await repo.insert_swap(dto) is False
        await async_session.commit()

        count = await async_session.scalar(select(func.count()).select_from(SwapModel))
        assert count == 1


# ============================================================================
# PairRepository Tests
# ============================================================================


class TestPairRepository:
    """Tests for PairRepository."""

    @pytest.mark.asyncio
    async def test_ensure_creates_empty_snapshot(self, async_session: AsyncSession) -> None:
        repo = PairRepository(async_session)
        await repo.ensure(PAIR)
        await repo.ensure(PAIR)
        await async_session.commit()

        pair = await repo.get(PAIR)
        assert pair is not None
        assert pair.latest_seq_num_applied == NO_SEQ_APPLIED
        assert pair.reserve0 == 0

    @pytest.mark.asyncio
    async def test_apply_state_is_compare_and_set(self, async_session: AsyncSession) -> None:
        repo = PairRepository(async_session)
        await repo.ensure(PAIR)

        assert await repo.apply_state(PAIR, 5, _pair_state(500, 600)) is True
        assert await repo.apply_state(PAIR, 4, _pair_state(400, 400)) is False
        assert await repo.apply_state(PAIR, 5, _pair_state(999, 999)) is False
        await async_session.commit()

        pair = await repo.get(PAIR)
        assert pair is not None
        assert pair.latest_seq_num_applied == 5
        assert pair.reserve0 == Decimal(500)
        assert pair.reserve1 == Decimal(600)

    @pytest.mark.asyncio
    async def test_register_created_keeps_sequenced_state(self, async_session: AsyncSession) -> None:
        repo = PairRepository(async_session)
        await repo.ensure(PAIR)
        await repo.apply_state(PAIR, 2, _pair_state(10, 20))

        await repo.register_created(
            PAIR,
            token0="Tok0",
            token1="Tok1",
            creator=USER,
            created_at=datetime.now(UTC),
        )
        await async_session.commit()

        pair = await repo.get(PAIR)
        assert pair is not None
        assert pair.token0 == "Tok0"
        assert pair.creator == USER
        assert pair.latest_seq_num_applied == 2
        assert pair.reserve0 == Decimal(10)


# ============================================================================
# UserPositionRepository Tests
# ============================================================================


class TestUserPositionRepository:
    """Tests for UserPositionRepository."""

    @pytest.mark.asyncio
    async def test_apply_state_and_liquidation(self, async_session: AsyncSession) -> None:
        repo = UserPositionRepository(async_session)
        await repo.ensure(POSITION, pair_address=PAIR, user_address=None)
        await repo.register_created(POSITION, user_address=USER, pair_address=PAIR)

        state = PositionStateValues(collateral0=500, collateral1=0, debt0_shares=0, debt1_shares=100)
        assert await repo.apply_state(POSITION, 1, state) is True
        cleared = PositionStateValues(collateral0=100, collateral1=0, debt0_shares=0, debt1_shares=0)
        assert await repo.apply_state(POSITION, 2, cleared, liquidated=True) is True
        assert await repo.apply_state(POSITION, 1, state) is False
        await async_session.commit()

        position = await repo.get(POSITION)
        assert position is not None
        assert position.user_address == USER
        assert position.liquidated is True
        assert position.collateral0 == Decimal(100)
        assert position.latest_seq_num_applied == 2

        assert [p.position_address for p in await repo.list_for_user(USER)] == [POSITION]


# ============================================================================
# WatermarkRepository Tests
# ============================================================================


class TestWatermarkRepository:
    """Tests for WatermarkRepository."""

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, async_session: AsyncSession) -> None:
        repo = WatermarkRepository(async_session)
        first = await repo.initialize("Prog", description="Omnipair program")
        await repo.advance("Prog", signature="sigA", slot=10)
        second = await repo.initialize("Prog", description="ignored")
        await async_session.commit()

        assert first.latest_tx_sig is None
        assert first.status == WatchStatus.ACTIVE.value
        assert second.latest_tx_sig == "sigA"
        assert second.description == "Omnipair program"

    @pytest.mark.asyncio
    async def test_initialize_raises_if_row_cannot_be_read(self, async_session: AsyncSession) -> None:
        repo = WatermarkRepository(async_session)

        with patch.object(repo, "get", AsyncMock(return_value=None)):
            with pytest.raises(RuntimeError, match="Watermark for Prog missing after initialize"):
                await repo.initialize("Prog", description="Omnipair program")

    @pytest.mark.asyncio
    async def test_advance_never_moves_backwards(self, async_session: AsyncSession) -> None:
        repo = WatermarkRepository(async_session)
        await repo.initialize("Prog")

        assert await repo.advance("Prog", signature="sigB", slot=20, first_signature="sigA") is True
        assert await repo.advance("Prog", signature="sigOld", slot=15) is False
        assert await repo.advance("Prog", signature="sigC", slot=30) is True
        await async_session.commit()

        watermark = await repo.get("Prog")
        assert watermark is not None
        assert watermark.latest_tx_sig == "sigC"
        assert watermark.checked_up_to_slot == 30
        assert watermark.first_tx_sig == "sigA"

    @pytest.mark.asyncio
    async def test_mark_failed_and_reactivate(self, async_session: AsyncSession) -> None:
        repo = WatermarkRepository(async_session)
        await repo.initialize("Prog")

        await repo.mark_failed("Prog", "database unreachable")
        failed = await repo.get("Prog")
        await repo.set_status("Prog", WatchStatus.ACTIVE)
        active = await repo.get("Prog")
        await async_session.commit()

        assert failed is not None and failed.status == "failed"
        assert failed.failure_log == "database unreachable"
        assert active is not None and active.status == "active"
        assert active.failure_log is None

    @pytest.mark.asyncio
    async def test_list_all(self, async_session: AsyncSession) -> None:
        repo = WatermarkRepository(async_session)
        await repo.initialize("ProgB")
        await repo.initialize("ProgA")
        await async_session.commit()

        assert [w.acct for w in await repo.list_all()] == ["ProgA", "ProgB"]
