"""Repository pattern implementations for data access.

This module provides data access abstractions for indexed transactions,
pair and position snapshots, derived event records, and crawl watermarks.

All writes are idempotent: records are inserted with ``ON CONFLICT DO
NOTHING`` and snapshot mutations are compare-and-set on
``latest_seq_num_applied``.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from omnipair_indexer.storage.models import (
    NO_SEQ_APPLIED,
    Base,
    LiquidationModel,
    LiquidityEventModel,
    PairModel,
    PairStatePointModel,
    PricePointModel,
    SwapModel,
    TransactionDetailModel,
    TransactionModel,
    TransactionWatcherModel,
    UserPositionModel,
    WatchStatus,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def _insert(session: AsyncSession, model: type[Base]) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT clauses."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


async def _insert_ignore(
    session: AsyncSession,
    model: type[Base],
    values: dict[str, Any],
    index_elements: list[str],
) -> bool:
    """Insert a row unless its conflict key exists. Returns True if inserted."""
    stmt = _insert(session, model).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    result = await session.execute(stmt)
    return bool(result.rowcount)


def _decimal(value: int | Decimal | None) -> Decimal | None:
    return None if value is None else Decimal(value)


# ============================================================================
# Transactions
# ============================================================================


@dataclass
class TransactionDTO:
    """Data transfer object for processed transactions."""

    tx_signature: str
    slot: int
    block_time: datetime | None
    pair_address: str | None
    user_address: str | None
    transaction_type: str
    status: str
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: TransactionModel) -> TransactionDTO:
        return cls(
            tx_signature=model.tx_signature,
            slot=model.slot,
            block_time=model.block_time,
            pair_address=model.pair_address,
            user_address=model.user_address,
            transaction_type=model.transaction_type,
            status=model.status,
            created_at=model.created_at,
        )


class TransactionRepository:
    """Repository for processed transaction records."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, tx_signature: str) -> TransactionDTO | None:
        result = await self.session.execute(
            select(TransactionModel).where(TransactionModel.tx_signature == tx_signature)
        )
        model = result.scalar_one_or_none()
        return TransactionDTO.from_model(model) if model else None

    async def insert_if_absent(self, dto: TransactionDTO) -> bool:
        """Insert a transaction record keyed by signature.

        Returns:
            True if this call created the record, False if it already existed.
        """
        values = {
            "tx_signature": dto.tx_signature,
            "slot": dto.slot,
            "block_time": dto.block_time,
            "pair_address": dto.pair_address,
            "user_address": dto.user_address,
            "transaction_type": dto.transaction_type,
            "status": dto.status,
            "created_at": datetime.now(UTC),
        }
        return await _insert_ignore(self.session, TransactionModel, values, ["tx_signature"])

    async def list_for_pair(self, pair_address: str, *, limit: int = 100) -> list[TransactionDTO]:
        result = await self.session.execute(
            select(TransactionModel)
            .where(TransactionModel.pair_address == pair_address)
            .order_by(TransactionModel.slot.desc())
            .limit(limit)
        )
        return [TransactionDTO.from_model(m) for m in result.scalars().all()]


# ============================================================================
# Derived event records
# ============================================================================


@dataclass
class TransactionDetailDTO:
    tx_signature: str
    log_index: int
    event_name: str
    raw_event: str
    pair_address: str | None = None
    position_address: str | None = None
    user_address: str | None = None
    seq_num: int | None = None
    amount0: int | None = None
    amount1: int | None = None
    amount_in: int | None = None
    amount_out: int | None = None
    fee: int | None = None
    is_token0_in: bool | None = None
    liquidity: int | None = None
    price0: Decimal | None = None
    price1: Decimal | None = None
    event_time: datetime | None = None


@dataclass
class SwapDTO:
    pair_address: str
    seq_num: int
    tx_signature: str
    user_address: str
    is_token0_in: bool
    amount_in: int
    amount_out: int
    fee: int
    reserve0: int
    reserve1: int
    event_time: datetime | None


@dataclass
class LiquidityEventDTO:
    pair_address: str
    seq_num: int
    tx_signature: str
    user_address: str
    event_type: str
    amount0: int
    amount1: int
    liquidity: int
    reserve0: int | None
    reserve1: int | None
    total_supply: int | None
    event_time: datetime | None


@dataclass
class PricePointDTO:
    pair_address: str
    seq_num: int
    tx_signature: str
    price0: Decimal | None
    price1: Decimal | None
    reserve0: int
    reserve1: int
    event_time: datetime | None


@dataclass
class PairStatePointDTO:
    pair_address: str
    seq_num: int
    tx_signature: str
    reserve0: int
    reserve1: int
    total_supply: int
    price0_ema: int
    price1_ema: int
    rate0: int
    rate1: int
    event_time: datetime | None


@dataclass
class LiquidationDTO:
    position_address: str
    seq_num: int
    pair_address: str
    tx_signature: str
    liquidator: str
    collateral0_liquidated: int
    collateral1_liquidated: int
    debt0_liquidated: int
    debt1_liquidated: int
    collateral_price: int
    liquidation_bonus_applied: int
    event_time: datetime | None


_INT_COLUMNS = frozenset(
    {
        "amount0",
        "amount1",
        "amount_in",
        "amount_out",
        "fee",
        "liquidity",
        "reserve0",
        "reserve1",
        "total_supply",
        "price0_ema",
        "price1_ema",
        "rate0",
        "rate1",
        "collateral0_liquidated",
        "collateral1_liquidated",
        "debt0_liquidated",
        "debt1_liquidated",
        "collateral_price",
        "liquidation_bonus_applied",
    }
)


def _record_values(dto: Any) -> dict[str, Any]:
    values = dataclasses.asdict(dto)
    for key in _INT_COLUMNS & values.keys():
        values[key] = _decimal(values[key])
    values["created_at"] = datetime.now(UTC)
    return values


class EventRecordRepository:
    """Append-only derived rows. Every insert is a no-op on its natural key."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_detail(self, dto: TransactionDetailDTO) -> bool:
        return await _insert_ignore(
            self.session, TransactionDetailModel, _record_values(dto), ["tx_signature", "log_index"]
        )

    async def insert_swap(self, dto: SwapDTO) -> bool:
        return await _insert_ignore(
            self.session, SwapModel, _record_values(dto), ["pair_address", "seq_num"]
        )

    async def insert_liquidity_event(self, dto: LiquidityEventDTO) -> bool:
        return await _insert_ignore(
            self.session, LiquidityEventModel, _record_values(dto), ["pair_address", "seq_num"]
        )

    async def insert_price_point(self, dto: PricePointDTO) -> bool:
        return await _insert_ignore(
            self.session, PricePointModel, _record_values(dto), ["pair_address", "seq_num"]
        )

    async def insert_pair_state_point(self, dto: PairStatePointDTO) -> bool:
        return await _insert_ignore(
            self.session, PairStatePointModel, _record_values(dto), ["pair_address", "seq_num"]
        )

    async def insert_liquidation(self, dto: LiquidationDTO) -> bool:
        return await _insert_ignore(
            self.session, LiquidationModel, _record_values(dto), ["position_address", "seq_num"]
        )


# ============================================================================
# Entity snapshots
# ============================================================================


@dataclass
class PairDTO:
    """Data transfer object for pair snapshots."""

    pair_address: str
    token0: str | None
    token1: str | None
    creator: str | None
    reserve0: Decimal
    reserve1: Decimal
    total_supply: Decimal
    price0_ema: Decimal
    price1_ema: Decimal
    rate0: Decimal
    rate1: Decimal
    latest_seq_num_applied: int
    pair_created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: PairModel) -> PairDTO:
        return cls(
            pair_address=model.pair_address,
            token0=model.token0,
            token1=model.token1,
            creator=model.creator,
            reserve0=model.reserve0,
            reserve1=model.reserve1,
            total_supply=model.total_supply,
            price0_ema=model.price0_ema,
            price1_ema=model.price1_ema,
            rate0=model.rate0,
            rate1=model.rate1,
            latest_seq_num_applied=model.latest_seq_num_applied,
            pair_created_at=model.pair_created_at,
            updated_at=model.updated_at,
        )


@dataclass
class PairStateValues:
    """Post-event pair state written by a sequenced mutation."""

    reserve0: int
    reserve1: int
    total_supply: int
    price0_ema: int
    price1_ema: int
    rate0: int
    rate1: int


class PairRepository:
    """Repository for pair snapshots."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, pair_address: str) -> PairDTO | None:
        result = await self.session.execute(
            select(PairModel).where(PairModel.pair_address == pair_address)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return PairDTO.from_model(model) if model else None

    async def ensure(self, pair_address: str) -> None:
        """Create an empty snapshot row if none exists yet."""
        now = datetime.now(UTC)
        await _insert_ignore(
            self.session,
            PairModel,
            {
                "pair_address": pair_address,
                "latest_seq_num_applied": NO_SEQ_APPLIED,
                "created_at": now,
                "updated_at": now,
            },
            ["pair_address"],
        )

    async def register_created(
        self,
        pair_address: str,
        *,
        token0: str,
        token1: str,
        creator: str,
        created_at: datetime | None,
    ) -> None:
        """Record pair identity. Never touches sequenced state columns."""
        now = datetime.now(UTC)
        stmt = _insert(self.session, PairModel).values(
            pair_address=pair_address,
            token0=token0,
            token1=token1,
            creator=creator,
            pair_created_at=created_at,
            latest_seq_num_applied=NO_SEQ_APPLIED,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["pair_address"],
            set_={
                "token0": stmt.excluded.token0,
                "token1": stmt.excluded.token1,
                "creator": stmt.excluded.creator,
                "pair_created_at": stmt.excluded.pair_created_at,
            },
        )
        await self.session.execute(stmt)

    async def apply_state(self, pair_address: str, seq_num: int, state: PairStateValues) -> bool:
        """Compare-and-set the pair state to a newer sequence number.

        Returns:
            True if applied, False if the row already reflects ``seq_num``
            or a later one.
        """
        values = {k: Decimal(v) for k, v in dataclasses.asdict(state).items()}
        stmt = (
            update(PairModel)
            .where(
                PairModel.pair_address == pair_address,
                PairModel.latest_seq_num_applied < seq_num,
            )
            .values(**values, latest_seq_num_applied=seq_num, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1


@dataclass
class UserPositionDTO:
    """Data transfer object for user position snapshots."""

    position_address: str
    user_address: str | None
    pair_address: str
    collateral0: Decimal
    collateral1: Decimal
    debt0_shares: Decimal
    debt1_shares: Decimal
    liquidated: bool
    latest_seq_num_applied: int
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: UserPositionModel) -> UserPositionDTO:
        return cls(
            position_address=model.position_address,
            user_address=model.user_address,
            pair_address=model.pair_address,
            collateral0=model.collateral0,
            collateral1=model.collateral1,
            debt0_shares=model.debt0_shares,
            debt1_shares=model.debt1_shares,
            liquidated=model.liquidated,
            latest_seq_num_applied=model.latest_seq_num_applied,
            updated_at=model.updated_at,
        )


@dataclass
class PositionStateValues:
    collateral0: int
    collateral1: int
    debt0_shares: int
    debt1_shares: int


class UserPositionRepository:
    """Repository for user position snapshots."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, position_address: str) -> UserPositionDTO | None:
        result = await self.session.execute(
            select(UserPositionModel).where(UserPositionModel.position_address == position_address)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return UserPositionDTO.from_model(model) if model else None

    async def list_for_user(self, user_address: str) -> list[UserPositionDTO]:
        result = await self.session.execute(
            select(UserPositionModel).where(UserPositionModel.user_address == user_address)
            .execution_options(populate_existing=True)
        )
        return [UserPositionDTO.from_model(m) for m in result.scalars().all()]

    async def ensure(self, position_address: str, *, pair_address: str, user_address: str | None) -> None:
        now = datetime.now(UTC)
        await _insert_ignore(
            self.session,
            UserPositionModel,
            {
                "position_address": position_address,
                "pair_address": pair_address,
                "user_address": user_address,
                "liquidated": False,
                "latest_seq_num_applied": NO_SEQ_APPLIED,
                "created_at": now,
                "updated_at": now,
            },
            ["position_address"],
        )

    async def register_created(self, position_address: str, *, user_address: str, pair_address: str) -> None:
        """Record position ownership. Never touches sequenced state columns."""
        now = datetime.now(UTC)
        stmt = _insert(self.session, UserPositionModel).values(
            position_address=position_address,
            user_address=user_address,
            pair_address=pair_address,
            liquidated=False,
            latest_seq_num_applied=NO_SEQ_APPLIED,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["position_address"],
            set_={
                "user_address": stmt.excluded.user_address,
                "pair_address": stmt.excluded.pair_address,
            },
        )
        await self.session.execute(stmt)

    async def apply_state(
        self,
        position_address: str,
        seq_num: int,
        state: PositionStateValues,
        *,
        liquidated: bool = False,
    ) -> bool:
        """Compare-and-set the position state to a newer sequence number."""
        values: dict[str, Any] = {k: Decimal(v) for k, v in dataclasses.asdict(state).items()}
        if liquidated:
            values["liquidated"] = True
        stmt = (
            update(UserPositionModel)
            .where(
                UserPositionModel.position_address == position_address,
                UserPositionModel.latest_seq_num_applied < seq_num,
            )
            .values(**values, latest_seq_num_applied=seq_num, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1


# ============================================================================
# Watermarks
# ============================================================================


@dataclass
class WatermarkDTO:
    """Data transfer object for per-address crawl watermarks."""

    acct: str
    latest_tx_sig: str | None
    first_tx_sig: str | None
    checked_up_to_slot: int
    description: str
    status: str
    failure_log: str | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: TransactionWatcherModel) -> WatermarkDTO:
        return cls(
            acct=model.acct,
            latest_tx_sig=model.latest_tx_sig,
            first_tx_sig=model.first_tx_sig,
            checked_up_to_slot=model.checked_up_to_slot,
            description=model.description,
            status=model.status,
            failure_log=model.failure_log,
            updated_at=model.updated_at,
        )


class WatermarkRepository:
    """Repository for crawl watermarks. Rows are never deleted."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, acct: str) -> WatermarkDTO | None:
        result = await self.session.execute(
            select(TransactionWatcherModel).where(TransactionWatcherModel.acct == acct)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return WatermarkDTO.from_model(model) if model else None

    async def list_all(self) -> list[WatermarkDTO]:
        result = await self.session.execute(
            select(TransactionWatcherModel).order_by(TransactionWatcherModel.acct)
        )
        return [WatermarkDTO.from_model(m) for m in result.scalars().all()]

    async def initialize(self, acct: str, *, description: str = "") -> WatermarkDTO:
        """Create the watermark row if absent and return the current row."""
        now = datetime.now(UTC)
        created = await _insert_ignore(
            self.session,
            TransactionWatcherModel,
            {
                "acct": acct,
                "latest_tx_sig": None,
                "first_tx_sig": None,
                "checked_up_to_slot": 0,
                "description": description,
                "status": WatchStatus.ACTIVE.value,
                "created_at": now,
                "updated_at": now,
            },
            ["acct"],
        )
        if created:
            logger.info("Initialized watermark for %s", acct)
        dto = await self.get(acct)
        if dto is None:
            raise RuntimeError(f"Watermark for {acct} missing after initialize")
        return dto

    async def advance(
        self,
        acct: str,
        *,
        signature: str,
        slot: int,
        first_signature: str | None = None,
    ) -> bool:
        """Move the watermark forward to ``signature`` at ``slot``.

        The update is guarded on slot, so a watermark never moves backwards.
        ``first_signature`` (the oldest signature of the batch) is recorded once.

        Returns:
            True if the watermark moved.
        """
        now = datetime.now(UTC)
        result = await self.session.execute(
            update(TransactionWatcherModel)
            .where(
                TransactionWatcherModel.acct == acct,
                TransactionWatcherModel.checked_up_to_slot <= slot,
            )
            .values(latest_tx_sig=signature, checked_up_to_slot=slot, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(
            update(TransactionWatcherModel)
            .where(
                TransactionWatcherModel.acct == acct,
                TransactionWatcherModel.first_tx_sig.is_(None),
            )
            .values(first_tx_sig=first_signature or signature)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def set_status(self, acct: str, status: WatchStatus, *, failure_log: str | None = None) -> None:
        await self.session.execute(
            update(TransactionWatcherModel)
            .where(TransactionWatcherModel.acct == acct)
            .values(status=status.value, failure_log=failure_log, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )

    async def mark_failed(self, acct: str, failure_log: str) -> None:
        await self.set_status(acct, WatchStatus.FAILED, failure_log=failure_log)
