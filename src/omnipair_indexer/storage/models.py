"""SQLAlchemy models for persistent storage.

This module defines the database schema for indexed transactions, the pair
and position snapshots they mutate, the append-only detail rows derived from
decoded events, and the per-address crawl watermarks.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Base58 encodings: 32-byte pubkeys fit in 44 chars, 64-byte signatures in 88.
PUBKEY_LENGTH = 44
SIGNATURE_LENGTH = 88

# Sentinel for rows created before any sequenced event was applied.
NO_SEQ_APPLIED = -1


def _u64() -> Numeric:
    return Numeric(20, 0)


class TransactionType(str, Enum):
    """Classification of a transaction by its highest-priority event."""

    SWAP = "swap"
    BORROW = "borrow"
    REPAY = "repay"
    ADD_COLLATERAL = "add_collateral"
    REMOVE_COLLATERAL = "remove_collateral"
    ADD_LIQUIDITY = "add_liquidity"
    REMOVE_LIQUIDITY = "remove_liquidity"
    LIQUIDATE = "liquidate"
    OTHER = "other"


class TransactionStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class WatchStatus(str, Enum):
    """Lifecycle of a watched address."""

    ACTIVE = "active"
    FAILED = "failed"
    DISABLED = "disabled"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class PairModel(Base):
    """Latest known state of a pair.

    ``latest_seq_num_applied`` only ever increases; state columns are written
    together with it by a single compare-and-set update.
    """

    __tablename__ = "pairs"

    pair_address: Mapped[str] = mapped_column(String(PUBKEY_LENGTH), primary_key=True)
    token0: Mapped[str | None] = mapped_column(String(PUBKEY_LENGTH), nullable=True)
    token1: Mapped[str | None] = mapped_column(String(PUBKEY_LENGTH), nullable=True)
    creator: Mapped[str | None] = mapped_column(String(PUBKEY_LENGTH), nullable=True)

    reserve0: Mapped[Decimal] = mapped_column(_u64(), nullable=False, default=Decimal(0))
    reserve1: Mapped[Decimal] = mapped_column(_u64(), nullable=False, default=Decimal(0))
    total_supply: Mapped[Decimal] = mapped_column(_u64(), nullable=False, default=Decimal(0))
    price0_ema: Mapped[Decimal] = mapped_column(_u64(), nullable=False, default=Decimal(0))
    price1_ema: Mapped[Decimal] = mapped_column(_u64(), nullable=False, default=Decimal(0))
    rate0: Mapped[Decimal] = mapped_column(_u64(), nullable=False, default=Decimal(0))
    rate1: Mapped[Decimal] = mapped_column(_u64(), nullable=False, default=Decimal(0))

    latest_seq_num_applied: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=NO_SEQ_APPLIED
    )
    pair_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class UserPositionModel(Base):
    """Latest known state of a user position."""

    __tablename__ = "user_positions"

    position_address: Mapped[str] = mapped_column(String(PUBKEY_LENGTH), primary_key=True)
    user_address: Mapped[str | None] = mapped_column(String(PUBKEY_LENGTH), nullable=True)
    pair_address: Mapped[str] = mapped_column(String(PUBKEY_LENGTH), nullable=False)

    collateral0: Mapped[Decimal] = mapped_column(_u64(), nullable=False, default=Decimal(0))
    collateral1: Mapped[Decimal] = mapped_column(_u64(), nullable=False, default=Decimal(0))
    debt0_shares: Mapped[Decimal] = mapped_column(_u64(), nullable=False, default=Decimal(0))
    debt1_shares: Mapped[Decimal] = mapped_column(_u64(), nullable=False, default=Decimal(0))
    liquidated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    latest_seq_num_applied: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=NO_SEQ_APPLIED
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_user_positions_user", "user_address"),
        Index("idx_user_positions_pair", "pair_address"),
    )


class TransactionModel(Base):
    """One row per processed signature, successful or failed."""

    __tablename__ = "transactions"

    tx_signature: Mapped[str] = mapped_column(String(SIGNATURE_LENGTH), primary_key=True)
    slot: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    pair_address: Mapped[str | None] = mapped_column(String(PUBKEY_LENGTH), nullable=True)
    user_address: Mapped[str | None] = mapped_column(String(PUBKEY_LENGTH), nullable=True)
    transaction_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_transactions_pair_slot", "pair_address", "slot"),
        Index("idx_transactions_user_slot", "user_address", "slot"),
        Index("idx_transactions_slot", "slot"),
    )


class TransactionDetailModel(Base):
    """Decoded event fields, one row per event of a successful transaction."""

    __tablename__ = "transaction_details"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tx_signature: Mapped[str] = mapped_column(String(SIGNATURE_LENGTH), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    event_name: Mapped[str] = mapped_column(String(64), nullable=False)

    pair_address: Mapped[str | None] = mapped_column(String(PUBKEY_LENGTH), nullable=True)
    position_address: Mapped[str | None] = mapped_column(String(PUBKEY_LENGTH), nullable=True)
    user_address: Mapped[str | None] = mapped_column(String(PUBKEY_LENGTH), nullable=True)
    seq_num: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Wide, nullable projection of the narrow event structs.
    amount0: Mapped[Decimal | None] = mapped_column(Numeric(21, 0), nullable=True)
    amount1: Mapped[Decimal | None] = mapped_column(Numeric(21, 0), nullable=True)
    amount_in: Mapped[Decimal | None] = mapped_column(_u64(), nullable=True)
    amount_out: Mapped[Decimal | None] = mapped_column(_u64(), nullable=True)
    fee: Mapped[Decimal | None] = mapped_column(_u64(), nullable=True)
    is_token0_in: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    liquidity: Mapped[Decimal | None] = mapped_column(_u64(), nullable=True)
    price0: Mapped[Decimal | None] = mapped_column(Numeric(38, 18), nullable=True)
    price1: Mapped[Decimal | None] = mapped_column(Numeric(38, 18), nullable=True)

    raw_event: Mapped[str] = mapped_column(Text, nullable=False)
    event_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("tx_signature", "log_index", name="uq_transaction_details_event"),
        Index("idx_transaction_details_pair", "pair_address"),
    )


class SwapModel(Base):
    __tablename__ = "swaps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pair_address: Mapped[str] = mapped_column(String(PUBKEY_LENGTH), nullable=False)
    seq_num: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tx_signature: Mapped[str] = mapped_column(String(SIGNATURE_LENGTH), nullable=False)
    user_address: Mapped[str] = mapped_column(String(PUBKEY_LENGTH), nullable=False)
    is_token0_in: Mapped[bool] = mapped_column(Boolean, nullable=False)
    amount_in: Mapped[Decimal] = mapped_column(_u64(), nullable=False)
    amount_out: Mapped[Decimal] = mapped_column(_u64(), nullable=False)
    fee: Mapped[Decimal] = mapped_column(_u64(), nullable=False)
    reserve0: Mapped[Decimal] = mapped_column(_u64(), nullable=False)
    reserve1: Mapped[Decimal] = mapped_column(_u64(), nullable=False)
    event_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("pair_address", "seq_num", name="uq_swaps_pair_seq"),
        Index("idx_swaps_pair_time", "pair_address", "event_time"),
        Index("idx_swaps_user", "user_address"),
    )


class LiquidityEventModel(Base):
    """Mint, burn and liquidity adjustment records.

    Adjustments carry no pair state, so their reserve columns are null.
    """

    __tablename__ = "liquidity_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pair_address: Mapped[str] = mapped_column(String(PUBKEY_LENGTH), nullable=False)
    seq_num: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tx_signature: Mapped[str] = mapped_column(String(SIGNATURE_LENGTH), nullable=False)
    user_address: Mapped[str] = mapped_column(String(PUBKEY_LENGTH), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    amount0: Mapped[Decimal] = mapped_column(_u64(), nullable=False)
    amount1: Mapped[Decimal] = mapped_column(_u64(), nullable=False)
    liquidity: Mapped[Decimal] = mapped_column(_u64(), nullable=False)
    reserve0: Mapped[Decimal | None] = mapped_column(_u64(), nullable=True)
    reserve1: Mapped[Decimal | None] = mapped_column(_u64(), nullable=True)
    total_supply: Mapped[Decimal | None] = mapped_column(_u64(), nullable=True)
    event_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("pair_address", "seq_num", name="uq_liquidity_events_pair_seq"),
        Index("idx_liquidity_events_user", "user_address"),
    )


class PricePointModel(Base):
    """Implied spot price after each swap."""

    __tablename__ = "price_points"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pair_address: Mapped[str] = mapped_column(String(PUBKEY_LENGTH), nullable=False)
    seq_num: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tx_signature: Mapped[str] = mapped_column(String(SIGNATURE_LENGTH), nullable=False)
    price0: Mapped[Decimal | None] = mapped_column(Numeric(38, 18), nullable=True)
    price1: Mapped[Decimal | None] = mapped_column(Numeric(38, 18), nullable=True)
    reserve0: Mapped[Decimal] = mapped_column(_u64(), nullable=False)
    reserve1: Mapped[Decimal] = mapped_column(_u64(), nullable=False)
    event_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("pair_address", "seq_num", name="uq_price_points_pair_seq"),
        Index("idx_price_points_pair_time", "pair_address", "event_time"),
    )


class PairStatePointModel(Base):
    """EMA, rate and reserve time series from pair-state-carrying events."""

    __tablename__ = "pair_state_points"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pair_address: Mapped[str] = mapped_column(String(PUBKEY_LENGTH), nullable=False)
    seq_num: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tx_signature: Mapped[str] = mapped_column(String(SIGNATURE_LENGTH), nullable=False)
    reserve0: Mapped[Decimal] = mapped_column(_u64(), nullable=False)
    reserve1: Mapped[Decimal] = mapped_column(_u64(), nullable=False)
    total_supply: Mapped[Decimal] = mapped_column(_u64(), nullable=False)
    price0_ema: Mapped[Decimal] = mapped_column(_u64(), nullable=False)
    price1_ema: Mapped[Decimal] = mapped_column(_u64(), nullable=False)
    rate0: Mapped[Decimal] = mapped_column(_u64(), nullable=False)
    rate1: Mapped[Decimal] = mapped_column(_u64(), nullable=False)
    event_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("pair_address", "seq_num", name="uq_pair_state_points_pair_seq"),
        Index("idx_pair_state_points_pair_time", "pair_address", "event_time"),
    )


class LiquidationModel(Base):
    __tablename__ = "liquidations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    position_address: Mapped[str] = mapped_column(String(PUBKEY_LENGTH), nullable=False)
    seq_num: Mapped[int] = mapped_column(BigInteger, nullable=False)
    pair_address: Mapped[str] = mapped_column(String(PUBKEY_LENGTH), nullable=False)
    tx_signature: Mapped[str] = mapped_column(String(SIGNATURE_LENGTH), nullable=False)
    liquidator: Mapped[str] = mapped_column(String(PUBKEY_LENGTH), nullable=False)
    collateral0_liquidated: Mapped[Decimal] = mapped_column(_u64(), nullable=False)
    collateral1_liquidated: Mapped[Decimal] = mapped_column(_u64(), nullable=False)
    debt0_liquidated: Mapped[Decimal] = mapped_column(_u64(), nullable=False)
    debt1_liquidated: Mapped[Decimal] = mapped_column(_u64(), nullable=False)
    collateral_price: Mapped[Decimal] = mapped_column(_u64(), nullable=False)
    liquidation_bonus_applied: Mapped[Decimal] = mapped_column(_u64(), nullable=False)
    event_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("position_address", "seq_num", name="uq_liquidations_position_seq"),
        Index("idx_liquidations_pair", "pair_address"),
    )


class TransactionWatcherModel(Base):
    """Per-address crawl watermark.

    ``latest_tx_sig``/``checked_up_to_slot`` mark the newest signature whose
    entire history prefix has been processed.
    """

    __tablename__ = "transaction_watchers"

    acct: Mapped[str] = mapped_column(String(PUBKEY_LENGTH), primary_key=True)
    latest_tx_sig: Mapped[str | None] = mapped_column(String(SIGNATURE_LENGTH), nullable=True)
    first_tx_sig: Mapped[str | None] = mapped_column(String(SIGNATURE_LENGTH), nullable=True)
    checked_up_to_slot: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    description: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=WatchStatus.ACTIVE.value)
    failure_log: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
