"""Initial schema for pairs, positions, transactions, event records and watermarks.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

PUBKEY = 44
SIGNATURE = 88


def _u64() -> sa.Numeric:
    return sa.Numeric(20, 0)


def _timestamps(*, updated: bool = False) -> list[sa.Column]:
    cols = [sa.Column("created_at", sa.DateTime(timezone=True), nullable=False)]
    if updated:
        cols.append(sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False))
    return cols


def upgrade() -> None:
    # Pair snapshots
    op.create_table(
        "pairs",
        sa.Column("pair_address", sa.String(PUBKEY), nullable=False),
        sa.Column("token0", sa.String(PUBKEY), nullable=True),
        sa.Column("token1", sa.String(PUBKEY), nullable=True),
        sa.Column("creator", sa.String(PUBKEY), nullable=True),
        sa.Column("reserve0", _u64(), nullable=False),
        sa.Column("reserve1", _u64(), nullable=False),
        sa.Column("total_supply", _u64(), nullable=False),
        sa.Column("price0_ema", _u64(), nullable=False),
        sa.Column("price1_ema", _u64(), nullable=False),
        sa.Column("rate0", _u64(), nullable=False),
        sa.Column("rate1", _u64(), nullable=False),
        sa.Column("latest_seq_num_applied", sa.BigInteger(), nullable=False),
        sa.Column("pair_created_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=True),
        sa.PrimaryKeyConstraint("pair_address"),
    )

    # Position snapshots
    op.create_table(
        "user_positions",
        sa.Column("position_address", sa.String(PUBKEY), nullable=False),
        sa.Column("user_address", sa.String(PUBKEY), nullable=True),
        sa.Column("pair_address", sa.String(PUBKEY), nullable=False),
        sa.Column("collateral0", _u64(), nullable=False),
        sa.Column("collateral1", _u64(), nullable=False),
        sa.Column("debt0_shares", _u64(), nullable=False),
        sa.Column("debt1_shares", _u64(), nullable=False),
        sa.Column("liquidated", sa.Boolean(), nullable=False),
        sa.Column("latest_seq_num_applied", sa.BigInteger(), nullable=False),
        *_timestamps(updated=True),
        sa.PrimaryKeyConstraint("position_address"),
    )
    op.create_index("idx_user_positions_user", "user_positions", ["user_address"])
    op.create_index("idx_user_positions_pair", "user_positions", ["pair_address"])

    # Transactions
    op.create_table(
        "transactions",
        sa.Column("tx_signature", sa.String(SIGNATURE), nullable=False),
        sa.Column("slot", sa.BigInteger(), nullable=False),
        sa.Column("block_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pair_address", sa.String(PUBKEY), nullable=True),
        sa.Column("user_address", sa.String(PUBKEY), nullable=True),
        sa.Column("transaction_type", sa.String(32), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("tx_signature"),
    )
    op.create_index("idx_transactions_pair_slot", "transactions", ["pair_address", "slot"])
    op.create_index("idx_transactions_user_slot", "transactions", ["user_address", "slot"])
    op.create_index("idx_transactions_slot", "transactions", ["slot"])

    op.create_table(
        "transaction_details",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tx_signature", sa.String(SIGNATURE), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("event_name", sa.String(64), nullable=False),
        sa.Column("pair_address", sa.String(PUBKEY), nullable=True),
        sa.Column("position_address", sa.String(PUBKEY), nullable=True),
        sa.Column("user_address", sa.String(PUBKEY), nullable=True),
        sa.Column("seq_num", sa.BigInteger(), nullable=True),
        sa.Column("amount0", sa.Numeric(21, 0), nullable=True),
        sa.Column("amount1", sa.Numeric(21, 0), nullable=True),
        sa.Column("amount_in", _u64(), nullable=True),
        sa.Column("amount_out", _u64(), nullable=True),
        sa.Column("fee", _u64(), nullable=True),
        sa.Column("is_token0_in", sa.Boolean(), nullable=True),
        sa.Column("liquidity", _u64(), nullable=True),
        sa.Column("price0", sa.Numeric(38, 18), nullable=True),
        sa.Column("price1", sa.Numeric(38, 18), nullable=True),
        sa.Column("raw_event", sa.Text(), nullable=False),
        sa.Column("event_time", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tx_signature", "log_index", name="uq_transaction_details_event"),
    )
    op.create_index("idx_transaction_details_pair", "transaction_details", ["pair_address"])

    # Swaps
    op.create_table(
        "swaps",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("pair_address", sa.String(PUBKEY), nullable=False),
        sa.Column("seq_num", sa.BigInteger(), nullable=False),
        sa.Column("tx_signature", sa.String(SIGNATURE), nullable=False),
        sa.Column("user_address", sa.String(PUBKEY), nullable=False),
        sa.Column("is_token0_in", sa.Boolean(), nullable=False),
        sa.Column("amount_in", _u64(), nullable=False),
        sa.Column("amount_out", _u64(), nullable=False),
        sa.Column("fee", _u64(), nullable=False),
        sa.Column("reserve0", _u64(), nullable=False),
        sa.Column("reserve1", _u64(), nullable=False),
        sa.Column("event_time", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("pair_address", "seq_num", name="uq_swaps_pair_seq"),
    )
    op.create_index("idx_swaps_pair_time", "swaps", ["pair_address", "event_time"])
    op.create_index("idx_swaps_user", "swaps", ["user_address"])

    # Mints and burns
    op.create_table(
        "liquidity_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("pair_address", sa.String(PUBKEY), nullable=False),
        sa.Column("seq_num", sa.BigInteger(), nullable=False),
        sa.Column("tx_signature", sa.String(SIGNATURE), nullable=False),
        sa.Column("user_address", sa.String(PUBKEY), nullable=False),
        sa.Column("event_type", sa.String(32), nullable=False),
        sa.Column("amount0", _u64(), nullable=False),
        sa.Column("amount1", _u64(), nullable=False),
        sa.Column("liquidity", _u64(), nullable=False),
        sa.Column("reserve0", _u64(), nullable=True),
        sa.Column("reserve1", _u64(), nullable=True),
        sa.Column("total_supply", _u64(), nullable=True),
        sa.Column("event_time", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("pair_address", "seq_num", name="uq_liquidity_events_pair_seq"),
    )
    op.create_index("idx_liquidity_events_user", "liquidity_events", ["user_address"])

    # Spot prices
    op.create_table(
        "price_points",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("pair_address", sa.String(PUBKEY), nullable=False),
        sa.Column("seq_num", sa.BigInteger(), nullable=False),
        sa.Column("tx_signature", sa.String(SIGNATURE), nullable=False),
        sa.Column("price0", sa.Numeric(38, 18), nullable=True),
        sa.Column("price1", sa.Numeric(38, 18), nullable=True),
        sa.Column("reserve0", _u64(), nullable=False),
        sa.Column("reserve1", _u64(), nullable=False),
        sa.Column("event_time", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("pair_address", "seq_num", name="uq_price_points_pair_seq"),
    )
    op.create_index("idx_price_points_pair_time", "price_points", ["pair_address", "event_time"])

    # EMA / rate series
    op.create_table(
        "pair_state_points",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("pair_address", sa.String(PUBKEY), nullable=False),
        sa.Column("seq_num", sa.BigInteger(), nullable=False),
        sa.Column("tx_signature", sa.String(SIGNATURE), nullable=False),
        sa.Column("reserve0", _u64(), nullable=False),
        sa.Column("reserve1", _u64(), nullable=False),
        sa.Column("total_supply", _u64(), nullable=False),
        sa.Column("price0_ema", _u64(), nullable=False),
        sa.Column("price1_ema", _u64(), nullable=False),
        sa.Column("rate0", _u64(), nullable=False),
        sa.Column("rate1", _u64(), nullable=False),
        sa.Column("event_time", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("pair_address", "seq_num", name="uq_pair_state_points_pair_seq"),
    )
    op.create_index(
        "idx_pair_state_points_pair_time", "pair_state_points", ["pair_address", "event_time"]
    )

    # Liquidations
    op.create_table(
        "liquidations",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("position_address", sa.String(PUBKEY), nullable=False),
        sa.Column("seq_num", sa.BigInteger(), nullable=False),
        sa.Column("pair_address", sa.String(PUBKEY), nullable=False),
        sa.Column("tx_signature", sa.String(SIGNATURE), nullable=False),
        sa.Column("liquidator", sa.String(PUBKEY), nullable=False),
        sa.Column("collateral0_liquidated", _u64(), nullable=False),
        sa.Column("collateral1_liquidated", _u64(), nullable=False),
        sa.Column("debt0_liquidated", _u64(), nullable=False),
        sa.Column("debt1_liquidated", _u64(), nullable=False),
        sa.Column("collateral_price", _u64(), nullable=False),
        sa.Column("liquidation_bonus_applied", _u64(), nullable=False),
        sa.Column("event_time", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("position_address", "seq_num", name="uq_liquidations_position_seq"),
    )
    op.create_index("idx_liquidations_pair", "liquidations", ["pair_address"])

    # Crawl watermarks
    op.create_table(
        "transaction_watchers",
        sa.Column("acct", sa.String(PUBKEY), nullable=False),
        sa.Column("latest_tx_sig", sa.String(SIGNATURE), nullable=True),
        sa.Column("first_tx_sig", sa.String(SIGNATURE), nullable=True),
        sa.Column("checked_up_to_slot", sa.BigInteger(), nullable=False),
        sa.Column("description", sa.String(255), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("failure_log", sa.Text(), nullable=True),
        *_timestamps(updated=True),
        sa.PrimaryKeyConstraint("acct"),
    )


def downgrade() -> None:
    op.drop_table("transaction_watchers")
    op.drop_index("idx_liquidations_pair", table_name="liquidations")
    op.drop_table("liquidations")
    op.drop_index("idx_pair_state_points_pair_time", table_name="pair_state_points")
    op.drop_table("pair_state_points")
    op.drop_index("idx_price_points_pair_time", table_name="price_points")
    op.drop_table("price_points")
    op.drop_index("idx_liquidity_events_user", table_name="liquidity_events")
    op.drop_table("liquidity_events")
    op.drop_index("idx_swaps_user", table_name="swaps")
    op.drop_index("idx_swaps_pair_time", table_name="swaps")
    op.drop_table("swaps")
    op.drop_index("idx_transaction_details_pair", table_name="transaction_details")
    op.drop_table("transaction_details")
    op.drop_index("idx_transactions_slot", table_name="transactions")
    op.drop_index("idx_transactions_user_slot", table_name="transactions")
    op.drop_index("idx_transactions_pair_slot", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("idx_user_positions_pair", table_name="user_positions")
    op.drop_index("idx_user_positions_user", table_name="user_positions")
    op.drop_table("user_positions")
    op.drop_table("pairs")
