"""Transaction processor.

Applies the decoded events of one transaction to the store:

1. Classify the transaction by its highest-priority event.
2. Insert the transaction record (no-op if the signature was seen before).
3. For each event of a successful transaction, in its own database
   transaction, write the derived detail rows and apply the entity mutation
   guarded by the entity's sequence number.

Replaying a transaction, or applying transactions out of order, converges to
the same state: detail rows are keyed on natural keys, and a mutation only
lands if its sequence number is newer than the one already applied.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, localcontext
from typing import TYPE_CHECKING

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError

from omnipair_indexer.decoder import (
    AdjustCollateralEvent,
    AdjustDebtEvent,
    AdjustLiquidityEvent,
    BurnEvent,
    Event,
    FlashloanEvent,
    MintEvent,
    PairCreatedEvent,
    SwapEvent,
    UpdatePairEvent,
    UserPositionCreatedEvent,
    UserPositionLiquidatedEvent,
    UserPositionUpdatedEvent,
    decode,
    event_to_dict,
)
from omnipair_indexer.storage.models import TransactionStatus, TransactionType
from omnipair_indexer.storage.repos import (
    EventRecordRepository,
    LiquidationDTO,
    LiquidityEventDTO,
    PairRepository,
    PairStatePointDTO,
    PairStateValues,
    PositionStateValues,
    PricePointDTO,
    SwapDTO,
    TransactionDetailDTO,
    TransactionDTO,
    TransactionRepository,
    UserPositionRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from omnipair_indexer.decoder.events import PairState
    from omnipair_indexer.ledger.models import LedgerTransaction
    from omnipair_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

PRICE_QUANTUM = Decimal("1e-18")


def implied_price(numerator: int, denominator: int) -> Decimal | None:
    """Ratio of two raw token amounts at 18 decimal places, or None if undefined."""
    if denominator == 0:
        return None
    with localcontext() as ctx:
        ctx.prec = 60
        return (Decimal(numerator) / Decimal(denominator)).quantize(PRICE_QUANTUM)


def classify(events: list[Event]) -> tuple[TransactionType, Event | None]:
    """Classify a transaction by fixed event priority.

    Priority: liquidation > debt adjustment > collateral adjustment > swap >
    liquidity change > other.

    Returns:
        The transaction type and the event that determined it (the first
        event of the transaction for OTHER, or None if there are no events).
    """
    liquidations = [e for e in events if isinstance(e, UserPositionLiquidatedEvent)]
    if liquidations:
        return TransactionType.LIQUIDATE, liquidations[0]

    debts = [e for e in events if isinstance(e, AdjustDebtEvent)]
    if debts:
        first = debts[0]
        borrowed = first.amount0 > 0 or first.amount1 > 0
        return (TransactionType.BORROW if borrowed else TransactionType.REPAY), first

    collaterals = [e for e in events if isinstance(e, AdjustCollateralEvent)]
    if collaterals:
        first = collaterals[0]
        added = first.amount0 > 0 or first.amount1 > 0
        return (TransactionType.ADD_COLLATERAL if added else TransactionType.REMOVE_COLLATERAL), first

    swaps = [e for e in events if isinstance(e, SwapEvent)]
    if swaps:
        return TransactionType.SWAP, swaps[0]

    liquidity = [e for e in events if isinstance(e, (MintEvent, BurnEvent, AdjustLiquidityEvent))]
    if liquidity:
        mints = [e for e in liquidity if isinstance(e, MintEvent)]
        if mints:
            return TransactionType.ADD_LIQUIDITY, mints[0]
        return liquidity_change_type(liquidity[0]), liquidity[0]

    return TransactionType.OTHER, events[0] if events else None


def liquidity_change_type(event: MintEvent | BurnEvent | AdjustLiquidityEvent) -> TransactionType:
    """Direction of a liquidity event. Adjustments add when any amount is positive."""
    if isinstance(event, MintEvent):
        return TransactionType.ADD_LIQUIDITY
    if isinstance(event, AdjustLiquidityEvent) and (event.amount0 > 0 or event.amount1 > 0):
        return TransactionType.ADD_LIQUIDITY
    return TransactionType.REMOVE_LIQUIDITY


@dataclass
class ProcessResult:
    """Outcome of processing one transaction."""

    signature: str
    transaction_type: TransactionType
    status: TransactionStatus
    inserted: bool
    events_applied: int = 0
    events_stale: int = 0
    events_failed: int = 0

    @property
    def ok(self) -> bool:
        return self.events_failed == 0


def _is_fatal(error: Exception) -> bool:
    """Errors that mean the store itself is unavailable."""
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return True
    # Drivers raise ConnectionError subclasses when a connect attempt is refused.
    return isinstance(error, (OperationalError, InterfaceError, ConnectionError))


def _event_time(event: Event) -> datetime | None:
    """On-chain event time, or None if the timestamp is out of range."""
    try:
        return datetime.fromtimestamp(event.timestamp, tz=UTC)
    except (OverflowError, ValueError, OSError):
        return None


def _pair_state_values(state: PairState) -> PairStateValues:
    return PairStateValues(
        reserve0=state.reserve0,
        reserve1=state.reserve1,
        total_supply=state.total_supply,
        price0_ema=state.price0_ema,
        price1_ema=state.price1_ema,
        rate0=state.rate0,
        rate1=state.rate1,
    )


def build_detail(signature: str, event: Event) -> TransactionDetailDTO:
    """Widen a narrow event struct into a transaction_details row."""
    detail = TransactionDetailDTO(
        tx_signature=signature,
        log_index=event.log_index,
        event_name=event.name,
        raw_event=json.dumps(event_to_dict(event), sort_keys=True),
        pair_address=event.pair_address,
        user_address=event.actor,
        seq_num=event.seq_num,
        event_time=_event_time(event),
    )
    if isinstance(event, (UserPositionCreatedEvent, UserPositionUpdatedEvent, UserPositionLiquidatedEvent)):
        detail.position_address = event.target_entity

    if isinstance(event, SwapEvent):
        detail.amount_in = event.amount_in
        detail.amount_out = event.amount_out
        detail.fee = event.fee
        detail.is_token0_in = event.is_token0_in
        # price0 is token0 quoted in token1.
        if event.is_token0_in:
            detail.price0 = implied_price(event.amount_out, event.amount_in)
            detail.price1 = implied_price(event.amount_in, event.amount_out)
        else:
            detail.price0 = implied_price(event.amount_in, event.amount_out)
            detail.price1 = implied_price(event.amount_out, event.amount_in)
    elif isinstance(event, (MintEvent, BurnEvent, AdjustLiquidityEvent)):
        detail.amount0 = event.amount0
        detail.amount1 = event.amount1
        detail.liquidity = event.liquidity
    elif isinstance(event, (AdjustCollateralEvent, AdjustDebtEvent, FlashloanEvent)):
        detail.amount0 = event.amount0
        detail.amount1 = event.amount1
        if isinstance(event, FlashloanEvent):
            detail.fee = event.fee0 + event.fee1
    elif isinstance(event, UserPositionLiquidatedEvent):
        detail.amount0 = event.collateral0_liquidated
        detail.amount1 = event.collateral1_liquidated
    return detail


class TransactionProcessor:
    """Applies decoded transactions to the store.

    Example:
        ```python
        processor = TransactionProcessor(db)
        result = await processor.process_transaction(tx, program_id)
        ```
    """

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def process_transaction(self, tx: LedgerTransaction, source_address: str) -> ProcessResult:
        """Decode a fetched transaction's logs and process its events.

        Failed transactions are still decoded so they can be classified.
        """
        events = decode(tx.log_messages, source_address)
        return await self.process(
            tx.signature,
            slot=tx.slot,
            block_time=tx.block_datetime,
            events=events,
            failed=tx.failed,
        )

    async def process(
        self,
        signature: str,
        *,
        slot: int,
        block_time: datetime | None,
        events: list[Event],
        failed: bool = False,
    ) -> ProcessResult:
        """Process one transaction.

        Args:
            signature: Transaction signature.
            slot: Slot the transaction landed in.
            block_time: Block time, if known.
            events: Decoded events, in log order.
            failed: Whether the transaction failed on-chain.

        Returns:
            Counts of applied, stale and failed events.

        Raises:
            Exception: If the transaction record cannot be written, or the
                store becomes unreachable mid-way.
        """
        tx_type, primary = classify(events)
        status = TransactionStatus.FAILED if failed else TransactionStatus.SUCCESS

        async with self._db.get_async_session() as session:
            inserted = await TransactionRepository(session).insert_if_absent(
                TransactionDTO(
                    tx_signature=signature,
                    slot=slot,
                    block_time=block_time,
                    pair_address=primary.pair_address if primary else None,
                    user_address=primary.actor if primary else None,
                    transaction_type=tx_type.value,
                    status=status.value,
                )
            )

        result = ProcessResult(
            signature=signature,
            transaction_type=tx_type,
            status=status,
            inserted=inserted,
        )
        if failed:
            logger.debug("Recorded failed transaction %s", signature)
            return result

        for event in events:
            try:
                async with self._db.get_async_session() as session:
                    applied = await self._apply_event(session, signature, event)
            except Exception as e:
                if _is_fatal(e):
                    raise
                result.events_failed += 1
                logger.error(
                    "Failed to apply %s (log %d) of %s: %s",
                    event.name,
                    event.log_index,
                    signature,
                    e,
                )
                continue

            if applied:
                result.events_applied += 1
            else:
                result.events_stale += 1
                logger.debug(
                    "Skipped stale %s seq=%s for %s in %s",
                    event.name,
                    event.seq_num,
                    event.target_entity,
                    signature,
                )

        return result

    async def _apply_event(self, session: AsyncSession, signature: str, event: Event) -> bool:
        """Write detail rows and the guarded mutation for one event.

        Returns:
            False if the event's mutation was stale, True otherwise.
        """
        records = EventRecordRepository(session)
        pairs = PairRepository(session)
        positions = UserPositionRepository(session)
        event_time = _event_time(event)

        await records.insert_detail(build_detail(signature, event))

        if isinstance(event, PairCreatedEvent):
            await pairs.register_created(
                event.pair,
                token0=event.token0,
                token1=event.token1,
                creator=event.creator,
                created_at=event_time,
            )
            return True

        if isinstance(event, UserPositionCreatedEvent):
            await positions.register_created(
                event.position, user_address=event.user, pair_address=event.pair
            )
            return True

        if isinstance(event, (AdjustCollateralEvent, AdjustDebtEvent, FlashloanEvent)):
            return True

        if isinstance(event, AdjustLiquidityEvent):
            # No post-event state, so the pair snapshot is left to its state events.
            await records.insert_liquidity_event(
                LiquidityEventDTO(
                    pair_address=event.metadata.pair,
                    seq_num=event.metadata.seq_num,
                    tx_signature=signature,
                    user_address=event.metadata.signer,
                    event_type=liquidity_change_type(event).value,
                    amount0=event.amount0,
                    amount1=event.amount1,
                    liquidity=event.liquidity,
                    reserve0=None,
                    reserve1=None,
                    total_supply=None,
                    event_time=event_time,
                )
            )
            return True

        if isinstance(event, (SwapEvent, MintEvent, BurnEvent, UpdatePairEvent)):
            pair = event.metadata.pair
            seq = event.metadata.seq_num
            state = event.state
            await records.insert_pair_state_point(
                PairStatePointDTO(
                    pair_address=pair,
                    seq_num=seq,
                    tx_signature=signature,
                    reserve0=state.reserve0,
                    reserve1=state.reserve1,
                    total_supply=state.total_supply,
                    price0_ema=state.price0_ema,
                    price1_ema=state.price1_ema,
                    rate0=state.rate0,
                    rate1=state.rate1,
                    event_time=event_time,
                )
            )
            if isinstance(event, SwapEvent):
                await records.insert_swap(
                    SwapDTO(
                        pair_address=pair,
                        seq_num=seq,
                        tx_signature=signature,
                        user_address=event.metadata.signer,
                        is_token0_in=event.is_token0_in,
                        amount_in=event.amount_in,
                        amount_out=event.amount_out,
                        fee=event.fee,
                        reserve0=state.reserve0,
                        reserve1=state.reserve1,
                        event_time=event_time,
                    )
                )
                await records.insert_price_point(
                    PricePointDTO(
                        pair_address=pair,
                        seq_num=seq,
                        tx_signature=signature,
                        price0=implied_price(state.reserve1, state.reserve0),
                        price1=implied_price(state.reserve0, state.reserve1),
                        reserve0=state.reserve0,
                        reserve1=state.reserve1,
                        event_time=event_time,
                    )
                )
            elif isinstance(event, (MintEvent, BurnEvent)):
                await records.insert_liquidity_event(
                    LiquidityEventDTO(
                        pair_address=pair,
                        seq_num=seq,
                        tx_signature=signature,
                        user_address=event.metadata.signer,
                        event_type=liquidity_change_type(event).value,
                        amount0=event.amount0,
                        amount1=event.amount1,
                        liquidity=event.liquidity,
                        reserve0=state.reserve0,
                        reserve1=state.reserve1,
                        total_supply=state.total_supply,
                        event_time=event_time,
                    )
                )
            await pairs.ensure(pair)
            return await pairs.apply_state(pair, seq, _pair_state_values(state))

        if isinstance(event, UserPositionUpdatedEvent):
            await positions.ensure(
                event.position,
                pair_address=event.metadata.pair,
                user_address=event.metadata.signer,
            )
            return await positions.apply_state(
                event.position,
                event.metadata.seq_num,
                PositionStateValues(
                    collateral0=event.state.collateral0,
                    collateral1=event.state.collateral1,
                    debt0_shares=event.state.debt0_shares,
                    debt1_shares=event.state.debt1_shares,
                ),
            )

        if isinstance(event, UserPositionLiquidatedEvent):
            await records.insert_liquidation(
                LiquidationDTO(
                    position_address=event.position,
                    seq_num=event.metadata.seq_num,
                    pair_address=event.metadata.pair,
                    tx_signature=signature,
                    liquidator=event.liquidator,
                    collateral0_liquidated=event.collateral0_liquidated,
                    collateral1_liquidated=event.collateral1_liquidated,
                    debt0_liquidated=event.debt0_liquidated,
                    debt1_liquidated=event.debt1_liquidated,
                    collateral_price=event.collateral_price,
                    liquidation_bonus_applied=event.liquidation_bonus_applied,
                    event_time=event_time,
                )
            )
            await positions.ensure(event.position, pair_address=event.metadata.pair, user_address=None)
            return await positions.apply_state(
                event.position,
                event.metadata.seq_num,
                PositionStateValues(
                    collateral0=event.state.collateral0,
                    collateral1=event.state.collateral1,
                    debt0_shares=event.state.debt0_shares,
                    debt1_shares=event.state.debt1_shares,
                ),
                liquidated=True,
            )

        raise TypeError(f"Unhandled event type {type(event).__name__}")
