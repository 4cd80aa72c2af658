"""Binary log event decoder.

Omnipair emits events through ``sol_log_data``, which surface in transaction
logs as ``Program data: <base64>`` lines. Each payload starts with an 8-byte
Anchor discriminator (``sha256("event:" + name)[:8]``) followed by a fixed
little-endian layout.

Decoding is pure: no I/O, and a malformed line never prevents the remaining
lines of the transaction from being decoded.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import re
import struct
from collections.abc import Callable, Iterable

from solders.pubkey import Pubkey

from omnipair_indexer.decoder.events import (
    AdjustCollateralEvent,
    AdjustDebtEvent,
    AdjustLiquidityEvent,
    BurnEvent,
    Event,
    EventMetadata,
    FlashloanEvent,
    MintEvent,
    PairCreatedEvent,
    PairState,
    PositionState,
    SwapEvent,
    UpdatePairEvent,
    UserPositionCreatedEvent,
    UserPositionLiquidatedEvent,
    UserPositionUpdatedEvent,
)

logger = logging.getLogger(__name__)

DISCRIMINATOR_SIZE = 8
PUBKEY_SIZE = 32

PROGRAM_DATA_PREFIX = "Program data: "
_INVOKE_RE = re.compile(r"^Program (\S+) invoke \[\d+\]$")
_EXIT_RE = re.compile(r"^Program (\S+) (?:success|failed\b.*)$")


class DecodeError(Exception):
    """Raised when an event payload does not match its layout."""


def event_discriminator(name: str) -> bytes:
    """Anchor event discriminator for an event struct name."""
    return hashlib.sha256(f"event:{name}".encode()).digest()[:DISCRIMINATOR_SIZE]


class _Reader:
    """Cursor over a little-endian event payload."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._offset = 0

    def _take(self, size: int) -> bytes:
        end = self._offset + size
        if end > len(self._data):
            raise DecodeError(
                f"payload truncated: need {end} bytes, have {len(self._data)}"
            )
        chunk = self._data[self._offset : end]
        self._offset = end
        return chunk

    def pubkey(self) -> str:
        return str(Pubkey.from_bytes(self._take(PUBKEY_SIZE)))

    def u64(self) -> int:
        return struct.unpack("<Q", self._take(8))[0]

    def i64(self) -> int:
        return struct.unpack("<q", self._take(8))[0]

    def bool_(self) -> bool:
        return self._take(1)[0] != 0

    def metadata(self) -> EventMetadata:
        return EventMetadata(
            signer=self.pubkey(),
            pair=self.pubkey(),
            seq_num=self.u64(),
            timestamp=self.i64(),
        )

    def pair_state(self) -> PairState:
        return PairState(
            reserve0=self.u64(),
            reserve1=self.u64(),
            total_supply=self.u64(),
            price0_ema=self.u64(),
            price1_ema=self.u64(),
            rate0=self.u64(),
            rate1=self.u64(),
        )

    def position_state(self) -> PositionState:
        return PositionState(
            collateral0=self.u64(),
            collateral1=self.u64(),
            debt0_shares=self.u64(),
            debt1_shares=self.u64(),
        )


def _read_pair_created(r: _Reader, log_index: int) -> Event:
    return PairCreatedEvent(
        token0=r.pubkey(),
        token1=r.pubkey(),
        pair=r.pubkey(),
        creator=r.pubkey(),
        timestamp=r.i64(),
        log_index=log_index,
    )


def _read_swap(r: _Reader, log_index: int) -> Event:
    is_token0_in = r.bool_()
    amount_in = r.u64()
    amount_out = r.u64()
    fee = r.u64()
    state = r.pair_state()
    return SwapEvent(
        is_token0_in=is_token0_in,
        amount_in=amount_in,
        amount_out=amount_out,
        fee=fee,
        state=state,
        metadata=r.metadata(),
        log_index=log_index,
    )


def _read_mint(r: _Reader, log_index: int) -> Event:
    amount0, amount1, liquidity = r.u64(), r.u64(), r.u64()
    state = r.pair_state()
    return MintEvent(
        amount0=amount0,
        amount1=amount1,
        liquidity=liquidity,
        state=state,
        metadata=r.metadata(),
        log_index=log_index,
    )


def _read_burn(r: _Reader, log_index: int) -> Event:
    amount0, amount1, liquidity = r.u64(), r.u64(), r.u64()
    state = r.pair_state()
    return BurnEvent(
        amount0=amount0,
        amount1=amount1,
        liquidity=liquidity,
        state=state,
        metadata=r.metadata(),
        log_index=log_index,
    )


def _read_adjust_liquidity(r: _Reader, log_index: int) -> Event:
    amount0, amount1, liquidity = r.u64(), r.u64(), r.u64()
    return AdjustLiquidityEvent(
        amount0=amount0,
        amount1=amount1,
        liquidity=liquidity,
        metadata=r.metadata(),
        log_index=log_index,
    )


def _read_update_pair(r: _Reader, log_index: int) -> Event:
    state = r.pair_state()
    return UpdatePairEvent(state=state, metadata=r.metadata(), log_index=log_index)


def _read_adjust_collateral(r: _Reader, log_index: int) -> Event:
    amount0, amount1 = r.i64(), r.i64()
    return AdjustCollateralEvent(
        amount0=amount0, amount1=amount1, metadata=r.metadata(), log_index=log_index
    )


def _read_adjust_debt(r: _Reader, log_index: int) -> Event:
    amount0, amount1 = r.i64(), r.i64()
    return AdjustDebtEvent(
        amount0=amount0, amount1=amount1, metadata=r.metadata(), log_index=log_index
    )


def _read_flashloan(r: _Reader, log_index: int) -> Event:
    amount0, amount1, fee0, fee1 = r.u64(), r.u64(), r.u64(), r.u64()
    receiver = r.pubkey()
    return FlashloanEvent(
        amount0=amount0,
        amount1=amount1,
        fee0=fee0,
        fee1=fee1,
        receiver=receiver,
        metadata=r.metadata(),
        log_index=log_index,
    )


def _read_position_created(r: _Reader, log_index: int) -> Event:
    return UserPositionCreatedEvent(
        user=r.pubkey(),
        pair=r.pubkey(),
        position=r.pubkey(),
        timestamp=r.i64(),
        log_index=log_index,
    )


def _read_position_updated(r: _Reader, log_index: int) -> Event:
    position = r.pubkey()
    state = r.position_state()
    return UserPositionUpdatedEvent(
        position=position, state=state, metadata=r.metadata(), log_index=log_index
    )


def _read_position_liquidated(r: _Reader, log_index: int) -> Event:
    position = r.pubkey()
    liquidator = r.pubkey()
    collateral0_liquidated = r.u64()
    collateral1_liquidated = r.u64()
    debt0_liquidated = r.u64()
    debt1_liquidated = r.u64()
    collateral_price = r.u64()
    liquidation_bonus_applied = r.u64()
    state = r.position_state()
    return UserPositionLiquidatedEvent(
        position=position,
        liquidator=liquidator,
        collateral0_liquidated=collateral0_liquidated,
        collateral1_liquidated=collateral1_liquidated,
        debt0_liquidated=debt0_liquidated,
        debt1_liquidated=debt1_liquidated,
        collateral_price=collateral_price,
        liquidation_bonus_applied=liquidation_bonus_applied,
        state=state,
        metadata=r.metadata(),
        log_index=log_index,
    )


EventReader = Callable[[_Reader, int], Event]

# Extension point: register new variants here.
_READERS: dict[bytes, EventReader] = {
    event_discriminator(event_type.name): reader
    for event_type, reader in (
        (PairCreatedEvent, _read_pair_created),
        (SwapEvent, _read_swap),
        (MintEvent, _read_mint),
        (BurnEvent, _read_burn),
        (AdjustLiquidityEvent, _read_adjust_liquidity),
        (UpdatePairEvent, _read_update_pair),
        (AdjustCollateralEvent, _read_adjust_collateral),
        (AdjustDebtEvent, _read_adjust_debt),
        (FlashloanEvent, _read_flashloan),
        (UserPositionCreatedEvent, _read_position_created),
        (UserPositionUpdatedEvent, _read_position_updated),
        (UserPositionLiquidatedEvent, _read_position_liquidated),
    )
}


def decode_payload(payload: bytes, log_index: int) -> Event | None:
    """Decode one raw event payload.

    Returns:
        The decoded event, or None when the discriminator is unknown.

    Raises:
        DecodeError: If the payload is shorter than the variant's layout.
    """
    if len(payload) < DISCRIMINATOR_SIZE:
        raise DecodeError(f"payload of {len(payload)} bytes has no discriminator")
    reader = _READERS.get(payload[:DISCRIMINATOR_SIZE])
    if reader is None:
        return None
    return reader(_Reader(payload[DISCRIMINATOR_SIZE:]), log_index)


def _program_data_lines(log_lines: Iterable[str], source_address: str) -> Iterable[tuple[int, str]]:
    """Yield (line index, base64 payload) for data emitted by ``source_address``.

    Invocation depth is tracked so that data logged by other programs invoked
    through CPI is not attributed to the watched program.
    """
    stack: list[str] = []
    for index, line in enumerate(log_lines):
        invoke = _INVOKE_RE.match(line)
        if invoke:
            stack.append(invoke.group(1))
            continue
        exit_ = _EXIT_RE.match(line)
        if exit_:
            if stack and stack[-1] == exit_.group(1):
                stack.pop()
            continue
        if line.startswith(PROGRAM_DATA_PREFIX) and stack and stack[-1] == source_address:
            yield index, line[len(PROGRAM_DATA_PREFIX) :].strip()


def decode(log_lines: Iterable[str], source_address: str) -> list[Event]:
    """Decode all events emitted by ``source_address`` in a transaction's logs.

    Args:
        log_lines: The transaction's log messages, in order.
        source_address: The watched program id.

    Returns:
        Decoded events in log order. Lines with unknown discriminators or
        malformed payloads are skipped.
    """
    events: list[Event] = []
    for index, encoded in _program_data_lines(log_lines, source_address):
        try:
            payload = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            logger.warning("Skipping undecodable program data at line %d: %s", index, e)
            continue

        try:
            event = decode_payload(payload, index)
        except DecodeError as e:
            logger.warning("Skipping malformed event at line %d: %s", index, e)
            continue

        if event is None:
            logger.debug(
                "Skipping unknown event discriminator %s at line %d",
                payload[:DISCRIMINATOR_SIZE].hex(),
                index,
            )
            continue
        events.append(event)
    return events
