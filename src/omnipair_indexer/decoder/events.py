"""Decoded Omnipair program events.

Every variant is a frozen dataclass carrying the fields of its on-chain
layout plus ``log_index``, the position of the source ``Program data:`` line
within the transaction. Variants expose a uniform view for the processor:

- ``target_entity``: the address of the pair or position the event is about
- ``actor``: the signer or user address, if the event carries one
- ``seq_num``: the producer-assigned sequence number scoped to ``target_entity``

Pair and position mutating variants carry the *post-event* state of their
entity, so applying the highest sequence number seen is order-independent.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, ClassVar


@dataclass(frozen=True)
class EventMetadata:
    """Common trailer of every metadata-bearing event."""

    signer: str
    pair: str
    seq_num: int
    timestamp: int


@dataclass(frozen=True)
class PairState:
    """Pair state after the event was applied on-chain."""

    reserve0: int
    reserve1: int
    total_supply: int
    price0_ema: int
    price1_ema: int
    rate0: int
    rate1: int


@dataclass(frozen=True)
class _MetadataEvent:
    metadata: EventMetadata
    log_index: int

    @property
    def target_entity(self) -> str:
        return self.metadata.pair

    @property
    def actor(self) -> str | None:
        return self.metadata.signer

    @property
    def seq_num(self) -> int | None:
        return self.metadata.seq_num

    @property
    def timestamp(self) -> int:
        return self.metadata.timestamp

    @property
    def pair_address(self) -> str:
        return self.metadata.pair


@dataclass(frozen=True)
class PairCreatedEvent:
    name: ClassVar[str] = "PairCreatedEvent"

    token0: str
    token1: str
    pair: str
    creator: str
    timestamp: int
    log_index: int

    @property
    def target_entity(self) -> str:
        return self.pair

    @property
    def actor(self) -> str | None:
        return self.creator

    @property
    def seq_num(self) -> int | None:
        return None

    @property
    def pair_address(self) -> str:
        return self.pair


@dataclass(frozen=True)
class SwapEvent(_MetadataEvent):
    name: ClassVar[str] = "SwapEvent"

    is_token0_in: bool
    amount_in: int
    amount_out: int
    fee: int
    state: PairState


@dataclass(frozen=True)
class MintEvent(_MetadataEvent):
    name: ClassVar[str] = "MintEvent"

    amount0: int
    amount1: int
    liquidity: int
    state: PairState


@dataclass(frozen=True)
class BurnEvent(_MetadataEvent):
    name: ClassVar[str] = "BurnEvent"

    amount0: int
    amount1: int
    liquidity: int
    state: PairState


@dataclass(frozen=True)
class AdjustLiquidityEvent(_MetadataEvent):
    """Liquidity change reported without the resulting pair state."""

    name: ClassVar[str] = "AdjustLiquidityEvent"

    amount0: int
    amount1: int
    liquidity: int


@dataclass(frozen=True)
class UpdatePairEvent(_MetadataEvent):
    name: ClassVar[str] = "UpdatePairEvent"

    state: PairState


@dataclass(frozen=True)
class AdjustCollateralEvent(_MetadataEvent):
    name: ClassVar[str] = "AdjustCollateralEvent"

    amount0: int
    amount1: int


@dataclass(frozen=True)
class AdjustDebtEvent(_MetadataEvent):
    name: ClassVar[str] = "AdjustDebtEvent"

    amount0: int
    amount1: int


@dataclass(frozen=True)
class FlashloanEvent(_MetadataEvent):
    name: ClassVar[str] = "FlashloanEvent"

    amount0: int
    amount1: int
    fee0: int
    fee1: int
    receiver: str


@dataclass(frozen=True)
class UserPositionCreatedEvent:
    name: ClassVar[str] = "UserPositionCreatedEvent"

    user: str
    pair: str
    position: str
    timestamp: int
    log_index: int

    @property
    def target_entity(self) -> str:
        return self.position

    @property
    def actor(self) -> str | None:
        return self.user

    @property
    def seq_num(self) -> int | None:
        return None

    @property
    def pair_address(self) -> str:
        return self.pair


@dataclass(frozen=True)
class PositionState:
    """Position balances after the event was applied on-chain."""

    collateral0: int
    collateral1: int
    debt0_shares: int
    debt1_shares: int


@dataclass(frozen=True)
class UserPositionUpdatedEvent(_MetadataEvent):
    """Position mutation; ``seq_num`` is scoped to the position."""

    name: ClassVar[str] = "UserPositionUpdatedEvent"

    position: str
    state: PositionState

    @property
    def target_entity(self) -> str:
        return self.position


@dataclass(frozen=True)
class UserPositionLiquidatedEvent(_MetadataEvent):
    """Liquidation of a position; ``seq_num`` is scoped to the position."""

    name: ClassVar[str] = "UserPositionLiquidatedEvent"

    position: str
    liquidator: str
    collateral0_liquidated: int
    collateral1_liquidated: int
    debt0_liquidated: int
    debt1_liquidated: int
    collateral_price: int
    liquidation_bonus_applied: int
    state: PositionState

    @property
    def target_entity(self) -> str:
        return self.position


Event = (
    PairCreatedEvent
    | SwapEvent
    | MintEvent
    | BurnEvent
    | AdjustLiquidityEvent
    | UpdatePairEvent
    | AdjustCollateralEvent
    | AdjustDebtEvent
    | FlashloanEvent
    | UserPositionCreatedEvent
    | UserPositionUpdatedEvent
    | UserPositionLiquidatedEvent
)


def event_to_dict(event: Event) -> dict[str, Any]:
    """Flatten an event into a JSON-serializable dict, tagged with its name.

    u64 amounts may exceed the range of JSON consumers' doubles, so integers
    are emitted as strings.
    """

    def _convert(value: Any) -> Any:
        if isinstance(value, bool):
            return value
        if isinstance(value, int):
            return str(value)
        if isinstance(value, dict):
            return {k: _convert(v) for k, v in value.items()}
        return value

    data = _convert(dataclasses.asdict(event))
    data["event"] = event.name
    data["log_index"] = event.log_index
    return data
