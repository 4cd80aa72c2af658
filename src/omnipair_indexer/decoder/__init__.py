"""Event decoding layer - Omnipair program log events."""

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
    event_to_dict,
)
from omnipair_indexer.decoder.parser import DecodeError, decode, decode_payload, event_discriminator

__all__ = [
    "AdjustCollateralEvent",
    "AdjustDebtEvent",
    "AdjustLiquidityEvent",
    "BurnEvent",
    "DecodeError",
    "Event",
    "EventMetadata",
    "FlashloanEvent",
    "MintEvent",
    "PairCreatedEvent",
    "PairState",
    "PositionState",
    "SwapEvent",
    "UpdatePairEvent",
    "UserPositionCreatedEvent",
    "UserPositionLiquidatedEvent",
    "UserPositionUpdatedEvent",
    "decode",
    "decode_payload",
    "event_discriminator",
    "event_to_dict",
]
