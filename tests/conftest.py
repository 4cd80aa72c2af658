"""Pytest configuration and fixtures."""

from __future__ import annotations

import base64
import struct
from pathlib import Path

import pytest
from solders.pubkey import Pubkey

from omnipair_indexer.decoder import event_discriminator
from omnipair_indexer.ledger.client import TransientLedgerError
from omnipair_indexer.ledger.models import LedgerTransaction, SignatureInfo
from omnipair_indexer.storage.database import DatabaseManager


def address(n: int) -> str:
    """Deterministic base58 address for test accounts."""
    return str(Pubkey.from_bytes(bytes([n]) * 32))


PROGRAM_ID = address(7)
OTHER_PROGRAM_ID = address(8)
PAIR = address(1)
SIGNER = address(2)
TOKEN0 = address(3)
TOKEN1 = address(4)
POSITION = address(5)
LIQUIDATOR = address(6)

DEFAULT_TIMESTAMP = 1_700_000_000


class EventPayloads:
    """Builds raw event payloads and the log lines that carry them."""

    pair = PAIR
    signer = SIGNER
    program_id = PROGRAM_ID
    other_program_id = OTHER_PROGRAM_ID
    token0 = TOKEN0
    token1 = TOKEN1
    position = POSITION
    liquidator = LIQUIDATOR
    timestamp = DEFAULT_TIMESTAMP

    @staticmethod
    def _pubkey(value: str) -> bytes:
        return bytes(Pubkey.from_string(value))

    def _metadata(self, seq_num: int, *, pair: str | None = None, timestamp: int = DEFAULT_TIMESTAMP) -> bytes:
        return (
            self._pubkey(self.signer)
            + self._pubkey(pair or self.pair)
            + struct.pack("<Qq", seq_num, timestamp)
        )

    @staticmethod
    def _pair_state(
        reserve0: int,
        reserve1: int,
        total_supply: int = 1_000,
        price0_ema: int = 0,
        price1_ema: int = 0,
        rate0: int = 0,
        rate1: int = 0,
    ) -> bytes:
        return struct.pack("<7Q", reserve0, reserve1, total_supply, price0_ema, price1_ema, rate0, rate1)

    def swap(
        self,
        seq_num: int,
        *,
        is_token0_in: bool = True,
        amount_in: int = 100,
        amount_out: int = 200,
        fee: int = 1,
        reserve0: int = 1_000,
        reserve1: int = 2_000,
        pair: str | None = None,
        timestamp: int = DEFAULT_TIMESTAMP,
    ) -> bytes:
        return (
            event_discriminator("SwapEvent")
            + struct.pack("<?QQQ", is_token0_in, amount_in, amount_out, fee)
            + self._pair_state(reserve0, reserve1)
            + self._metadata(seq_num, pair=pair, timestamp=timestamp)
        )

    def mint(self, seq_num: int, *, amount0: int = 10, amount1: int = 20, liquidity: int = 5,
             reserve0: int = 1_000, reserve1: int = 2_000) -> bytes:
        return (
            event_discriminator("MintEvent")
            + struct.pack("<QQQ", amount0, amount1, liquidity)
            + self._pair_state(reserve0, reserve1)
            + self._metadata(seq_num)
        )

    def burn(self, seq_num: int, *, amount0: int = 10, amount1: int = 20, liquidity: int = 5,
             reserve0: int = 1_000, reserve1: int = 2_000) -> bytes:
        return (
            event_discriminator("BurnEvent")
            + struct.pack("<QQQ", amount0, amount1, liquidity)
            + self._pair_state(reserve0, reserve1)
            + self._metadata(seq_num)
        )

    def adjust_liquidity(self, seq_num: int, *, amount0: int = 10, amount1: int = 20,
                         liquidity: int = 5) -> bytes:
        return (
            event_discriminator("AdjustLiquidityEvent")
            + struct.pack("<QQQ", amount0, amount1, liquidity)
            + self._metadata(seq_num)
        )

    def update_pair(self, seq_num: int, *, reserve0: int = 1_000, reserve1: int = 2_000,
                    price0_ema: int = 0, rate0: int = 0) -> bytes:
        return (
            event_discriminator("UpdatePairEvent")
            + self._pair_state(reserve0, reserve1, price0_ema=price0_ema, rate0=rate0)
            + self._metadata(seq_num)
        )

    def adjust_collateral(self, seq_num: int, amount0: int, amount1: int = 0) -> bytes:
        return (
            event_discriminator("AdjustCollateralEvent")
            + struct.pack("<qq", amount0, amount1)
            + self._metadata(seq_num)
        )

    def adjust_debt(self, seq_num: int, amount0: int, amount1: int = 0) -> bytes:
        return (
            event_discriminator("AdjustDebtEvent")
            + struct.pack("<qq", amount0, amount1)
            + self._metadata(seq_num)
        )

    def flashloan(self, seq_num: int, *, amount0: int = 1_000, amount1: int = 0,
                  fee0: int = 9, fee1: int = 0) -> bytes:
        return (
            event_discriminator("FlashloanEvent")
            + struct.pack("<QQQQ", amount0, amount1, fee0, fee1)
            + self._pubkey(LIQUIDATOR)
            + self._metadata(seq_num)
        )

    def pair_created(self, *, pair: str | None = None, timestamp: int = DEFAULT_TIMESTAMP) -> bytes:
        return (
            event_discriminator("PairCreatedEvent")
            + self._pubkey(TOKEN0)
            + self._pubkey(TOKEN1)
            + self._pubkey(pair or self.pair)
            + self._pubkey(self.signer)
            + struct.pack("<q", timestamp)
        )

    def position_created(self, *, position: str = POSITION, timestamp: int = DEFAULT_TIMESTAMP) -> bytes:
        return (
            event_discriminator("UserPositionCreatedEvent")
            + self._pubkey(self.signer)
            + self._pubkey(self.pair)
            + self._pubkey(position)
            + struct.pack("<q", timestamp)
        )

    def position_updated(self, seq_num: int, *, collateral0: int = 500, collateral1: int = 0,
                         debt0_shares: int = 0, debt1_shares: int = 100,
                         position: str = POSITION) -> bytes:
        return (
            event_discriminator("UserPositionUpdatedEvent")
            + self._pubkey(position)
            + struct.pack("<4Q", collateral0, collateral1, debt0_shares, debt1_shares)
            + self._metadata(seq_num)
        )

    def position_liquidated(self, seq_num: int, *, position: str = POSITION) -> bytes:
        return (
            event_discriminator("UserPositionLiquidatedEvent")
            + self._pubkey(position)
            + self._pubkey(LIQUIDATOR)
            + struct.pack("<6Q", 400, 0, 0, 90, 2_000, 50)
            + struct.pack("<4Q", 100, 0, 0, 10)
            + self._metadata(seq_num)
        )

    @staticmethod
    def data_line(payload: bytes) -> str:
        return "Program data: " + base64.b64encode(payload).decode()

    def logs(self, *payloads: bytes, program_id: str | None = None) -> list[str]:
        """Log lines of a top-level invocation emitting ``payloads``."""
        program = program_id or self.program_id
        return [
            f"Program {program} invoke [1]",
            "Program log: Instruction: Swap",
            *(self.data_line(p) for p in payloads),
            f"Program {program} consumed 21000 of 200000 compute units",
            f"Program {program} success",
        ]


class FakeLedger:
    """In-memory signature index and transaction store.

    ``history`` is kept oldest first; pages are served newest first like the
    RPC node does.
    """

    def __init__(self) -> None:
        self.history: list[SignatureInfo] = []
        self.transactions: dict[str, LedgerTransaction] = {}
        self.failing: set[str] = set()
        self.missing: set[str] = set()
        self.fail_pages = False
        self.page_calls: list[dict[str, object]] = []
        self.fetched: list[str] = []
        self.closed = False

    def add(self, signature: str, slot: int, logs: list[str], *, err: object = None,
            block_time: int | None = DEFAULT_TIMESTAMP) -> None:
        self.history.append(SignatureInfo(signature=signature, slot=slot, block_time=block_time, err=err))
        self.transactions[signature] = LedgerTransaction(
            signature=signature,
            slot=slot,
            block_time=block_time,
            log_messages=tuple(logs),
            err=err,
        )

    async def get_signatures(
        self,
        address: str,
        *,
        before: str | None = None,
        until: str | None = None,
        limit: int = 1000,
    ) -> list[SignatureInfo]:
        self.page_calls.append({"address": address, "before": before, "until": until, "limit": limit})
        if self.fail_pages:
            raise TransientLedgerError("getSignaturesForAddress timed out")
        newest_first = list(reversed(self.history))
        if before is not None:
            index = [i.signature for i in newest_first].index(before)
            newest_first = newest_first[index + 1 :]
        page: list[SignatureInfo] = []
        for info in newest_first:
            if until is not None and info.signature == until:
                break
            page.append(info)
            if len(page) == limit:
                break
        return page

    async def get_transaction(self, signature: str) -> LedgerTransaction | None:
        self.fetched.append(signature)
        if signature in self.failing:
            raise TransientLedgerError(f"getTransaction {signature} timed out")
        if signature in self.missing:
            return None
        return self.transactions.get(signature)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def payloads() -> EventPayloads:
    """Event payload builder for the default test pair."""
    return EventPayloads()


@pytest.fixture
def fake_ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
async def db(tmp_path: Path):
    """File-backed SQLite database with the schema created."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'indexer.db'}")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()
