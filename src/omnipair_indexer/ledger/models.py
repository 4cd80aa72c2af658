"""Data models for the ledger module."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


@dataclass(frozen=True)
class SignatureInfo:
    """One entry of a signature index page, newest-first on the wire."""

    signature: str
    slot: int
    block_time: int | None = None
    err: Any = None

    @property
    def failed(self) -> bool:
        return self.err is not None


@dataclass(frozen=True)
class LedgerTransaction:
    """A fetched transaction reduced to what the indexer consumes."""

    signature: str
    slot: int
    block_time: int | None
    log_messages: tuple[str, ...] = field(default_factory=tuple)
    err: Any = None

    @property
    def failed(self) -> bool:
        return self.err is not None

    @property
    def block_datetime(self) -> datetime | None:
        if self.block_time is None:
            return None
        return datetime.fromtimestamp(self.block_time, tz=UTC)

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature": self.signature,
            "slot": self.slot,
            "block_time": self.block_time,
            "log_messages": list(self.log_messages),
            "err": None if self.err is None else str(self.err),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LedgerTransaction:
        return cls(
            signature=str(data["signature"]),
            slot=int(data["slot"]),
            block_time=int(data["block_time"]) if data.get("block_time") is not None else None,
            log_messages=tuple(str(m) for m in data.get("log_messages") or ()),
            err=data.get("err"),
        )
