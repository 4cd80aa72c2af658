"""Remote ledger access - Solana RPC signatures and transactions."""

from omnipair_indexer.ledger.client import (
    LedgerClient,
    LedgerClientError,
    RateLimiter,
    TransientLedgerError,
)
from omnipair_indexer.ledger.models import LedgerTransaction, SignatureInfo

__all__ = [
    "LedgerClient",
    "LedgerClientError",
    "LedgerTransaction",
    "RateLimiter",
    "SignatureInfo",
    "TransientLedgerError",
]
