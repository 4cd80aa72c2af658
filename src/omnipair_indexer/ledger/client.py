"""Solana RPC client with rate limiting and caching.

This module provides the ledger client the crawler and live subscriber use
to page the signature index and fetch transaction logs, with:
- Rate limiting to respect provider limits
- A finite timeout on every call
- Optional Redis caching of fetched transactions (immutable once confirmed)

There is no inline retry: failures surface as ``TransientLedgerError`` and
the signature is picked up again by the next scheduled gap fill.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any

from redis.asyncio import Redis
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.core import RPCException
from solders.pubkey import Pubkey
from solders.signature import Signature

from omnipair_indexer.ledger.models import LedgerTransaction, SignatureInfo

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 24 * 3600
DEFAULT_MAX_REQUESTS_PER_SECOND = 10
DEFAULT_REQUEST_TIMEOUT = 30.0
MAX_SIGNATURES_PER_PAGE = 1000


class LedgerClientError(Exception):
    """Base exception for ledger client errors."""


class TransientLedgerError(LedgerClientError):
    """Raised on timeouts, rate limiting, transport and RPC errors.

    Callers skip the affected page or transaction and leave it for the next
    scheduled gap fill.
    """


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


class LedgerClient:
    """Solana ledger client with caching and rate limiting.

    Example:
        ```python
        client = LedgerClient("https://api.mainnet-beta.solana.com")
        page = await client.get_signatures(program_id, limit=1000)
        tx = await client.get_transaction(page[0].signature)
        await client.close()
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        commitment: str = "confirmed",
        redis: Redis | None = None,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        rpc: AsyncClient | None = None,
    ) -> None:
        """Initialize the ledger client.

        Args:
            rpc_url: Solana JSON-RPC HTTP endpoint.
            commitment: Commitment level for all reads.
            redis: Optional Redis client for caching fetched transactions.
            cache_ttl_seconds: Cache TTL in seconds.
            max_requests_per_second: Rate limit for RPC calls.
            request_timeout: Timeout in seconds applied to every call.
            rpc: Pre-built AsyncClient (for tests).
        """
        self._rpc_url = rpc_url
        self._commitment = Commitment(commitment)
        self._redis = redis
        self._cache_ttl = cache_ttl_seconds
        self._timeout = request_timeout
        self._rpc = rpc or AsyncClient(rpc_url, commitment=self._commitment, timeout=request_timeout)
        self._rate_limiter = RateLimiter.create(max_requests_per_second)
        self._cache_prefix = "omnipair:tx:"

    def _cache_key(self, signature: str) -> str:
        return f"{self._cache_prefix}{signature}"

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=self._cache_ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    async def _call(self, method: str, coro: Any) -> Any:
        """Await one RPC call under the rate limit and timeout.

        Raises:
            TransientLedgerError: On timeout, transport or RPC error.
        """
        await self._rate_limiter.acquire()
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout)
        except TimeoutError as e:
            raise TransientLedgerError(f"{method} timed out after {self._timeout}s") from e
        except (SolanaRpcException, RPCException) as e:
            raise TransientLedgerError(f"{method} failed: {e}") from e

    async def get_signatures(
        self,
        address: str,
        *,
        before: str | None = None,
        until: str | None = None,
        limit: int = MAX_SIGNATURES_PER_PAGE,
    ) -> list[SignatureInfo]:
        """Fetch one page of the signature index for ``address``, newest first.

        Args:
            address: Account or program address.
            before: Start searching backwards from this signature (exclusive).
            until: Stop when this signature is reached (exclusive).
            limit: Page size, at most 1000.
        """
        resp = await self._call(
            "getSignaturesForAddress",
            self._rpc.get_signatures_for_address(
                Pubkey.from_string(address),
                before=Signature.from_string(before) if before else None,
                until=Signature.from_string(until) if until else None,
                limit=min(limit, MAX_SIGNATURES_PER_PAGE),
                commitment=self._commitment,
            ),
        )
        return [
            SignatureInfo(
                signature=str(item.signature),
                slot=item.slot,
                block_time=item.block_time,
                err=item.err,
            )
            for item in resp.value or []
        ]

    async def get_transaction(self, signature: str) -> LedgerTransaction | None:
        """Fetch a transaction's logs and status.

        Returns:
            The transaction, or None if the node does not (yet) know it.
        """
        key = self._cache_key(signature)
        cached = await self._get_cached(key)
        if cached is not None:
            return LedgerTransaction.from_dict(json.loads(cached))

        resp = await self._call(
            "getTransaction",
            self._rpc.get_transaction(
                Signature.from_string(signature),
                encoding="json",
                commitment=self._commitment,
                max_supported_transaction_version=0,
            ),
        )
        value = resp.value
        if value is None:
            return None

        meta = value.transaction.meta
        tx = LedgerTransaction(
            signature=signature,
            slot=value.slot,
            block_time=value.block_time,
            log_messages=tuple(meta.log_messages or ()) if meta else (),
            err=meta.err if meta else None,
        )
        await self._set_cached(key, json.dumps(tx.to_dict()))
        return tx

    async def close(self) -> None:
        await self._rpc.close()
