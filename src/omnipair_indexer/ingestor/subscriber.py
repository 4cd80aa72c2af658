"""Live log subscription over the Solana JSON-RPC websocket.

``LogSubscriber`` owns the transport: it issues ``logsSubscribe`` with a
``mentions`` filter for one address and reconnects with exponential backoff
when the connection drops. ``LiveTransactionHandler`` turns each notification
into a fetch + decode + process, with a bounded number in flight.

The live path never advances the watermark; the periodic gap fill reconciles
anything it misses.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import websockets
from websockets.asyncio.client import ClientConnection

from omnipair_indexer.ledger.client import TransientLedgerError

if TYPE_CHECKING:
    from omnipair_indexer.ingestor.processor import ProcessResult, TransactionProcessor
    from omnipair_indexer.ledger.client import LedgerClient

logger = logging.getLogger(__name__)

DEFAULT_PING_INTERVAL = 30  # seconds
DEFAULT_MAX_RECONNECT_DELAY = 30  # seconds
DEFAULT_INITIAL_RECONNECT_DELAY = 1  # seconds
DEFAULT_LIVE_FETCH_DELAY_SECONDS = 1.5
DEFAULT_MAX_IN_FLIGHT = 50


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass
class StreamStats:
    notifications_received: int = 0
    reconnect_count: int = 0
    last_message_time: float | None = None
    connected_since: float | None = None
    last_error: str | None = None


class SubscriptionError(Exception):
    """Base exception for log subscription errors."""


class SubscriptionConnectionError(SubscriptionError):
    """Raised when connecting or subscribing fails."""


@dataclass(frozen=True)
class LogNotification:
    """One ``logsNotification`` payload."""

    signature: str
    slot: int
    logs: tuple[str, ...] = field(default_factory=tuple)
    err: Any = None

    @classmethod
    def from_message(cls, data: dict[str, Any]) -> LogNotification:
        result = data["params"]["result"]
        value = result["value"]
        return cls(
            signature=str(value["signature"]),
            slot=int(result["context"]["slot"]),
            logs=tuple(value.get("logs") or ()),
            err=value.get("err"),
        )


NotificationCallback = Callable[[LogNotification], Awaitable[None]]
StateCallback = Callable[[ConnectionState], Awaitable[None]]


class LogSubscriber:
    """WebSocket client for ``logsSubscribe`` on one address."""

    def __init__(
        self,
        *,
        ws_url: str,
        address: str,
        commitment: str = "confirmed",
        on_notification: NotificationCallback | None = None,
        on_state_change: StateCallback | None = None,
        ping_interval: int = DEFAULT_PING_INTERVAL,
        max_reconnect_delay: int = DEFAULT_MAX_RECONNECT_DELAY,
        initial_reconnect_delay: int = DEFAULT_INITIAL_RECONNECT_DELAY,
    ) -> None:
        self._ws_url = ws_url
        self._address = address
        self._commitment = commitment
        self._on_notification = on_notification
        self._on_state_change = on_state_change
        self._ping_interval = ping_interval
        self._max_reconnect_delay = max_reconnect_delay
        self._initial_reconnect_delay = initial_reconnect_delay

        self._state = ConnectionState.DISCONNECTED
        self._stats = StreamStats()

        self._ws: ClientConnection | None = None
        self._subscription_id: int | None = None
        self._running = False
        self._stop_event: asyncio.Event | None = None
        self._request_id = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def stats(self) -> StreamStats:
        return self._stats

    @property
    def address(self) -> str:
        return self._address

    async def _set_state(self, new_state: ConnectionState) -> None:
        if self._state != new_state:
            old = self._state
            self._state = new_state
            logger.info("Log subscription %s state: %s -> %s", self._address, old.value, new_state.value)
            if self._on_state_change:
                try:
                    await self._on_state_change(new_state)
                except Exception as e:  # pragma: no cover
                    logger.error("Error in state change callback: %s", e)

    def _next_request_id(self) -> int:
        self._request_id += 1
        return self._request_id

    async def _connect(self) -> ClientConnection:
        await self._set_state(ConnectionState.CONNECTING)
        try:
            ws = await websockets.connect(
                self._ws_url,
                ping_interval=self._ping_interval,
                ping_timeout=self._ping_interval * 2,
            )
        except Exception as e:
            self._stats.last_error = str(e)
            raise SubscriptionConnectionError(f"Failed to connect to {self._ws_url}: {e}") from e

        request = {
            "jsonrpc": "2.0",
            "id": self._next_request_id(),
            "method": "logsSubscribe",
            "params": [{"mentions": [self._address]}, {"commitment": self._commitment}],
        }
        await ws.send(json.dumps(request))

        await self._set_state(ConnectionState.CONNECTED)
        self._stats.connected_since = time.time()
        logger.info("Subscribed to logs mentioning %s via %s", self._address, self._ws_url)
        return ws

    async def _handle_message(self, message: str) -> None:
        try:
            data = json.loads(message)
        except json.JSONDecodeError:  # pragma: no cover
            logger.warning("Invalid JSON message on log subscription")
            return

        if "error" in data:
            raise SubscriptionError(f"Subscription rejected: {data['error']}")

        if "result" in data and "id" in data:
            self._subscription_id = int(data["result"])
            logger.debug("Log subscription %s id=%s", self._address, self._subscription_id)
            return

        if data.get("method") != "logsNotification":
            logger.debug("Ignoring message method=%r", data.get("method"))
            return

        try:
            notification = LogNotification.from_message(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Failed to parse logsNotification: %s", e)
            return

        self._stats.notifications_received += 1
        self._stats.last_message_time = time.time()
        if self._on_notification:
            await self._on_notification(notification)

    async def _listen(self, ws: ClientConnection) -> None:
        try:
            while self._running:
                try:
                    message = await asyncio.wait_for(ws.recv(), timeout=1.0)
                except TimeoutError:
                    continue

                if isinstance(message, str):
                    await self._handle_message(message)
                else:
                    logger.debug("Ignoring non-text log subscription message")
        except websockets.ConnectionClosed as e:
            logger.warning("Log subscription connection closed: %s", e)
            raise

    async def _unsubscribe(self) -> None:
        if self._ws is None or self._subscription_id is None:
            return
        request = {
            "jsonrpc": "2.0",
            "id": self._next_request_id(),
            "method": "logsUnsubscribe",
            "params": [self._subscription_id],
        }
        with contextlib.suppress(Exception):
            await self._ws.send(json.dumps(request))
        self._subscription_id = None

    async def start(self) -> None:
        """Subscribe and deliver notifications until ``stop()``; reconnects on drops."""
        if self._running:
            raise RuntimeError("Log subscription already running")
        self._running = True
        self._stop_event = asyncio.Event()

        delay = self._initial_reconnect_delay
        while self._running and self._stop_event and not self._stop_event.is_set():
            try:
                self._ws = await self._connect()
                delay = self._initial_reconnect_delay
                await self._listen(self._ws)
            except Exception as e:
                if not self._running:
                    break
                self._stats.reconnect_count += 1
                self._stats.last_error = str(e)
                await self._set_state(ConnectionState.RECONNECTING)
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                delay = min(self._max_reconnect_delay, delay * 2)
            finally:
                with contextlib.suppress(Exception):
                    if self._ws:
                        await self._ws.close()
                self._ws = None
                self._subscription_id = None

        await self._set_state(ConnectionState.DISCONNECTED)

    async def stop(self) -> None:
        self._running = False
        if self._stop_event:
            self._stop_event.set()
        await self._unsubscribe()
        if self._ws:
            with contextlib.suppress(Exception):
                await self._ws.close()


@dataclass
class LiveStats:
    handled: int = 0
    failed: int = 0
    last_signature: str | None = None
    last_error: str | None = None


class LiveTransactionHandler:
    """Fetches and processes transactions announced by a ``LogSubscriber``.

    Each notification waits ``fetch_delay_seconds`` so the RPC node serving
    ``getTransaction`` has caught up with the one that pushed the logs.
    """

    def __init__(
        self,
        address: str,
        *,
        ledger: LedgerClient,
        processor: TransactionProcessor,
        fetch_delay_seconds: float = DEFAULT_LIVE_FETCH_DELAY_SECONDS,
        max_in_flight: int = DEFAULT_MAX_IN_FLIGHT,
    ) -> None:
        self.address = address
        self._ledger = ledger
        self._processor = processor
        self._fetch_delay = fetch_delay_seconds
        self._slots = asyncio.Semaphore(max_in_flight)
        self._tasks: set[asyncio.Task[None]] = set()
        self._stats = LiveStats()

    @property
    def stats(self) -> LiveStats:
        return self._stats

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def on_notification(self, notification: LogNotification) -> None:
        """Schedule handling; blocks the subscriber only when the in-flight bound is hit."""
        await self._slots.acquire()
        task = asyncio.create_task(self._handle(notification))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        self._slots.release()

    async def _handle(self, notification: LogNotification) -> None:
        try:
            if self._fetch_delay:
                await asyncio.sleep(self._fetch_delay)
            tx = await self._ledger.get_transaction(notification.signature)
            if tx is None:
                # Left for the next gap fill.
                logger.warning("Live transaction %s not yet available", notification.signature)
                self._stats.failed += 1
                return
            result: ProcessResult = await self._processor.process_transaction(tx, self.address)
            self._stats.handled += 1
            self._stats.last_signature = notification.signature
            if not result.ok:
                self._stats.failed += 1
        except TransientLedgerError as e:
            self._stats.failed += 1
            self._stats.last_error = str(e)
            logger.warning("Live fetch of %s failed: %s", notification.signature, e)
        except Exception as e:
            self._stats.failed += 1
            self._stats.last_error = str(e)
            logger.error("Live processing of %s failed: %s", notification.signature, e)

    async def drain(self) -> None:
        """Wait for in-flight notifications to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
