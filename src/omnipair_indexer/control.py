"""HTTP health and control surface.

Routes:
    GET  /health    200 when every subsystem is healthy, 503 otherwise
    GET  /status    per-address watermark, subscription and last-run details
    POST /backfill  {"address", "from_slot", "to_slot", "reprocess", "batch_size"}
    POST /gap-fill  {"address"}

Job endpoints wait for the run and answer ``{message, error, ...}``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from aiohttp import web

from omnipair_indexer.indexer import UnknownAddressError

if TYPE_CHECKING:
    from omnipair_indexer.indexer import Indexer
    from omnipair_indexer.ingestor.crawler import IngestResult

logger = logging.getLogger(__name__)


class ControlRequestError(ValueError):
    """Raised for a malformed control request body."""


def _optional_int(payload: dict[str, Any], key: str) -> int | None:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ControlRequestError(f"{key} must be an integer")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as e:
        raise ControlRequestError(f"{key} must be an integer") from e
    if parsed < 0:
        raise ControlRequestError(f"{key} must be non-negative")
    return parsed


async def _read_payload(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        payload = await request.json()
    except ValueError as e:
        raise ControlRequestError("invalid json body") from e
    if not isinstance(payload, dict):
        raise ControlRequestError("json body must be an object")
    return payload


def _error_response(message: str, status: int) -> web.Response:
    return web.json_response({"message": message, "error": message}, status=status)


def _result_response(result: IngestResult) -> web.Response:
    return web.json_response(result.to_dict(), status=409 if result.busy else 200)


class ControlServer:
    """aiohttp application exposing indexer health and one-shot jobs."""

    def __init__(self, indexer: Indexer, *, host: str = "0.0.0.0", port: int = 8080) -> None:
        self._indexer = indexer
        self._host = host
        self._port = port
        self._runner: web.AppRunner | None = None

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self.health_handler)
        app.router.add_get("/status", self.status_handler)
        app.router.add_post("/backfill", self.backfill_handler)
        app.router.add_post("/gap-fill", self.gap_fill_handler)
        return app

    async def health_handler(self, request: web.Request) -> web.Response:
        health = self._indexer.health()
        return web.json_response(health, status=200 if health["healthy"] else 503)

    async def status_handler(self, request: web.Request) -> web.Response:
        return web.json_response(await self._indexer.status())

    async def backfill_handler(self, request: web.Request) -> web.Response:
        try:
            payload = await _read_payload(request)
            address = self._address(payload)
            from_slot = _optional_int(payload, "from_slot")
            to_slot = _optional_int(payload, "to_slot")
            batch_size = _optional_int(payload, "batch_size")
            reprocess = payload.get("reprocess", False)
            if not isinstance(reprocess, bool):
                raise ControlRequestError("reprocess must be a boolean")
            if batch_size == 0:
                raise ControlRequestError("batch_size must be positive")
            if from_slot is not None and to_slot is not None and to_slot < from_slot:
                raise ControlRequestError("to_slot must not be below from_slot")
        except ControlRequestError as e:
            return _error_response(str(e), 400)

        try:
            result = await self._indexer.run_backfill(
                address,
                from_slot=from_slot,
                to_slot=to_slot,
                reprocess=reprocess,
                batch_size=batch_size,
            )
        except UnknownAddressError as e:
            return _error_response(str(e), 404)
        return _result_response(result)

    async def gap_fill_handler(self, request: web.Request) -> web.Response:
        try:
            payload = await _read_payload(request)
            address = self._address(payload)
        except ControlRequestError as e:
            return _error_response(str(e), 400)

        try:
            result = await self._indexer.run_gap_fill(address)
        except UnknownAddressError as e:
            return _error_response(str(e), 404)
        return _result_response(result)

    def _address(self, payload: dict[str, Any]) -> str:
        address = payload.get("address")
        if address is None:
            addresses = self._indexer.addresses
            if len(addresses) == 1:
                return addresses[0]
            raise ControlRequestError("address is required")
        if not isinstance(address, str) or not address.strip():
            raise ControlRequestError("address must be a non-empty string")
        return address.strip()

    async def start(self) -> None:
        app = self.create_app()
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, host=self._host, port=self._port)
        await site.start()
        logger.info("Control server listening on %s:%d", self._host, self._port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
