"""Command line entry point: ``python -m omnipair_indexer <command>``."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys

from omnipair_indexer.config import Settings, get_settings
from omnipair_indexer.control import ControlServer
from omnipair_indexer.indexer import Indexer, UnknownAddressError
from omnipair_indexer.ingestor.crawler import IngestResult
from omnipair_indexer.storage.database import DatabaseManager

logger = logging.getLogger("omnipair_indexer")


async def _run(settings: Settings) -> None:
    indexer = Indexer(settings)
    control = ControlServer(indexer, host=settings.control_host, port=settings.control_port)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, indexer.request_stop)

    await control.start()
    try:
        await indexer.run()
    finally:
        await control.stop()


async def _one_shot(settings: Settings, args: argparse.Namespace) -> list[IngestResult]:
    indexer = Indexer(settings, live=False)
    addresses = [args.address] if args.address else list(indexer.addresses)
    results: list[IngestResult] = []
    try:
        for address in addresses:
            if args.command == "backfill":
                result = await indexer.run_backfill(
                    address,
                    from_slot=args.from_slot,
                    to_slot=args.to_slot,
                    reprocess=args.reprocess,
                    batch_size=args.batch_size,
                )
            else:
                result = await indexer.run_gap_fill(address)
            results.append(result)
    finally:
        await indexer.close()
    return results


async def _init_db(settings: Settings) -> None:
    db = DatabaseManager(settings.database.url)
    try:
        await db.init_schema_async()
    finally:
        await db.dispose_async()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="omnipair-indexer", description="Omnipair ledger indexer")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Backfill, subscribe and gap-fill until interrupted")

    backfill_parser = sub.add_parser("backfill", help="Run one backfill pass")
    backfill_parser.add_argument("--address", type=str, default=None, help="Watched address (default: all)")
    backfill_parser.add_argument("--from-slot", type=int, default=None)
    backfill_parser.add_argument("--to-slot", type=int, default=None)
    backfill_parser.add_argument("--batch-size", type=int, default=None)
    backfill_parser.add_argument(
        "--reprocess", action="store_true", help="Ignore the watermark and walk all history"
    )

    gap_parser = sub.add_parser("gap-fill", help="Run one gap fill pass")
    gap_parser.add_argument("--address", type=str, default=None, help="Watched address (default: all)")

    sub.add_parser("init-db", help="Create tables directly (development only; use alembic otherwise)")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()

    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        settings.validate_requirements(command=args.command)
    except ValueError as e:
        logger.error("%s", e)
        return 2
    logger.info("Settings: %s", settings.redacted_summary())

    if args.command == "run":
        asyncio.run(_run(settings))
        return 0

    if args.command == "init-db":
        asyncio.run(_init_db(settings))
        logger.info("Database schema created")
        return 0

    try:
        results = asyncio.run(_one_shot(settings, args))
    except UnknownAddressError as e:
        logger.error("%s", e)
        return 2
    for result in results:
        print(json.dumps(result.to_dict()))
    return 1 if any(r.error for r in results) else 0


if __name__ == "__main__":
    sys.exit(main())
