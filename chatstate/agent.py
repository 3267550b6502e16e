"""chatstate runtime entry point."""

from __future__ import annotations

import argparse
import sys
from dataclasses import replace
from pathlib import Path

import structlog
from prometheus_client import CollectorRegistry, start_http_server

from chatstate import demo
from chatstate.config import ConfigError, load_settings
from chatstate.errors import StorageWriteError
from chatstate.log import setup_logging
from chatstate.manager import SessionManager
from chatstate.memory.engine import MemoryEngine
from chatstate.memory.event_journal import EventJournal
from chatstate.memory.record_store import SqliteRecordStore
from chatstate.metrics import BotMetrics
from chatstate.telegram_bot import TelegramBot
from chatstate.writebehind import WriteBehindQueue

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the chatstate Telegram bot")
    parser.add_argument("--config", default=None, help="Path to a YAML config file")
    parser.add_argument("--db-path", default=None, help="Override storage.db_path")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = load_settings(Path(args.config) if args.config else None)
    except ConfigError as exc:
        print(f"config error: {exc}", file=sys.stderr)
        return 2
    if args.db_path:
        settings = replace(settings, storage=replace(settings.storage, db_path=Path(args.db_path)))

    setup_logging(settings.log.level, settings.log.format, enabled=settings.log.enabled)
    if not settings.bot.token:
        logger.error("bot token is not configured", hint="set CHATSTATE_TOKEN or bot.token_file")
        return 1

    memory_engine = MemoryEngine(settings.storage.db_path)
    memory_engine.initialize()
    conn = memory_engine.connect()
    store = SqliteRecordStore(conn, lock=memory_engine.lock)
    journal = EventJournal(conn, lock=memory_engine.lock)

    metrics = BotMetrics()
    if settings.metrics.enabled:
        registry = CollectorRegistry()
        metrics = BotMetrics(registry, namespace=settings.metrics.namespace)
        start_http_server(settings.metrics.port, registry=registry)
        logger.info("metrics exporter started", port=settings.metrics.port)

    async def on_drop(err: StorageWriteError) -> None:
        await journal.record(
            "record_write_dropped",
            {"attempts": err.attempts, "error": str(err.cause)},
            record_id=err.record_id,
            decision="deny",
        )

    writes = WriteBehindQueue(
        store,
        max_retries=settings.storage.write_retries,
        backoff_seconds=settings.storage.write_backoff,
        max_pending=settings.storage.max_pending_writes,
        on_drop=on_drop,
        metrics=metrics,
    )
    manager = SessionManager(
        store,
        writes,
        capacity=settings.cache.capacity,
        ttl_seconds=settings.cache.ttl_seconds,
        shards=settings.cache.shards,
        metrics=metrics,
    )
    telegram_bot = TelegramBot(settings, manager, journal=journal, metrics=metrics)
    demo.register(telegram_bot.dispatcher)

    logger.info(
        "runtime configured",
        db_path=str(settings.storage.db_path),
        records=store.count(),
        cache_capacity=settings.cache.capacity,
    )
    try:
        telegram_bot.run()
    finally:
        memory_engine.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
