"""Tasker worker entry point.

Usage:
    python -m tasker
    python -m tasker --database data/other.db
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path

from tasker.actions import default_registry
from tasker.config import settings
from tasker.notifications import NotificationRouter, WebhookChannel
from tasker.scheduler.manager import TaskManager
from tasker.scheduler.store import TaskStore

logger = logging.getLogger(__name__)


def build_manager(database: Path | None = None) -> TaskManager:
    """Wire store, action handlers and notification channels into a TaskManager."""
    store = TaskStore(database or settings.database_path)

    router = NotificationRouter.get()
    if settings.notification_webhook_url and router.get_channel("webhook") is None:
        router.register_channel(WebhookChannel())

    return TaskManager(store, default_registry(), notifier=router)


async def run(database: Path | None = None) -> None:
    """Run the worker until SIGINT/SIGTERM."""
    manager = build_manager(database)
    await manager.initialize()

    stats = await manager.get_stats()
    logger.info(
        "Worker ready: %d active, %d paused, %d due within the hour",
        stats.active,
        stats.paused,
        stats.due_soon,
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await stop.wait()
    finally:
        logger.info("Shutting down worker...")
        await manager.shutdown()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the tasker worker.")
    parser.add_argument(
        "--database",
        type=Path,
        default=None,
        help=f"SQLite database path (default: {settings.database_path})",
    )
    args = parser.parse_args()

    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
    )
    logger.info("Starting tasker worker (database: %s)", args.database or settings.database_path)
    asyncio.run(run(args.database))


if __name__ == "__main__":
    main()
