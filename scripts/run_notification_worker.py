"""Run the notification dispatcher and retention sweeper outside the web app."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from project_notifications.application.use_cases.notifications import (
    DispatcherOptions,
    NotificationDispatcher,
    NotificationRetentionSweeper,
    RetentionOptions,
)
from project_notifications.config import get_settings
from project_notifications.infrastructure.database import SessionLocal, engine, initialize_database
from project_notifications.infrastructure.notifications import DispatcherWorker, RetentionWorker
from project_notifications.utils import configure_logging

logger = logging.getLogger("project_notifications.worker")


def parse_args() -> argparse.Namespace:
    """Parse command line arguments for the worker process."""

    parser = argparse.ArgumentParser(
        description="Drain the notification outbox until interrupted.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Process a single batch and a single retention sweep, then exit.",
    )
    parser.add_argument(
        "--no-retention",
        action="store_true",
        help="Do not run the retention sweeper in this process.",
    )
    return parser.parse_args()


async def _run_forever(dispatcher: NotificationDispatcher, sweeper: NotificationRetentionSweeper | None) -> None:
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, shutdown_event.set)
        except NotImplementedError:  # pragma: no cover - Windows event loops
            pass

    workers = [DispatcherWorker(dispatcher, shutdown_event=shutdown_event).run()]
    if sweeper is not None:
        workers.append(RetentionWorker(sweeper, shutdown_event=shutdown_event).run())
    await asyncio.gather(*workers)


def main() -> None:
    """Start the workers using the environment configuration."""

    args = parse_args()
    settings = get_settings()
    configure_logging(settings.log_level)
    initialize_database()

    dispatcher = NotificationDispatcher(SessionLocal, options=DispatcherOptions.from_settings(settings))
    sweeper = None
    if not args.no_retention:
        sweeper = NotificationRetentionSweeper(SessionLocal, options=RetentionOptions.from_settings(settings))

    try:
        if args.once:
            processed = dispatcher.process_batch()
            removed = sweeper.run_once() if sweeper is not None else 0
            logger.info("Single run finished (processed=%s, removed=%d)", processed, removed)
        else:
            asyncio.run(_run_forever(dispatcher, sweeper))
    finally:
        engine.dispose()


if __name__ == "__main__":
    main()
