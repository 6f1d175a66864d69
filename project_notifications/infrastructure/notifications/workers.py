"""Background loops hosting the dispatcher and the retention sweeper."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from anyio import to_thread

from project_notifications.application.use_cases.notifications.dispatch import NotificationDispatcher
from project_notifications.application.use_cases.notifications.retention import (
    DEFAULT_RETRY_DELAY,
    NotificationRetentionSweeper,
)

logger = logging.getLogger(__name__)


async def wait_for_shutdown(shutdown_event: asyncio.Event, delay: timedelta | float) -> bool:
    """Sleep for ``delay`` or until shutdown is requested.

    Returns ``True`` when the shutdown event is set. Never raises on
    cancellation of the wait itself.
    """

    seconds = delay.total_seconds() if isinstance(delay, timedelta) else float(delay)
    if shutdown_event.is_set():
        return True
    if seconds <= 0:
        return False
    try:
        await asyncio.wait_for(shutdown_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return False
    except asyncio.CancelledError:
        return True
    return True


class DispatcherWorker:
    """Drive :class:`NotificationDispatcher` until shutdown."""

    def __init__(self, dispatcher: NotificationDispatcher, *, shutdown_event: asyncio.Event) -> None:
        self.dispatcher = dispatcher
        self.shutdown_event = shutdown_event

    async def run(self) -> None:
        """Run continuously until the shutdown event is set."""

        options = self.dispatcher.options
        logger.info(
            "Notification dispatcher started (batch_size=%d, lease=%s)",
            options.batch_size,
            options.lease_duration,
        )
        while not self.shutdown_event.is_set():
            try:
                # The batch runs to completion in its thread even if we are cancelled.
                processed = await to_thread.run_sync(self.dispatcher.process_batch)
            except asyncio.CancelledError:
                break
            except Exception:  # pylint: disable=broad-exception-caught
                logger.exception("Notification dispatcher failed while processing a batch")
                if await wait_for_shutdown(self.shutdown_event, options.error_delay):
                    break
                continue

            if not processed and await wait_for_shutdown(self.shutdown_event, options.idle_delay):
                break
        logger.info("Notification dispatcher stopped")


class RetentionWorker:
    """Run :class:`NotificationRetentionSweeper` on its own cadence."""

    def __init__(
        self,
        sweeper: NotificationRetentionSweeper,
        *,
        shutdown_event: asyncio.Event,
        retry_delay: timedelta = DEFAULT_RETRY_DELAY,
    ) -> None:
        self.sweeper = sweeper
        self.shutdown_event = shutdown_event
        self.retry_delay = retry_delay

    async def run(self) -> None:
        """Sweep on schedule until the shutdown event is set."""

        while not self.shutdown_event.is_set():
            options = self.sweeper.options
            delay = options.sweep_interval_or_default()
            try:
                if options.is_enabled:
                    await to_thread.run_sync(self.sweeper.run_once)
            except asyncio.CancelledError:
                break
            except Exception:  # pylint: disable=broad-exception-caught
                logger.exception("Notification retention failed to enforce retention policies")
                delay = self.retry_delay

            if await wait_for_shutdown(self.shutdown_event, delay):
                break


__all__ = ["DispatcherWorker", "RetentionWorker", "wait_for_shutdown"]
