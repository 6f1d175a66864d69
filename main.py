import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from project_notifications.application.use_cases.notifications import (
    DispatcherOptions,
    NotificationDispatcher,
    NotificationRetentionSweeper,
    RetentionOptions,
)
from project_notifications.config import get_settings
from project_notifications.infrastructure.database import SessionLocal, engine, initialize_database
from project_notifications.infrastructure.notifications import (
    DispatcherWorker,
    RealtimeDeliverySink,
    RetentionWorker,
    notification_manager,
)
from project_notifications.interfaces.api.routes import register_routes
from project_notifications.utils import configure_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the tables, start the background workers and stop them on exit."""

    settings = get_settings()
    configure_logging(settings.log_level)
    initialize_database()

    shutdown_event = asyncio.Event()
    tasks: list[asyncio.Task] = []
    if settings.dispatcher_enabled:
        sink = RealtimeDeliverySink(notification_manager, session_factory=SessionLocal)
        dispatcher = NotificationDispatcher(
            SessionLocal,
            options=DispatcherOptions.from_settings(settings),
            delivery_sink=sink,
        )
        sweeper = NotificationRetentionSweeper(
            SessionLocal,
            options=RetentionOptions.from_settings(settings),
        )
        tasks.append(asyncio.create_task(DispatcherWorker(dispatcher, shutdown_event=shutdown_event).run()))
        tasks.append(asyncio.create_task(RetentionWorker(sweeper, shutdown_event=shutdown_event).run()))
    else:
        logger.info("Notification workers disabled by configuration")

    app.state.shutdown_event = shutdown_event
    try:
        yield
    finally:
        shutdown_event.set()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        engine.dispose()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(title="Project notifications", lifespan=lifespan)
    register_routes(app)
    return app


app = create_app()
