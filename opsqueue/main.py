"""
Worker process bootstrap.

Startup checks are fatal: the process exits non-zero before claiming any job
if the timezone, the database or pdftoppm is unusable.
"""

import asyncio
import signal
import sys
from zoneinfo import ZoneInfoNotFoundError

from sqlalchemy.exc import SQLAlchemyError

from opsqueue.config.logging import bind_worker_context, get_logger, setup_logging
from opsqueue.config.settings import Settings, get_settings
from opsqueue.core.exceptions import ConfigurationError
from opsqueue.infra.database import Database
from opsqueue.jobs.dispatcher import JobWorker
from opsqueue.notifications.email import EmailTransport
from opsqueue.registry_init import build_job_registry
from opsqueue.storage.client import ObjectStorage
from opsqueue.thumbnails.pipeline import PdfRasterizer

logger = get_logger(__name__)


async def check_startup(settings: Settings, database: Database, rasterizer: PdfRasterizer) -> None:
    """Raise ConfigurationError when a hard dependency is unusable."""
    try:
        settings.display_timezone
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationError(f"Invalid notification timezone: {e}") from e

    try:
        await database.ping()
    except (SQLAlchemyError, OSError) as e:
        raise ConfigurationError(f"Database unreachable: {e}") from e

    rasterizer.check_available()


async def run_worker(settings: Settings) -> None:
    """Run the worker until SIGINT or SIGTERM, then shut down gracefully."""
    database = Database(settings)
    rasterizer = PdfRasterizer()

    try:
        await check_startup(settings, database, rasterizer)

        registry = build_job_registry(
            settings,
            storage=ObjectStorage.from_settings(settings),
            email=EmailTransport(settings),
            rasterizer=rasterizer,
        )
        worker = JobWorker(settings, database, registry)
        bind_worker_context(worker.worker_id, environment=settings.environment)

        stop_requested = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_requested.set)

        await worker.start()
        await stop_requested.wait()
        logger.info("Shutdown signal received")

        abandoned = await worker.stop()
        logger.info("Worker stopped", abandoned_jobs=abandoned)
    finally:
        await database.close()


def main() -> None:
    setup_logging()
    settings = get_settings()
    try:
        asyncio.run(run_worker(settings))
    except ConfigurationError as e:
        logger.critical("Fatal startup error", error=e.message)
        sys.exit(1)


if __name__ == "__main__":
    main()
