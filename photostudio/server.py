import asyncio
import logging
import signal
import sys

from aiohttp import web
from alembic import command
from alembic.config import Config

from photostudio.api import create_app
from photostudio.config import settings
from photostudio.database import init_db
from photostudio.services.ai_backend import create_image_backend
from photostudio.services.storage import LocalFileStorage
from photostudio.utils.logging_config import configure_logging, log_error_with_context

configure_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


def run_migrations():
    """Run Alembic migrations"""
    logger.info("Running database migrations...")
    try:
        alembic_cfg = Config("alembic.ini")
        command.upgrade(alembic_cfg, "head")
        logger.info("Migrations completed successfully")
    except Exception as e:
        logger.error(f"Migration failed: {e}")
        raise


async def main():
    """Main server function"""
    logger.info("=" * 60)
    logger.info("Starting PhotoStudio backend...")
    logger.info(f"Log level: {settings.LOG_LEVEL}")
    logger.info(f"Image backend: {settings.IMAGE_BACKEND} ({settings.image_model})")
    logger.info("=" * 60)

    # Missing credentials stop the process here rather than failing every job
    backend = create_image_backend(settings)

    logger.info("Initializing database...")
    logger.info(f"Database URL: {settings.database_url.split('@')[-1]}")  # Hide credentials
    db = init_db(settings.database_url)

    storage = LocalFileStorage(settings.UPLOAD_LOCAL_PATH, settings.UPLOAD_BASE_URL)
    app = create_app(settings, db, backend, storage)

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, settings.HOST, settings.PORT)
    await site.start()
    logger.info(f"API listening on http://{settings.HOST}:{settings.PORT}")

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers, Ctrl+C still raises KeyboardInterrupt
            pass

    try:
        await stop.wait()
        logger.info("Shutdown requested, stopping server...")
    finally:
        await runner.cleanup()
        await db.close()
        logger.info("Server stopped")


def run():
    try:
        if settings.RUN_MIGRATIONS:
            # Run migrations before starting the async loop
            run_migrations()

        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except Exception as e:
        log_error_with_context(logger, e, "Critical error")
        sys.exit(1)


if __name__ == "__main__":
    run()
