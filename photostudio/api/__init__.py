"""
HTTP API application
"""
import logging
import os
from typing import Optional

from aiohttp import web

from photostudio.api import generations, products
from photostudio.api.middlewares import DbSessionMiddleware, auth_middleware, error_middleware
from photostudio.database import Database
from photostudio.services.ai_backend import ImageBackend
from photostudio.services.events import GenerationEventBus
from photostudio.services.generation_service import GenerationService
from photostudio.services.generation_worker import GenerationWorker
from photostudio.services.job_queue import GenerationJobQueue, job_id_for
from photostudio.services.product_service import ProductService
from photostudio.services.storage import LocalFileStorage
from photostudio.utils.api_retry import APIRetryHandler
from photostudio.utils.locks import GenerationLocks

logger = logging.getLogger(__name__)


async def health_check(request: web.Request) -> web.Response:
    """Health check endpoint"""
    return web.Response(text="OK")


async def debug_config(request: web.Request) -> web.Response:
    config = request.app["generation_service"].debug_config()
    config["locks"] = request.app["locks"].get_stats()
    config["sessions"] = request.app["session_middleware"].get_stats()
    config["circuit"] = request.app["retry_handler"].get_stats()
    return web.json_response(config)


def build_retry_handler(settings, name: str = "image") -> APIRetryHandler:
    return APIRetryHandler(
        max_retries=settings.IMAGE_MAX_RETRIES,
        base_delay=settings.IMAGE_RETRY_BASE_DELAY,
        max_delay=settings.IMAGE_RETRY_MAX_DELAY,
        timeout=settings.IMAGE_TIMEOUT_SECONDS,
        circuit_failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
        circuit_timeout=settings.CIRCUIT_TIMEOUT_SECONDS,
        name=name
    )


async def _start_queue(app: web.Application):
    queue = app["queue"]
    await queue.start()
    recovered = await app["worker"].recover_interrupted(
        lambda generation_id: queue.is_active(job_id_for(generation_id))
    )
    if recovered:
        logger.warning(f"Closed {len(recovered)} generations interrupted by a previous shutdown")


async def _stop_queue(app: web.Application):
    await app["queue"].stop()
    backend = app["backend"]
    if backend is not None:
        await backend.close()


def create_app(
    settings,
    db: Database,
    backend: Optional[ImageBackend],
    storage: Optional[LocalFileStorage] = None,
    retry_handler: Optional[APIRetryHandler] = None,
    analysis_retry_handler: Optional[APIRetryHandler] = None
) -> web.Application:
    """
    Create aiohttp application with all services wired.

    Args:
        settings: Settings instance
        db: Database used by request handlers and the worker
        backend: AI backend, None leaves generation jobs failing and analysis unavailable
        storage: Storage for generated images
        retry_handler: Retry policy for image generation calls
        analysis_retry_handler: Retry policy for product analysis calls
    """
    storage = storage or LocalFileStorage(settings.UPLOAD_LOCAL_PATH, settings.UPLOAD_BASE_URL)
    retry_handler = retry_handler or build_retry_handler(settings)
    if analysis_retry_handler is None:
        analysis_retry_handler = build_retry_handler(settings, name="analysis")
        analysis_retry_handler.timeout = settings.VISION_TIMEOUT_SECONDS

    events = GenerationEventBus(queue_size=settings.SUBSCRIBER_QUEUE_SIZE)
    locks = GenerationLocks()
    queue = GenerationJobQueue(workers=settings.QUEUE_WORKERS)
    worker = GenerationWorker(
        db,
        backend,
        storage,
        events,
        locks,
        retry_handler,
        concurrency=settings.GENERATION_CONCURRENCY,
        persist_max_retries=settings.PERSIST_MAX_RETRIES
    )
    queue.handler = worker.process_job

    session_middleware = DbSessionMiddleware()
    app = web.Application(middlewares=[error_middleware, auth_middleware, session_middleware])
    app["session_middleware"] = session_middleware
    app["settings"] = settings
    app["db"] = db
    app["backend"] = backend
    app["storage"] = storage
    app["events"] = events
    app["locks"] = locks
    app["queue"] = queue
    app["worker"] = worker
    app["retry_handler"] = retry_handler
    app["generation_service"] = GenerationService(queue, events, locks, storage, settings, backend)
    app["product_service"] = ProductService(backend, analysis_retry_handler)

    # Generated images are served publicly, like any CDN URL would be
    static_prefix = f"/{os.path.basename(os.path.normpath(storage.local_path))}"
    app["public_prefix"] = f"{static_prefix}/"
    app.router.add_static(static_prefix, storage.local_path)

    app.router.add_get("/health", health_check)
    app.router.add_get("/debug/config", debug_config)
    app.router.add_routes(generations.routes)
    app.router.add_routes(products.routes)

    app.on_startup.append(_start_queue)
    app.on_cleanup.append(_stop_queue)

    logger.info(f"API application created (backend: {backend.name if backend else 'none'})")
    return app
