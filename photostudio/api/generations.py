"""
Generation endpoints
"""
import json
import logging

from aiohttp import web

from photostudio.api.middlewares import read_json
from photostudio.database.models import GenerationStatus
from photostudio.exceptions import ValidationError
from photostudio.services.events import GENERATION_COMPLETED
from photostudio.services.job_queue import job_id_for

logger = logging.getLogger(__name__)

routes = web.RouteTableDef()

LIST_FILTERS = ("product_id", "collection_id", "generation_type", "status", "page", "limit")
TERMINAL_STATUSES = (GenerationStatus.COMPLETED.value, GenerationStatus.FAILED.value)


def _context(request: web.Request):
    return request.app["generation_service"], request["session"], request["user_id"]


@routes.post("/generations")
async def create_generation(request: web.Request) -> web.Response:
    service, session, user_id = _context(request)
    body = await read_json(request, required=True)
    generation = await service.create(session, user_id, body)
    return web.json_response(generation.to_dict(), status=201)


@routes.get("/generations")
async def list_generations(request: web.Request) -> web.Response:
    service, session, user_id = _context(request)
    filters = {key: request.query[key] for key in LIST_FILTERS if request.query.get(key)}
    return web.json_response(await service.list_generations(session, user_id, filters))


@routes.get("/generations/{id}")
async def get_generation(request: web.Request) -> web.Response:
    service, session, user_id = _context(request)
    generation = await service.get(session, request.match_info["id"], user_id)
    return web.json_response(generation.to_dict())


@routes.post("/generations/{id}/merge")
async def merge_prompts(request: web.Request) -> web.Response:
    service, session, user_id = _context(request)
    body = await read_json(request, required=True)
    generation = await service.merge_prompts(session, request.match_info["id"], user_id, body)
    return web.json_response(generation.to_dict())


@routes.get("/generations/{id}/prompts")
async def preview_prompts(request: web.Request) -> web.Response:
    service, session, user_id = _context(request)
    return web.json_response(await service.preview_prompts(session, request.match_info["id"], user_id))


@routes.post("/generations/{id}/prompts")
async def update_prompts(request: web.Request) -> web.Response:
    service, session, user_id = _context(request)
    body = await read_json(request, required=True)
    generation = await service.update_prompts(session, request.match_info["id"], user_id, body.get("prompts"))
    return web.json_response(generation.to_dict())


@routes.post("/generations/{id}/generate")
async def generate(request: web.Request) -> web.Response:
    service, session, user_id = _context(request)
    body = await read_json(request)
    generation = await service.generate(
        session, request.match_info["id"], user_id, prompts=body.get("prompts"), model=body.get("model")
    )
    return web.json_response(generation.to_dict(), status=202)


@routes.post("/generations/{id}/reset")
async def reset(request: web.Request) -> web.Response:
    service, session, user_id = _context(request)
    generation = await service.reset(session, request.match_info["id"], user_id)
    return web.json_response(generation.to_dict())


@routes.get("/generations/{id}/progress")
async def progress(request: web.Request) -> web.Response:
    service, session, user_id = _context(request)
    return web.json_response(await service.get_progress(session, request.match_info["id"], user_id))


@routes.get("/generations/{id}/download")
async def download(request: web.Request) -> web.StreamResponse:
    service, session, user_id = _context(request)
    filename, chunks = await service.download(session, request.match_info["id"], user_id)

    response = web.StreamResponse(headers={
        "Content-Type": "application/zip",
        "Content-Disposition": f'attachment; filename="{filename}"',
    })
    response.enable_chunked_encoding()
    await response.prepare(request)
    async for chunk in chunks:
        await response.write(chunk)
    await response.write_eof()
    return response


@routes.post("/generations/{generationId}/visual/{index}/retry")
async def retry_visual(request: web.Request) -> web.Response:
    service, session, user_id = _context(request)
    body = await read_json(request)
    model = body.get("model")
    if model is not None and not isinstance(model, str):
        raise ValidationError("model must be a string")
    generation = await service.retry_visual(
        session, request.match_info["generationId"], user_id, request.match_info["index"], model=model
    )
    return web.json_response(generation.to_dict(), status=202)


# ==================== EVENT STREAM ====================

async def _send_event(response: web.StreamResponse, event_type: str, payload: dict):
    await response.write(f"event: {event_type}\ndata: {json.dumps(payload)}\n\n".encode("utf-8"))


@routes.get("/generations/{id}/stream")
async def stream(request: web.Request) -> web.StreamResponse:
    """
    Server-Sent Events feed of progress events for one generation.

    Starts with a status snapshot and ends after generation_completed.
    A generation that is already finished gets the snapshot only.
    """
    service, session, user_id = _context(request)
    settings = request.app["settings"]
    events = request.app["events"]
    generation_id = request.match_info["id"]

    # Ownership check before subscribing
    await service.get(session, generation_id, user_id)

    with events.subscribe(generation_id, user_id) as subscription:
        generation = await service.get(session, generation_id, user_id)
        snapshot = {
            "generationId": generation.id,
            "status": generation.status,
            "progress": generation.progress_percent,
        }
        finished = (
            generation.status in TERMINAL_STATUSES
            and not request.app["queue"].is_active(job_id_for(generation.id))
        )
        # Do not hold a connection for the lifetime of the stream
        await session.commit()

        response = web.StreamResponse(headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        })
        await response.prepare(request)
        await _send_event(response, "status", snapshot)

        if finished:
            return response

        try:
            while True:
                event = await subscription.get(timeout=settings.SSE_HEARTBEAT_SECONDS)
                if event is None:
                    await response.write(b": keep-alive\n\n")
                    continue
                await _send_event(response, event.type, event.to_dict())
                if event.type == GENERATION_COMPLETED:
                    break
        except ConnectionResetError:
            logger.info(f"User {user_id} | Stream for generation {generation_id} closed by client")

    return response
