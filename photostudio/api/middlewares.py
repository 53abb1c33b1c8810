import json
import logging
from typing import Any, Awaitable, Callable, Dict

from aiohttp import web

from photostudio.exceptions import AuthenticationError, ServiceError, ValidationError

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

USER_HEADER = "X-User-Id"
PUBLIC_PATHS = {"/health"}


def error_body(code: str, message: str) -> Dict[str, Any]:
    return {"error": {"code": code, "message": message}}


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Render service errors as JSON with their HTTP status"""
    try:
        return await handler(request)
    except ServiceError as e:
        if e.status >= 500:
            logger.error(f"{request.method} {request.path} -> {e.status} {e.code}: {e.message}")
        else:
            logger.info(f"{request.method} {request.path} -> {e.status} {e.code}: {e.message}")
        return web.json_response(e.to_dict(), status=e.status)
    except web.HTTPException as e:
        if e.status >= 400 and e.content_type != "application/json":
            return web.json_response(error_body(e.reason.upper().replace(" ", "_"), e.reason), status=e.status)
        raise
    except Exception as e:
        logger.error(f"Unhandled error on {request.method} {request.path}: {e}", exc_info=True)
        return web.json_response(error_body("INTERNAL_ERROR", "Internal server error"), status=500)


@web.middleware
async def auth_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Identify the caller by the X-User-Id header"""
    public_prefix = request.app.get("public_prefix")
    if request.path in PUBLIC_PATHS or (public_prefix and request.path.startswith(public_prefix)):
        return await handler(request)

    user_id = (request.headers.get(USER_HEADER) or "").strip()
    if not user_id:
        raise AuthenticationError(f"Missing {USER_HEADER} header")
    request["user_id"] = user_id
    return await handler(request)


class DbSessionMiddleware:
    """
    Database session middleware with proper error handling and monitoring.
    Ensures sessions are properly committed/rolled back and closed.
    """
    __middleware_version__ = 1

    def __init__(self):
        self._active_sessions = 0
        self._max_sessions = 0
        self._total_requests = 0

    async def __call__(self, request: web.Request, handler: Handler) -> web.StreamResponse:
        db = request.app["db"]

        self._active_sessions += 1
        self._total_requests += 1
        self._max_sessions = max(self._max_sessions, self._active_sessions)

        try:
            async with db.get_session() as session:
                request["session"] = session
                response = await handler(request)

                # Ensure any pending changes are committed
                if session.in_transaction():
                    await session.commit()

                return response
        finally:
            self._active_sessions -= 1

            if self._total_requests % 100 == 0:
                logger.info(
                    f"Session stats: "
                    f"total={self._total_requests}, "
                    f"active={self._active_sessions}, "
                    f"peak={self._max_sessions}"
                )

    def get_stats(self) -> Dict:
        """Get middleware statistics for monitoring"""
        return {
            "active_sessions": self._active_sessions,
            "max_concurrent_sessions": self._max_sessions,
            "total_requests": self._total_requests
        }


async def read_json(request: web.Request, required: bool = False) -> Dict[str, Any]:
    """Request body as a dict; empty body gives {} unless required"""
    if not request.can_read_body:
        if required:
            raise ValidationError("Request body is required")
        return {}
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Request body must be valid JSON")
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body
