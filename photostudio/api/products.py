"""
Product specification endpoints
"""
from aiohttp import web

from photostudio.api.middlewares import read_json

routes = web.RouteTableDef()


@routes.post("/products/{id}/analyze")
async def analyze_product(request: web.Request) -> web.Response:
    service = request.app["product_service"]
    result = await service.analyze_product(request["session"], request.match_info["id"], request["user_id"])
    return web.json_response(result)


@routes.get("/products/{id}/product-json")
async def get_product_json(request: web.Request) -> web.Response:
    service = request.app["product_service"]
    result = await service.get_product_json(request["session"], request.match_info["id"], request["user_id"])
    return web.json_response(result)


@routes.put("/products/{id}/product-json")
async def update_product_json(request: web.Request) -> web.Response:
    service = request.app["product_service"]
    body = await read_json(request, required=True)
    # Either {"overrides": {...}} or the overrides object itself
    overrides = body["overrides"] if isinstance(body.get("overrides"), dict) else body
    result = await service.update_product_json(
        request["session"], request.match_info["id"], request["user_id"], overrides
    )
    return web.json_response(result)
