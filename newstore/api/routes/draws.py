import logging

from aiohttp import web

from newstore.api.context import (
    DATABASE_KEY,
    FACTORY_KEY,
    draw_to_dict,
    int_arg,
    json_response,
    require_user,
)
from newstore.common.logging_utils import log_request_execution
from newstore.exceptions.core_exceptions import NotFound

logger = logging.getLogger(__name__)

routes = web.RouteTableDef()


@routes.get("/api/numbers")
async def current_board(request: web.Request) -> web.Response:
    """Board of the latest open draw; every number with its state."""
    factory = request.app[FACTORY_KEY]
    user = request.get("user")
    async with request.app[DATABASE_KEY].get_session() as session:
        draw = await factory.create_draw_service(session).get_open_draw()
        if draw is None:
            return json_response({"draw_id": None, "numbers": []})
        board = await factory.create_ledger_service(session).board(
            draw.id, user.id if user is not None else None
        )
    return json_response(board)


@routes.get("/api/draws")
async def list_draws(request: web.Request) -> web.Response:
    factory = request.app[FACTORY_KEY]
    async with request.app[DATABASE_KEY].get_session() as session:
        draws = await factory.create_draw_service(session).list_draws(
            request.query.get("status")
        )
    return json_response({"draws": [draw_to_dict(d) for d in draws]})


@routes.get(r"/api/draws/{draw_id:\d+}")
async def get_draw(request: web.Request) -> web.Response:
    draw_id = int_arg(request.match_info["draw_id"], "draw_id")
    factory = request.app[FACTORY_KEY]
    async with request.app[DATABASE_KEY].get_session() as session:
        draw = await factory.create_draw_service(session).get_draw(draw_id)
    if draw is None:
        raise NotFound(f"Draw {draw_id} not found", code="draw_not_found")
    return json_response(draw_to_dict(draw))


@routes.get(r"/api/me/draws/{draw_id:\d+}/board")
@log_request_execution(logger)
async def my_board(request: web.Request) -> web.Response:
    user = require_user(request)
    draw_id = int_arg(request.match_info["draw_id"], "draw_id")
    factory = request.app[FACTORY_KEY]
    async with request.app[DATABASE_KEY].get_session() as session:
        board = await factory.create_ledger_service(session).board(draw_id, user.id)
    return json_response(board)
