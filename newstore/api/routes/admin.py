import logging

from aiohttp import web

from newstore.api.context import (
    AUTOMATIONS_KEY,
    DATABASE_KEY,
    FACTORY_KEY,
    draw_to_dict,
    int_arg,
    json_response,
    read_json,
    require_admin,
)
from newstore.common.logging_utils import log_request_execution
from newstore.models.draw import DEFAULT_TOTAL_NUMBERS
from newstore.tasks.job_autopay_open_draws import job_autopay_draw

logger = logging.getLogger(__name__)

routes = web.RouteTableDef()


def _text(value, limit: int):
    text = str(value or "").strip()[:limit]
    return text or None


@routes.post("/api/admin/draws/new")
@log_request_execution(logger)
async def new_draw(request: web.Request) -> web.Response:
    """Open a draw and start the autopay run for it in the background."""
    require_admin(request)
    body = await read_json(request)
    total_numbers = (
        int_arg(body.get("total_numbers"), "total_numbers", required=False)
        or DEFAULT_TOTAL_NUMBERS
    )

    database = request.app[DATABASE_KEY]
    factory = request.app[FACTORY_KEY]
    async with database.get_session() as session:
        draw = await factory.create_draw_service(session).create_draw(
            product_id=_text(body.get("product_id"), 64),
            product_name=_text(body.get("product_name"), 255),
            product_link=_text(body.get("product_link"), 512),
            total_numbers=total_numbers,
        )

    automations = request.app.get(AUTOMATIONS_KEY)
    if automations is not None:
        await automations.track_job(
            job_autopay_draw, draw.id, database=database, factory=factory
        )

    return json_response(draw_to_dict(draw), status=201)


@routes.post(r"/api/admin/draws/{draw_id:\d+}/close")
@log_request_execution(logger)
async def close_draw(request: web.Request) -> web.Response:
    require_admin(request)
    draw_id = int_arg(request.match_info["draw_id"], "draw_id")

    factory = request.app[FACTORY_KEY]
    async with request.app[DATABASE_KEY].get_session() as session:
        draw, changed = await factory.create_draw_service(session).close_draw(draw_id)

    if changed:
        await factory.emitter.emit("draw_closed", draw_id)
    return json_response({**draw_to_dict(draw), "changed": changed})


@routes.post(r"/api/admin/draws/{draw_id:\d+}/winner")
@log_request_execution(logger)
async def record_winner(request: web.Request) -> web.Response:
    require_admin(request)
    draw_id = int_arg(request.match_info["draw_id"], "draw_id")
    body = await read_json(request)
    number = int_arg(body.get("number"), "number")

    factory = request.app[FACTORY_KEY]
    async with request.app[DATABASE_KEY].get_session() as session:
        draw = await factory.create_draw_service(session).record_winner(draw_id, number)
    return json_response(draw_to_dict(draw))


@routes.get("/api/admin/config/ticket-price")
@log_request_execution(logger)
async def get_ticket_price(request: web.Request) -> web.Response:
    require_admin(request)
    factory = request.app[FACTORY_KEY]
    async with request.app[DATABASE_KEY].get_session() as session:
        cents = await factory.create_price_service(session).get_ticket_price_cents()
    return json_response({"price_cents": cents})


@routes.put("/api/admin/config/ticket-price")
@log_request_execution(logger)
async def set_ticket_price(request: web.Request) -> web.Response:
    require_admin(request)
    body = await read_json(request)

    factory = request.app[FACTORY_KEY]
    async with request.app[DATABASE_KEY].get_session() as session:
        cents = await factory.create_price_service(session).set_ticket_price_cents(
            body.get("price_cents")
        )
    return json_response({"price_cents": cents})
