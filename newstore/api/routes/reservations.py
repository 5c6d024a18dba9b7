import logging

from aiohttp import web

from newstore.api.context import (
    AUTOMATIONS_KEY,
    DATABASE_KEY,
    FACTORY_KEY,
    int_arg,
    json_response,
    read_json,
    require_user,
)
from newstore.common.logging_utils import log_request_execution
from newstore.tasks.job_expire_reservations import job_expire_reservations

logger = logging.getLogger(__name__)

routes = web.RouteTableDef()


@routes.post("/api/reservations")
@log_request_execution(logger)
async def create_reservation(request: web.Request) -> web.Response:
    user = require_user(request)
    body = await read_json(request)
    draw_id = int_arg(body.get("draw_id", body.get("drawId")), "draw_id", required=False)

    database = request.app[DATABASE_KEY]
    factory = request.app[FACTORY_KEY]
    async with database.get_session() as session:
        result = await factory.create_reservation_service(session).reserve(
            user.id, body.get("numbers"), draw_id=draw_id
        )

    automations = request.app.get(AUTOMATIONS_KEY)
    if automations is not None:
        await automations.track_job(
            job_expire_reservations, database=database, factory=factory
        )

    return json_response(result, status=201)


@routes.delete("/api/reservations/{reservation_id}")
@log_request_execution(logger)
async def cancel_reservation(request: web.Request) -> web.Response:
    user = require_user(request)
    factory = request.app[FACTORY_KEY]
    async with request.app[DATABASE_KEY].get_session() as session:
        reservation = await factory.create_reservation_service(session).cancel(
            user.id, request.match_info["reservation_id"]
        )
    return json_response(
        {
            "reservation_id": reservation.id,
            "draw_id": reservation.draw_id,
            "status": reservation.status,
            "numbers": reservation.numbers,
        }
    )


@routes.get("/api/purchase-limit")
@log_request_execution(logger)
async def purchase_limit(request: web.Request) -> web.Response:
    user = require_user(request)
    draw_id = int_arg(request.query.get("draw_id"), "draw_id", required=False)
    add = int_arg(request.query.get("add"), "add", required=False)
    if add is None or add <= 0:
        add = 1

    factory = request.app[FACTORY_KEY]
    async with request.app[DATABASE_KEY].get_session() as session:
        limit = await factory.create_reservation_service(session).check_purchase_limit(
            user.id, draw_id=draw_id, add=add
        )
    return json_response(limit)
