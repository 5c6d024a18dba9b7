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
    require_user,
)
from newstore.common.logging_utils import log_request_execution
from newstore.exceptions.core_exceptions import InvalidInput
from newstore.tasks.job_autopay_open_draws import job_autopay_draw

logger = logging.getLogger(__name__)

routes = web.RouteTableDef()


@routes.get("/api/vouchers/remaining")
@log_request_execution(logger)
async def remaining(request: web.Request) -> web.Response:
    user = require_user(request)
    draw_id = int_arg(request.query.get("draw_id"), "draw_id")
    factory = request.app[FACTORY_KEY]
    async with request.app[DATABASE_KEY].get_session() as session:
        count = await factory.create_voucher_service(session).remaining(user.id, draw_id)
    return json_response({"draw_id": draw_id, "remaining": count})


@routes.post("/api/vouchers/consume")
@log_request_execution(logger)
async def consume(request: web.Request) -> web.Response:
    user = require_user(request)
    body = await read_json(request)
    draw_id = int_arg(body.get("draw_id"), "draw_id")
    reservation_id = body.get("reservationId") or body.get("reservation_id")

    factory = request.app[FACTORY_KEY]
    async with request.app[DATABASE_KEY].get_session() as session:
        result = await factory.create_voucher_service(session).redeem(
            user.id, draw_id, body.get("numbers"), reservation_id=reservation_id
        )
    return json_response(result)


@routes.post("/api/admin/vouchers/issue")
@log_request_execution(logger)
async def issue(request: web.Request) -> web.Response:
    require_admin(request)
    body = await read_json(request)
    user_id = str(body.get("user_id") or "").strip()
    product_id = str(body.get("product_id") or "").strip()
    purchase_ref = str(body.get("purchase_ref") or "").strip()
    if not user_id or not product_id or not purchase_ref:
        raise InvalidInput(
            "user_id, product_id and purchase_ref are required.", code="invalid_payload"
        )
    count = int_arg(body.get("count"), "count", required=False) or 1

    factory = request.app[FACTORY_KEY]
    async with request.app[DATABASE_KEY].get_session() as session:
        result = await factory.create_voucher_service(session).issue_for_purchase(
            user_id, product_id, purchase_ref, count=count
        )

    automations = request.app.get(AUTOMATIONS_KEY)
    if result.draw_created and automations is not None:
        await automations.track_job(
            job_autopay_draw,
            result.draw.id,
            database=request.app[DATABASE_KEY],
            factory=factory,
        )

    return json_response(
        {
            "voucher_id": result.voucher.id,
            "remaining": result.voucher.remaining,
            "created": result.created,
            "draw": draw_to_dict(result.draw),
            "draw_created": result.draw_created,
        },
        status=201 if result.created else 200,
    )
