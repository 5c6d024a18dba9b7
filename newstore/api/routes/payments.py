import logging

from aiohttp import web

from newstore.api.context import (
    DATABASE_KEY,
    FACTORY_KEY,
    SWEEPER_KEY,
    int_arg,
    json_response,
    payment_to_dict,
    read_json,
    require_admin,
    require_user,
)
from newstore.common.logging_utils import log_request_execution
from newstore.exceptions.core_exceptions import InvalidInput, NewStoreError
from newstore.services.reconciliation_service import MIN_LOOKBACK_MINUTES

logger = logging.getLogger(__name__)

routes = web.RouteTableDef()


@routes.post("/api/payments/pix")
@log_request_execution(logger)
async def create_pix(request: web.Request) -> web.Response:
    user = require_user(request)
    body = await read_json(request)
    reservation_id = body.get("reservationId") or body.get("reservation_id")

    factory = request.app[FACTORY_KEY]
    async with request.app[DATABASE_KEY].get_session() as session:
        checkout = await factory.create_payment_service(
            session
        ).create_pix_for_reservation(user.id, user.email, reservation_id)
    return json_response(checkout)


@routes.get("/api/payments/{payment_id}/status")
@log_request_execution(logger)
async def payment_status(request: web.Request) -> web.Response:
    user = require_user(request)
    factory = request.app[FACTORY_KEY]
    async with request.app[DATABASE_KEY].get_session() as session:
        result = await factory.create_payment_service(session).poll_status(
            user.id, request.match_info["payment_id"], is_admin=user.is_admin
        )
    return json_response(result)


@routes.post("/api/payments/webhook")
async def webhook(request: web.Request) -> web.Response:
    """Provider notification. Always answers 200 so the provider stops retrying."""
    try:
        payload = await read_json(request)
    except NewStoreError:
        payload = {}

    factory = request.app[FACTORY_KEY]
    async with request.app[DATABASE_KEY].get_session() as session:
        outcome = await factory.create_payment_service(session).handle_webhook(
            payload, request.query
        )
    return json_response(outcome)


@routes.get("/api/payments/me")
@log_request_execution(logger)
async def my_payments(request: web.Request) -> web.Response:
    user = require_user(request)
    factory = request.app[FACTORY_KEY]
    async with request.app[DATABASE_KEY].get_session() as session:
        payments = await factory.create_payment_service(session).list_for_user(user.id)
    return json_response({"payments": [payment_to_dict(p) for p in payments]})


@routes.post("/api/payments/reconcile")
@log_request_execution(logger)
async def reconcile(request: web.Request) -> web.Response:
    require_admin(request)
    body = await read_json(request)
    since = int_arg(body.get("since", body.get("minutes")), "since", required=False)
    if since is not None:
        since = max(MIN_LOOKBACK_MINUTES, since)

    result = await request.app[SWEEPER_KEY].kick(force=True, lookback_minutes=since)
    return json_response(result)


@routes.post("/api/payments/webhook/replay")
@log_request_execution(logger)
async def replay(request: web.Request) -> web.Response:
    require_admin(request)
    body = await read_json(request)
    payment_id = body.get("id") or body.get("paymentId")
    if not payment_id:
        raise InvalidInput("Payment id is required.", code="missing_id")

    factory = request.app[FACTORY_KEY]
    async with request.app[DATABASE_KEY].get_session() as session:
        result = await factory.create_payment_service(session).replay(str(payment_id))
    return json_response(result)
