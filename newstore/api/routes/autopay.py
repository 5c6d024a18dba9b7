import logging
from dataclasses import asdict

from aiohttp import web

from newstore.api.context import (
    DATABASE_KEY,
    FACTORY_KEY,
    flag_arg,
    int_arg,
    json_response,
    read_json,
    require_admin,
    require_user,
)
from newstore.common.logging_utils import log_request_execution
from newstore.services.autopay_service import AutopayProfileView

logger = logging.getLogger(__name__)

routes = web.RouteTableDef()


@routes.get("/api/me/autopay")
@log_request_execution(logger)
async def get_profile(request: web.Request) -> web.Response:
    user = require_user(request)
    factory = request.app[FACTORY_KEY]
    async with request.app[DATABASE_KEY].get_session() as session:
        profile = await factory.create_autopay_service(session).get_profile(user.id)
    if profile is None:
        profile = AutopayProfileView(id=None, active=False, numbers=[])
    return json_response(profile)


@routes.post("/api/me/autopay")
@log_request_execution(logger)
async def save_profile(request: web.Request) -> web.Response:
    user = require_user(request)
    body = await read_json(request)

    factory = request.app[FACTORY_KEY]
    async with request.app[DATABASE_KEY].get_session() as session:
        profile = await factory.create_autopay_service(session).save_profile(
            user.id,
            email=user.email,
            name=user.name,
            active=flag_arg(body.get("active"), default=True),
            numbers=body.get("numbers"),
            card_token=body.get("card_token") or None,
            holder_name=body.get("holder_name"),
            doc_number=body.get("doc_number"),
        )
    return json_response(profile)


@routes.post("/api/me/autopay/cancel")
@log_request_execution(logger)
async def cancel_profile(request: web.Request) -> web.Response:
    user = require_user(request)
    factory = request.app[FACTORY_KEY]
    async with request.app[DATABASE_KEY].get_session() as session:
        profile = await factory.create_autopay_service(session).cancel_profile(user.id)
    return json_response(profile)


@routes.get("/api/autopay/claims")
@log_request_execution(logger)
async def claims(request: web.Request) -> web.Response:
    user = require_user(request)
    factory = request.app[FACTORY_KEY]
    async with request.app[DATABASE_KEY].get_session() as session:
        result = await factory.create_autopay_service(session).claims(user.id)
    return json_response(result)


@routes.post("/api/admin/autopay/run")
@log_request_execution(logger)
async def run_open_draws(request: web.Request) -> web.Response:
    require_admin(request)
    force = flag_arg(request.query.get("force"))
    limit = int_arg(request.query.get("limit"), "limit", required=False) or 50

    factory = request.app[FACTORY_KEY]
    async with request.app[DATABASE_KEY].get_session() as session:
        results = await factory.create_autopay_service(session).run_for_open_draws(
            force=force, limit=max(1, limit)
        )
    return json_response({"runs": [asdict(r) for r in results]})


@routes.post(r"/api/admin/autopay/run/{draw_id:\d+}")
@log_request_execution(logger)
async def run_draw(request: web.Request) -> web.Response:
    require_admin(request)
    draw_id = int_arg(request.match_info["draw_id"], "draw_id")
    force = flag_arg(request.query.get("force"))

    factory = request.app[FACTORY_KEY]
    async with request.app[DATABASE_KEY].get_session() as session:
        result = await factory.create_autopay_service(session).run_for_draw(
            draw_id, force=force
        )
    return json_response(result)
