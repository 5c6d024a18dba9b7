import logging

from aiohttp import web

from newstore.api.context import (
    AUTOMATIONS_KEY,
    CONFIG_KEY,
    DATABASE_KEY,
    json_response,
)

logger = logging.getLogger(__name__)

routes = web.RouteTableDef()


@routes.get("/api/health")
async def health(request: web.Request) -> web.Response:
    database_ok = await request.app[DATABASE_KEY].ping()
    automations = request.app.get(AUTOMATIONS_KEY)

    body = {
        "ok": database_ok,
        "version": request.app[CONFIG_KEY].APP_VERSION,
        "database": "ok" if database_ok else "unavailable",
    }
    if automations is not None:
        body["active_jobs"] = automations.active_jobs
        body["job_failures"] = dict(automations.job_failures)

    return json_response(body, status=200 if database_ok else 503)
