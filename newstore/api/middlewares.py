import hmac
import logging

from aiohttp import web

from newstore.api.context import (
    AUTOMATIONS_KEY,
    CONFIG_KEY,
    SWEEPER_KEY,
    TRUTHY,
    CurrentUser,
    json_response,
)
from newstore.exceptions.core_exceptions import NewStoreError
from newstore.tasks.job_reconcile_payments import job_reconcile_payments

logger = logging.getLogger(__name__)

PAYMENTS_PREFIX = "/api/payments"


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except NewStoreError as e:
        if e.status >= 500:
            logger.warning(f"{request.method} {request.path} -> {e.status} {e.code}: {e.message}")
        return json_response(e.to_dict(), status=e.status)
    except Exception:
        logger.exception(f"Unhandled error on {request.method} {request.path}")
        return json_response(
            {"error": "internal_error", "message": "Unexpected error."}, status=500
        )


@web.middleware
async def identity_middleware(request: web.Request, handler):
    """Trust identity headers set by the upstream auth gateway."""
    request["user"] = None
    user_id = request.headers.get("X-User-Id", "").strip()
    if user_id:
        secret = request.app[CONFIG_KEY].AUTH_GATEWAY_SECRET
        presented = request.headers.get("X-Gateway-Secret", "")
        if secret and not hmac.compare_digest(presented, secret):
            logger.warning(f"Rejected identity headers on {request.path}: bad gateway secret")
        else:
            request["user"] = CurrentUser(
                id=user_id,
                email=request.headers.get("X-User-Email") or None,
                name=request.headers.get("X-User-Name") or None,
                is_admin=request.headers.get("X-User-Admin", "").lower() in TRUTHY,
            )
    return await handler(request)


@web.middleware
async def auto_reconcile_middleware(request: web.Request, handler):
    """Kick a background reconciliation sweep on payment traffic."""
    config = request.app[CONFIG_KEY]
    if config.AUTO_RECONCILE_ON_HIT and request.path.startswith(PAYMENTS_PREFIX):
        sweeper = request.app.get(SWEEPER_KEY)
        automations = request.app.get(AUTOMATIONS_KEY)
        if sweeper is not None and automations is not None and not sweeper.in_flight:
            await automations.track_job(job_reconcile_payments, sweeper)
    return await handler(request)
