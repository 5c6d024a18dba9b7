"""Shared plumbing for HTTP handlers: app keys, identity and JSON helpers."""

import dataclasses
import enum
import functools
import json
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from aiohttp import web

from newstore.automations import NewStoreAutomations
from newstore.config import Config
from newstore.database.database import Database
from newstore.exceptions.core_exceptions import Forbidden, InvalidInput, Unauthorized
from newstore.models.draw import Draw
from newstore.models.payment import Payment
from newstore.services.reconciliation_service import ReconciliationSweeper
from newstore.services.service_factory import ServiceFactory

CONFIG_KEY = web.AppKey("config", Config)
DATABASE_KEY = web.AppKey("database", Database)
FACTORY_KEY = web.AppKey("factory", ServiceFactory)
AUTOMATIONS_KEY = web.AppKey("automations", NewStoreAutomations)
SWEEPER_KEY = web.AppKey("sweeper", ReconciliationSweeper)

TRUTHY = {"1", "true", "yes", "on"}


@dataclass
class CurrentUser:
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    is_admin: bool = False


def require_user(request: web.Request) -> CurrentUser:
    user = request.get("user")
    if user is None:
        raise Unauthorized()
    return user


def require_admin(request: web.Request) -> CurrentUser:
    user = require_user(request)
    if not user.is_admin:
        raise Forbidden("Admin access required.")
    return user


def _default(value: Any):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, enum.Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


dumps = functools.partial(json.dumps, default=_default)


def json_response(data: Any, status: int = 200) -> web.Response:
    if dataclasses.is_dataclass(data) and not isinstance(data, type):
        data = dataclasses.asdict(data)
    return web.json_response(data, status=status, dumps=dumps)


async def read_json(request: web.Request) -> dict[str, Any]:
    """Request body as a dict; an empty body reads as {}."""
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise InvalidInput("Body must be valid JSON.", code="invalid_payload")
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise InvalidInput("Body must be a JSON object.", code="invalid_payload")
    return body


def int_arg(value: Any, name: str, required: bool = True) -> Optional[int]:
    if value is None or value == "":
        if required:
            raise InvalidInput(f"'{name}' is required.", code=f"invalid_{name}")
        return None
    if isinstance(value, bool):
        raise InvalidInput(f"'{name}' must be an integer.", code=f"invalid_{name}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidInput(f"'{name}' must be an integer.", code=f"invalid_{name}")


def flag_arg(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in TRUTHY


def draw_to_dict(draw: Draw) -> dict[str, Any]:
    return {
        "id": draw.id,
        "status": draw.status,
        "total_numbers": draw.total_numbers,
        "product_id": draw.product_id,
        "product_name": draw.product_name,
        "product_link": draw.product_link,
        "opened_at": draw.opened_at or draw.created_at,
        "closed_at": draw.closed_at,
        "realized_at": draw.realized_at,
        "winner_number": draw.winner_number,
        "winner_user_id": draw.winner_user_id,
        "autopay_ran_at": draw.autopay_ran_at,
    }


def payment_to_dict(payment: Payment) -> dict[str, Any]:
    return {
        "id": payment.id,
        "draw_id": payment.draw_id,
        "numbers": payment.numbers,
        "amount_cents": payment.amount_cents,
        "status": payment.status,
        "method": payment.method,
        "created_at": payment.created_at,
        "paid_at": payment.paid_at,
        "settled_at": payment.settled_at,
    }
