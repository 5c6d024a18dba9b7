import logging
from typing import Optional

from aiohttp import web

from newstore.api.context import (
    AUTOMATIONS_KEY,
    CONFIG_KEY,
    DATABASE_KEY,
    FACTORY_KEY,
    SWEEPER_KEY,
)
from newstore.api.middlewares import (
    auto_reconcile_middleware,
    error_middleware,
    identity_middleware,
)
from newstore.api.routes import admin, autopay, draws, health, payments, reservations, vouchers
from newstore.automations import NewStoreAutomations
from newstore.config import Config
from newstore.database.database import Database
from newstore.services.reconciliation_service import ReconciliationSweeper
from newstore.services.service_factory import ServiceFactory

logger = logging.getLogger(__name__)


def create_app(
    config: Config,
    database: Database,
    factory: ServiceFactory,
    automations: Optional[NewStoreAutomations] = None,
    sweeper: Optional[ReconciliationSweeper] = None,
) -> web.Application:
    """Build the HTTP application.

    The sweeper defaults to one bound to `database`; automations are optional
    so tests can run handlers without a scheduler.
    """
    app = web.Application(
        middlewares=[error_middleware, identity_middleware, auto_reconcile_middleware]
    )
    app[CONFIG_KEY] = config
    app[DATABASE_KEY] = database
    app[FACTORY_KEY] = factory
    app[SWEEPER_KEY] = sweeper or factory.create_reconciliation_sweeper(
        database.get_session
    )
    if automations is not None:
        app[AUTOMATIONS_KEY] = automations

    for module in (health, draws, reservations, payments, vouchers, autopay, admin):
        app.add_routes(module.routes)

    app.on_startup.append(_on_startup)
    app.on_cleanup.append(_on_cleanup)
    return app


async def _on_startup(app: web.Application):
    automations = app.get(AUTOMATIONS_KEY)
    if automations is not None:
        await automations.start()
    logger.info(f"New Store API v{app[CONFIG_KEY].APP_VERSION} started")


async def _on_cleanup(app: web.Application):
    logger.info("Starting graceful shutdown...")
    automations = app.get(AUTOMATIONS_KEY)
    if automations is not None:
        await automations.stop()

    await app[DATABASE_KEY].dispose()
    await app[FACTORY_KEY].emitter.emit("shutdown")
    logger.info("All services cleaned up")
