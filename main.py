import newstore.logging_config  # pyright: ignore  # noqa: F401 # isort:skip
import argparse
import asyncio
import logging
import sys

from aiohttp import web

from newstore.api.app import create_app
from newstore.automations import NewStoreAutomations
from newstore.config import CONFIG
from newstore.database.database import db
from newstore.http import HTTP
from newstore.services.service_factory import get_service_factory

logger = logging.getLogger(__name__)


def init_app() -> None:
    if CONFIG and HTTP:
        logger.info("Requirements loaded")

    args = parse_cli_arguments()

    if args.create_tables:
        asyncio.run(create_tables())
        return

    factory = get_service_factory()
    sweeper = factory.create_reconciliation_sweeper(db.get_session)
    automations = None
    if not args.no_scheduler:
        automations = NewStoreAutomations(sweeper=sweeper, database=db, factory=factory)

    app = create_app(CONFIG, db, factory, automations=automations, sweeper=sweeper)

    logger.info(f"Starting New Store ticket core v{CONFIG.APP_VERSION}")
    web.run_app(
        app,
        host=args.host or CONFIG.HTTP_HOST,
        port=args.port or CONFIG.HTTP_PORT,
        access_log=logging.getLogger("aiohttp.access"),
    )


def parse_cli_arguments() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Ticket allocation and settlement service for the New Store raffle."
    )
    parser.add_argument("--host", default=None, help="Bind address.")
    parser.add_argument("--port", type=int, default=None, help="Bind port.")
    parser.add_argument(
        "--no-scheduler",
        action="store_true",
        default=False,
        help="Run without periodic background jobs.",
    )
    parser.add_argument(
        "--create-tables",
        action="store_true",
        default=False,
        help="Create tables from model metadata and exit (local development only).",
    )

    return parser.parse_args()


async def create_tables() -> None:
    try:
        await db.create_all()
        logger.info("Tables created")
    finally:
        await db.dispose()


if __name__ == "__main__":
    try:
        init_app()
    except KeyboardInterrupt:
        sys.exit(0)
