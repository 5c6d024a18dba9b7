import logging
from typing import Optional

from newstore.common.logging_utils import log_task_execution
from newstore.database.database import Database, db
from newstore.services.autopay_service import AutopayRunResult
from newstore.services.service_factory import ServiceFactory, get_service_factory

logger = logging.getLogger(__name__)


@log_task_execution(logger)
async def job_autopay_draw(
    draw_id: int,
    force: bool = False,
    database: Optional[Database] = None,
    factory: Optional[ServiceFactory] = None,
) -> AutopayRunResult:
    """Autopay run for a single draw, scheduled right after it opens."""
    database = database or db
    factory = factory or get_service_factory()

    async with database.get_session() as session:
        service = factory.create_autopay_service(session)
        return await service.run_for_draw(draw_id, force=force)


@log_task_execution(logger)
async def job_autopay_open_draws(
    force: bool = False,
    database: Optional[Database] = None,
    factory: Optional[ServiceFactory] = None,
) -> list[AutopayRunResult]:
    database = database or db
    factory = factory or get_service_factory()

    async with database.get_session() as session:
        service = factory.create_autopay_service(session)
        results = await service.run_for_open_draws(force=force)

    for result in results:
        if result.error or result.reason:
            logger.info(
                f"Autopay draw {result.draw_id}: {result.error or result.reason}"
            )
    return results
