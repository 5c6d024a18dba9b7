import logging
from typing import Optional

from newstore.common.logging_utils import log_task_execution
from newstore.database.database import Database, db
from newstore.services.reservation_service import ExpireSweepResult
from newstore.services.service_factory import ServiceFactory, get_service_factory

logger = logging.getLogger(__name__)


@log_task_execution(logger)
async def job_expire_reservations(
    database: Optional[Database] = None, factory: Optional[ServiceFactory] = None
) -> ExpireSweepResult:
    database = database or db
    factory = factory or get_service_factory()

    async with database.get_session() as session:
        service = factory.create_reservation_service(session)
        return await service.expire_stale()
