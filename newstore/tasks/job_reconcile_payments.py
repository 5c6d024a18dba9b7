import logging
from typing import Optional

from newstore.common.logging_utils import log_task_execution
from newstore.services.reconciliation_service import (
    ReconciliationSweeper,
    SweepResult,
)

logger = logging.getLogger(__name__)


@log_task_execution(logger)
async def job_reconcile_payments(
    sweeper: ReconciliationSweeper,
    force: bool = False,
    lookback_minutes: Optional[int] = None,
) -> SweepResult:
    result = await sweeper.kick(force=force, lookback_minutes=lookback_minutes)
    if result.skipped:
        logger.debug(f"Reconcile sweep skipped: {result.skipped}")
    return result
