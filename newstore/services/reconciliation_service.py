import asyncio
import logging
import time
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from newstore.common.helpers import utc_now
from newstore.models.payment import Payment
from newstore.models.status import FINAL_PAYMENT_STATUSES, PaymentStatus
from newstore.services.payment_service import PaymentService

logger = logging.getLogger(__name__)

MIN_LOOKBACK_MINUTES = 5

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]
PaymentServiceFactory = Callable[[AsyncSession], PaymentService]


@dataclass
class SweepResult:
    skipped: Optional[str] = None
    scanned: int = 0
    updated: int = 0
    approved: int = 0
    failed: int = 0


class ReconciliationSweeper:
    """Re-queries the provider for payments that may have missed a webhook.

    Unforced calls collapse: one already running returns in_flight, one
    inside the minimum interval returns throttled. Forced calls wait for
    the running sweep and then run their own.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        payment_service_factory: PaymentServiceFactory,
        min_interval_seconds: float = 45,
        lookback_minutes: int = 1440,
        batch_max: int = 25,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.payment_service_factory = payment_service_factory
        self.min_interval_seconds = min_interval_seconds
        self.lookback_minutes = lookback_minutes
        self.batch_max = batch_max
        self.clock = clock
        self.now = now
        self._lock = asyncio.Lock()
        self._last_run: Optional[float] = None

    def _throttled(self) -> bool:
        return (
            self._last_run is not None
            and self.clock() - self._last_run < self.min_interval_seconds
        )

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    async def kick(
        self, force: bool = False, lookback_minutes: Optional[int] = None
    ) -> SweepResult:
        if not force:
            if self._lock.locked():
                return SweepResult(skipped="in_flight")
            if self._throttled():
                return SweepResult(skipped="throttled")

        async with self._lock:
            if not force and self._throttled():
                return SweepResult(skipped="throttled")
            self._last_run = self.clock()
            return await self._sweep(lookback_minutes)

    async def _candidates(self, since: datetime) -> list[str]:
        stale_statuses = [
            s.value for s in FINAL_PAYMENT_STATUSES if s != PaymentStatus.APPROVED
        ]
        async with self.session_factory() as session:
            result = await session.execute(
                select(Payment.id)
                .where(
                    Payment.draw_id.is_not(None),
                    Payment.created_at >= since,
                    or_(
                        Payment.status.not_in(
                            [PaymentStatus.APPROVED.value, *stale_statuses]
                        ),
                        and_(
                            Payment.status == PaymentStatus.APPROVED.value,
                            Payment.settled_at.is_(None),
                        ),
                    ),
                )
                .order_by(Payment.created_at.desc())
                .limit(self.batch_max)
            )
            return list(result.scalars().all())

    async def _sweep(self, lookback_minutes: Optional[int]) -> SweepResult:
        minutes = max(MIN_LOOKBACK_MINUTES, lookback_minutes or self.lookback_minutes)
        since = self.now() - timedelta(minutes=minutes)
        payment_ids = await self._candidates(since)

        result = SweepResult(scanned=len(payment_ids))
        for payment_id in payment_ids:
            try:
                async with self.session_factory() as session:
                    service = self.payment_service_factory(session)
                    settlement = await service.sync_from_provider(payment_id)
                result.updated += 1
                if settlement.status == PaymentStatus.APPROVED:
                    result.approved += 1
            except Exception as e:
                result.failed += 1
                logger.warning(f"Reconcile failed for payment {payment_id}: {e}")

        if result.scanned:
            logger.info(
                f"Reconcile sweep: scanned={result.scanned} updated={result.updated} "
                f"approved={result.approved} failed={result.failed}"
            )
        return result
