import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from newstore.common.helpers import utc_now
from newstore.common.logging_utils import log_service_execution
from newstore.database.locks import DRAW_COMPLETION_LOCK, advisory_lock
from newstore.event_emitter import EventEmitter, event_emitter
from newstore.exceptions.core_exceptions import NotFound
from newstore.models.draw import Draw
from newstore.models.payment import Payment
from newstore.models.reservation import Reservation
from newstore.models.status import (
    DrawStatus,
    PaymentStatus,
    ReservationStatus,
    normalize_payment_status,
)
from newstore.services.ledger_service import LedgerService

logger = logging.getLogger(__name__)


@dataclass
class SettlementResult:
    payment_id: str
    status: str
    settled: bool = False
    sold_numbers: list[int] = field(default_factory=list)
    draw_closed: bool = False


class SettlementService:
    """Turns approved payments into sold numbers, exactly once.

    Webhooks, client polls, the reconciliation sweeper and admin replays all
    funnel into apply_provider_status.
    """

    def __init__(
        self,
        db: AsyncSession,
        emitter: Optional[EventEmitter] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.emitter = emitter or event_emitter
        self.clock = clock
        self.ledger = LedgerService(db)

    async def _lock_payment(self, payment_id: str) -> Payment | None:
        result = await self.db.execute(
            select(Payment).where(Payment.id == payment_id).with_for_update()
        )
        return result.scalars().first()

    @log_service_execution(logger)
    async def apply_provider_status(
        self, payment_id: str, status: Optional[str]
    ) -> SettlementResult:
        payment = await self._lock_payment(payment_id)
        if payment is None:
            raise NotFound(f"Payment {payment_id} not found", code="payment_not_found")

        new_status = normalize_payment_status(status)
        if payment.status == PaymentStatus.APPROVED and new_status != PaymentStatus.APPROVED:
            logger.warning(
                f"Provider reports '{new_status}' for approved payment {payment_id}; "
                f"keeping approved"
            )
            new_status = PaymentStatus.APPROVED.value

        if payment.status != new_status:
            logger.info(f"Payment {payment_id}: {payment.status} -> {new_status}")
            payment.status = new_status
        if new_status == PaymentStatus.APPROVED and payment.paid_at is None:
            payment.paid_at = self.clock()

        draw_id = payment.draw_id
        await self.db.commit()

        result = SettlementResult(payment_id=payment_id, status=new_status)
        if new_status != PaymentStatus.APPROVED:
            return result

        result.settled, result.sold_numbers = await self.settle_payment(payment_id)
        if draw_id is not None:
            result.draw_closed = await self.finalize_draw_if_complete(draw_id)
        return result

    async def settle_payment(self, payment_id: str) -> tuple[bool, list[int]]:
        """Mark an approved payment's numbers sold and its reservation paid.

        Returns whether this call settled the payment and which slots changed.
        Running it again changes nothing.
        """
        payment = await self._lock_payment(payment_id)
        if payment is None:
            raise NotFound(f"Payment {payment_id} not found", code="payment_not_found")
        if payment.status != PaymentStatus.APPROVED:
            await self.db.commit()
            return False, []

        changed: list[int] = []
        if payment.draw_id is not None:
            changed = await self.ledger.mark_sold(payment.draw_id, payment.numbers)

            reservations = await self.db.execute(
                select(Reservation)
                .where(Reservation.payment_id == payment.id)
                .with_for_update()
            )
            for reservation in reservations.scalars().all():
                if reservation.status != ReservationStatus.PAID:
                    logger.info(f"Reservation {reservation.id} paid by {payment.id}")
                    reservation.status = ReservationStatus.PAID

        newly_settled = payment.settled_at is None
        if newly_settled:
            payment.settled_at = self.clock()
        await self.db.commit()

        if changed:
            logger.info(
                f"Payment {payment_id} settled: draw {payment.draw_id} numbers {changed} sold"
            )
        return newly_settled, changed

    async def finalize_draw_if_complete(self, draw_id: int) -> bool:
        """Close the draw when every slot is sold. Returns True only on the transition."""
        closed = False
        async with advisory_lock(self.db, DRAW_COMPLETION_LOCK, draw_id):
            result = await self.db.execute(
                select(Draw).where(Draw.id == draw_id).with_for_update()
            )
            draw = result.scalars().first()
            if draw is not None and draw.is_open:
                sold = await self.ledger.count_sold(draw_id)
                if sold >= draw.total_numbers:
                    draw.status = DrawStatus.CLOSED
                    draw.closed_at = draw.closed_at or self.clock()
                    closed = True
                    await self.db.flush()
        await self.db.commit()

        if closed:
            logger.info(f"Draw {draw_id} sold out and closed")
            await self.emitter.emit("draw_closed", draw_id)
        return closed
