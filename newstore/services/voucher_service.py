import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from newstore.common.helpers import normalize_numbers, utc_now
from newstore.common.logging_utils import log_service_execution
from newstore.exceptions.core_exceptions import (
    Conflict,
    Forbidden,
    InvalidInput,
    NotFound,
)
from newstore.models.draw import Draw
from newstore.models.payment import Payment
from newstore.models.reservation import Reservation
from newstore.models.status import PaymentMethod, PaymentStatus, ReservationStatus
from newstore.models.voucher import Voucher
from newstore.services.draw_service import DrawService
from newstore.services.ledger_service import LedgerService
from newstore.services.settlement_service import SettlementService

logger = logging.getLogger(__name__)


@dataclass
class RedemptionResult:
    draw_id: int
    numbers: list[int]
    consumed: int
    payment_id: str
    reservation_id: Optional[str]
    draw_closed: bool


@dataclass
class IssueResult:
    voucher: Voucher
    draw: Draw
    created: bool
    draw_created: bool


class VoucherService:
    def __init__(
        self,
        db: AsyncSession,
        settlement: Optional[SettlementService] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.clock = clock
        self.settlement = settlement or SettlementService(db, clock=clock)
        self.ledger = LedgerService(db)

    async def remaining(self, user_id: str, draw_id: int) -> int:
        result = await self.db.execute(
            select(func.coalesce(func.sum(Voucher.remaining), 0)).where(
                Voucher.user_id == user_id, Voucher.draw_id == draw_id
            )
        )
        return int(result.scalar() or 0)

    @log_service_execution(logger)
    async def issue_for_purchase(
        self, user_id: str, product_id: str, purchase_ref: str, count: int = 1
    ) -> IssueResult:
        """Issue vouchers for a confirmed product purchase.

        Opens a draw for the product when none is open. Re-issuing the same
        purchase_ref returns the existing voucher.
        """
        if not product_id or not purchase_ref:
            raise InvalidInput(
                "product_id and purchase_ref are required", code="invalid_payload"
            )
        if count < 1:
            raise InvalidInput("count must be positive", code="invalid_count")

        existing = await self.db.execute(
            select(Voucher).where(Voucher.purchase_ref == purchase_ref)
        )
        voucher = existing.scalars().first()
        if voucher is not None:
            draw = await self.db.get(Draw, voucher.draw_id)
            await self.db.commit()
            return IssueResult(voucher=voucher, draw=draw, created=False, draw_created=False)

        draw, draw_created = await DrawService(self.db).ensure_open_draw(product_id)
        voucher = Voucher(
            user_id=user_id,
            draw_id=draw.id,
            remaining=count,
            used=False,
            purchase_ref=purchase_ref,
            created_at=self.clock(),
        )
        self.db.add(voucher)
        await self.db.commit()

        logger.info(
            f"Issued {count} voucher(s) to {user_id} for draw {draw.id} ({purchase_ref})"
        )
        return IssueResult(
            voucher=voucher, draw=draw, created=True, draw_created=draw_created
        )

    async def _lock_own_reservation(
        self, user_id: str, draw_id: int, reservation_id: Optional[str]
    ) -> Reservation | None:
        if not reservation_id:
            return None

        result = await self.db.execute(
            select(Reservation).where(Reservation.id == reservation_id).with_for_update()
        )
        reservation = result.scalars().first()
        if reservation is None:
            raise NotFound("Reservation not found", code="reservation_not_found")
        if reservation.user_id != user_id:
            raise Forbidden("This reservation belongs to another user")
        if reservation.draw_id != draw_id:
            raise InvalidInput(
                "Reservation belongs to another draw", code="reservation_draw_mismatch"
            )
        return reservation

    @log_service_execution(logger)
    async def redeem(
        self,
        user_id: str,
        draw_id: int,
        numbers,
        reservation_id: Optional[str] = None,
    ) -> RedemptionResult:
        if not isinstance(numbers, (list, tuple)) or not numbers:
            raise InvalidInput("No numbers were requested", code="invalid_payload")

        draw = await self.db.get(Draw, draw_id)
        if draw is None:
            raise InvalidInput(f"Draw {draw_id} does not exist", code="invalid_draw_id")
        if not draw.is_open:
            raise Conflict("draw_closed", f"Draw {draw_id} is closed")

        wanted = normalize_numbers(numbers, draw.total_numbers)
        if not wanted:
            raise InvalidInput("No valid numbers were requested", code="invalid_payload")

        now = self.clock()
        reservation = await self._lock_own_reservation(user_id, draw_id, reservation_id)
        own_id = (
            reservation.id
            if reservation is not None and reservation.status.is_blocking
            else None
        )

        _, conflicts = await self.ledger.lock_and_check(
            draw_id, wanted, now, own_reservation_id=own_id
        )
        if conflicts:
            await self.db.rollback()
            raise Conflict(
                "unavailable", "Some numbers are no longer available", conflicts=conflicts
            )

        result = await self.db.execute(
            select(Voucher)
            .where(
                Voucher.user_id == user_id,
                Voucher.draw_id == draw_id,
                Voucher.remaining > 0,
            )
            .order_by(Voucher.created_at, Voucher.id)
            .with_for_update(skip_locked=True)
        )
        vouchers = list(result.scalars().all())
        balance = sum(v.remaining for v in vouchers)
        if balance < len(wanted):
            await self.db.rollback()
            raise Conflict(
                "not_enough_vouchers",
                f"Need {len(wanted)} voucher(s), have {balance}",
                remaining=balance,
            )

        await self.ledger.mark_sold(draw_id, wanted)

        to_consume = len(wanted)
        for voucher in vouchers:
            if to_consume <= 0:
                break
            take = min(voucher.remaining, to_consume)
            voucher.remaining -= take
            to_consume -= take
            if voucher.remaining == 0:
                voucher.used = True
                voucher.consumed_at = now

        payment_id = f"voucher-{uuid.uuid4()}"
        self.db.add(
            Payment(
                id=payment_id,
                user_id=user_id,
                draw_id=draw_id,
                numbers=wanted,
                amount_cents=0,
                status=PaymentStatus.APPROVED.value,
                method=PaymentMethod.VOUCHER,
                created_at=now,
                paid_at=now,
                settled_at=now,
            )
        )

        if reservation is not None:
            reservation.status = ReservationStatus.PAID
            reservation.numbers = sorted(set(reservation.numbers) | set(wanted))
            reservation.payment_id = reservation.payment_id or payment_id

        saved_reservation_id = reservation.id if reservation is not None else None
        await self.db.commit()
        logger.info(
            f"User {user_id} redeemed {len(wanted)} voucher(s) in draw {draw_id}: {wanted}"
        )

        closed = await self.settlement.finalize_draw_if_complete(draw_id)
        return RedemptionResult(
            draw_id=draw_id,
            numbers=wanted,
            consumed=len(wanted),
            payment_id=payment_id,
            reservation_id=saved_reservation_id,
            draw_closed=closed,
        )
