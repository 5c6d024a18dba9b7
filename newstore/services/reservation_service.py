import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import or_, select, update
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
from newstore.models.number_slot import NumberSlot
from newstore.models.reservation import Reservation
from newstore.models.status import DrawStatus, ReservationStatus, SlotStatus
from newstore.services.ledger_service import LedgerService

logger = logging.getLogger(__name__)

DEFAULT_TTL_MINUTES = 5
DEFAULT_MAX_NUMBERS_PER_USER = 20


@dataclass
class ReservationResult:
    reservation_id: str
    draw_id: int
    expires_at: datetime
    numbers: list[int]


@dataclass
class PurchaseLimit:
    draw_id: int
    max: int
    current: int
    requested: int
    remaining: int
    allowed: bool


@dataclass
class ExpireSweepResult:
    expired: int
    freed: int


class ReservationService:
    def __init__(
        self,
        db: AsyncSession,
        ttl_minutes: int = DEFAULT_TTL_MINUTES,
        max_numbers_per_user: int = DEFAULT_MAX_NUMBERS_PER_USER,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.ttl = timedelta(minutes=ttl_minutes)
        self.max_numbers_per_user = max_numbers_per_user
        self.clock = clock
        self.ledger = LedgerService(db)

    async def resolve_draw(self, draw_id: Optional[int]) -> Draw:
        """Explicit draw, or the latest open one when omitted."""
        if draw_id is None:
            result = await self.db.execute(
                select(Draw)
                .where(Draw.status == DrawStatus.OPEN)
                .order_by(Draw.id.desc())
                .limit(1)
            )
            draw = result.scalars().first()
            if draw is None:
                raise InvalidInput("There is no open draw", code="no_open_draw")
            return draw

        draw = await self.db.get(Draw, draw_id)
        if draw is None:
            raise InvalidInput(f"Draw {draw_id} does not exist", code="invalid_draw")
        if not draw.is_open:
            raise Conflict("draw_closed", f"Draw {draw_id} is closed")
        return draw

    async def _held_count(self, user_id: str, draw_id: int, now: datetime) -> int:
        held = await self.ledger.approved_numbers(draw_id, user_id)
        held |= await self.ledger.blocking_reservation_numbers(draw_id, now, user_id)
        return len(held)

    async def check_purchase_limit(
        self, user_id: str, draw_id: Optional[int] = None, add: int = 0
    ) -> PurchaseLimit:
        draw = await self.resolve_draw(draw_id)
        current = await self._held_count(user_id, draw.id, self.clock())
        remaining = max(0, self.max_numbers_per_user - current)
        return PurchaseLimit(
            draw_id=draw.id,
            max=self.max_numbers_per_user,
            current=current,
            requested=add,
            remaining=remaining,
            allowed=current + add <= self.max_numbers_per_user,
        )

    @log_service_execution(logger)
    async def reserve(
        self, user_id: str, numbers, draw_id: Optional[int] = None
    ) -> ReservationResult:
        if not isinstance(numbers, (list, tuple)) or len(numbers) == 0:
            raise InvalidInput("No numbers were requested", code="no_numbers")

        draw = await self.resolve_draw(draw_id)
        wanted = normalize_numbers(numbers, draw.total_numbers)
        if not wanted:
            raise InvalidInput("No valid numbers were requested", code="numbers_invalid")

        now = self.clock()
        target_draw_id = draw.id
        _, conflicts = await self.ledger.lock_and_check(target_draw_id, wanted, now)
        if conflicts:
            await self.db.rollback()
            logger.info(
                f"Reservation by {user_id} in draw {target_draw_id} conflicts on {conflicts}"
            )
            raise Conflict(
                "unavailable", "Some numbers are no longer available", conflicts=conflicts
            )

        held = await self._held_count(user_id, target_draw_id, now)
        if held + len(wanted) > self.max_numbers_per_user:
            await self.db.rollback()
            raise Conflict(
                "max_numbers_reached",
                f"At most {self.max_numbers_per_user} numbers per user in a draw",
                max=self.max_numbers_per_user,
                current=held,
            )

        reservation = Reservation(
            user_id=user_id,
            draw_id=draw.id,
            numbers=wanted,
            status=ReservationStatus.ACTIVE,
            created_at=now,
            expires_at=now + self.ttl,
        )
        self.db.add(reservation)
        await self.db.flush()

        await self.db.execute(
            update(NumberSlot)
            .where(NumberSlot.draw_id == draw.id, NumberSlot.n.in_(wanted))
            .values(status=SlotStatus.RESERVED, reservation_id=reservation.id)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        logger.info(
            f"Reservation {reservation.id} created for {user_id} in draw {draw.id}: {wanted}"
        )
        return ReservationResult(
            reservation_id=reservation.id,
            draw_id=draw.id,
            expires_at=reservation.expires_at,
            numbers=wanted,
        )

    async def get_reservation(self, reservation_id: str) -> Reservation | None:
        result = await self.db.execute(
            select(Reservation).where(Reservation.id == reservation_id)
        )
        return result.scalars().first()

    @log_service_execution(logger)
    async def cancel(self, user_id: str, reservation_id: str) -> Reservation:
        result = await self.db.execute(
            select(Reservation).where(Reservation.id == reservation_id).with_for_update()
        )
        reservation = result.scalars().first()
        if reservation is None:
            raise NotFound("Reservation not found", code="reservation_not_found")
        if reservation.user_id != user_id:
            raise Forbidden("This reservation belongs to another user")
        if not reservation.status.is_blocking:
            status = reservation.status.value
            await self.db.rollback()
            raise Conflict(
                "reservation_not_active",
                f"Reservation is {status}",
                status=status,
            )

        reservation.status = ReservationStatus.CANCELLED
        await self.db.execute(
            update(NumberSlot)
            .where(
                NumberSlot.draw_id == reservation.draw_id,
                NumberSlot.reservation_id == reservation.id,
                NumberSlot.status == SlotStatus.RESERVED,
            )
            .values(status=SlotStatus.AVAILABLE, reservation_id=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        logger.info(f"Reservation {reservation_id} cancelled by {user_id}")
        return reservation

    async def expire_stale(self) -> ExpireSweepResult:
        """Expire active reservations past TTL and free orphaned reserved slots.

        Best effort housekeeping. Reservation and redemption paths expire
        holds lazily on their own.
        """
        now = self.clock()
        expired = await self.db.execute(
            update(Reservation)
            .where(
                Reservation.status == ReservationStatus.ACTIVE,
                Reservation.expires_at <= now,
            )
            .values(status=ReservationStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )

        blocking = select(Reservation.id).where(
            Reservation.status == ReservationStatus.ACTIVE,
            Reservation.expires_at > now,
        )
        freed = await self.db.execute(
            update(NumberSlot)
            .where(
                NumberSlot.status == SlotStatus.RESERVED,
                or_(
                    NumberSlot.reservation_id.is_(None),
                    NumberSlot.reservation_id.not_in(blocking),
                ),
            )
            .values(status=SlotStatus.AVAILABLE, reservation_id=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        result = ExpireSweepResult(expired=expired.rowcount, freed=freed.rowcount)
        if result.expired or result.freed:
            logger.info(
                f"Expired {result.expired} reservation(s), freed {result.freed} slot(s)"
            )
        return result
