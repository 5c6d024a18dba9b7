"""Ticket ledger primitives shared by every path that claims numbers.

Reservation, voucher redemption and autopay all go through the same
lock -> lazy expiry -> authoritative taken set -> re-read sequence.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Sequence

from sqlalchemy import func, insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from newstore.common.helpers import format_number_label, utc_now
from newstore.exceptions.core_exceptions import NotFound
from newstore.models.draw import Draw
from newstore.models.number_slot import NumberSlot
from newstore.models.payment import Payment
from newstore.models.reservation import Reservation
from newstore.models.status import PaymentStatus, ReservationStatus, SlotStatus

logger = logging.getLogger(__name__)


@dataclass
class BoardEntry:
    n: int
    label: str
    state: SlotStatus
    is_mine: bool
    is_winner: bool


@dataclass
class Board:
    draw_id: int
    status: str
    total_numbers: int
    numbers: list[BoardEntry]


class LedgerService:
    def __init__(self, db: AsyncSession):
        self.db = db

    def _insert_ignore(self):
        dialect = self.db.bind.dialect.name if self.db.bind is not None else ""
        if dialect == "postgresql":
            return postgresql.insert(NumberSlot).on_conflict_do_nothing()
        if dialect == "sqlite":
            return sqlite.insert(NumberSlot).on_conflict_do_nothing()
        return insert(NumberSlot).prefix_with("IGNORE")

    async def ensure_slots(self, draw_id: int, numbers: Iterable[int]) -> None:
        """Create any missing slot rows. Concurrent inserts of the same row are ignored."""
        wanted = sorted(set(numbers))
        if not wanted:
            return

        result = await self.db.execute(
            select(NumberSlot.n).where(
                NumberSlot.draw_id == draw_id, NumberSlot.n.in_(wanted)
            )
        )
        existing = set(result.scalars().all())
        missing = [n for n in wanted if n not in existing]
        if not missing:
            return

        logger.debug(f"Creating {len(missing)} missing slot(s) for draw {draw_id}")
        await self.db.execute(
            self._insert_ignore(),
            [
                {
                    "draw_id": draw_id,
                    "n": n,
                    "status": SlotStatus.AVAILABLE.value,
                    "reservation_id": None,
                }
                for n in missing
            ],
        )

    async def lock_slots(self, draw_id: int, numbers: Iterable[int]) -> list[NumberSlot]:
        """Lock slot rows FOR UPDATE in ascending number order."""
        result = await self.db.execute(
            select(NumberSlot)
            .where(NumberSlot.draw_id == draw_id, NumberSlot.n.in_(sorted(set(numbers))))
            .order_by(NumberSlot.n)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def release_stale_holds(
        self, draw_id: int, slots: Sequence[NumberSlot], now: datetime
    ) -> list[int]:
        """Free locked slots whose owning reservation no longer blocks.

        Active reservations past expiry become expired. Slots pointing at a
        missing or non-blocking reservation are freed, one update per
        reservation. Returns the freed numbers.
        """
        held = [s for s in slots if s.status == SlotStatus.RESERVED]
        if not held:
            return []

        owner_ids = sorted({s.reservation_id for s in held if s.reservation_id})
        owners: dict[str, Reservation] = {}
        if owner_ids:
            result = await self.db.execute(
                select(Reservation)
                .where(Reservation.id.in_(owner_ids))
                .order_by(Reservation.id)
                .with_for_update()
            )
            owners = {r.id: r for r in result.scalars().all()}

        freed: list[int] = []
        for owner_id in owner_ids:
            reservation = owners.get(owner_id)
            if reservation is not None and reservation.is_blocking(now):
                continue

            if reservation is not None and reservation.status.is_blocking:
                reservation.status = ReservationStatus.EXPIRED
                logger.info(f"Reservation {owner_id} expired lazily")

            await self.db.execute(
                update(NumberSlot)
                .where(
                    NumberSlot.draw_id == draw_id,
                    NumberSlot.reservation_id == owner_id,
                    NumberSlot.status == SlotStatus.RESERVED,
                )
                .values(status=SlotStatus.AVAILABLE, reservation_id=None)
                .execution_options(synchronize_session=False)
            )
            freed.extend(s.n for s in held if s.reservation_id == owner_id)

        orphans = [s.n for s in held if not s.reservation_id]
        if orphans:
            await self.db.execute(
                update(NumberSlot)
                .where(
                    NumberSlot.draw_id == draw_id,
                    NumberSlot.n.in_(orphans),
                    NumberSlot.status == SlotStatus.RESERVED,
                    NumberSlot.reservation_id.is_(None),
                )
                .values(status=SlotStatus.AVAILABLE)
                .execution_options(synchronize_session=False)
            )
            freed.extend(orphans)

        await self.db.flush()
        return sorted(freed)

    async def approved_numbers(
        self, draw_id: int, user_id: Optional[str] = None
    ) -> set[int]:
        """Numbers covered by approved payments. Payments are the durable truth."""
        query = select(Payment.numbers).where(
            Payment.draw_id == draw_id,
            Payment.status == PaymentStatus.APPROVED.value,
        )
        if user_id is not None:
            query = query.where(Payment.user_id == user_id)

        result = await self.db.execute(query)
        taken: set[int] = set()
        for numbers in result.scalars().all():
            taken.update(numbers or [])
        return taken

    async def blocking_reservation_numbers(
        self, draw_id: int, now: datetime, user_id: Optional[str] = None
    ) -> set[int]:
        query = select(Reservation.numbers).where(
            Reservation.draw_id == draw_id,
            Reservation.status == ReservationStatus.ACTIVE,
            Reservation.expires_at > now,
        )
        if user_id is not None:
            query = query.where(Reservation.user_id == user_id)

        result = await self.db.execute(query)
        held: set[int] = set()
        for numbers in result.scalars().all():
            held.update(numbers or [])
        return held

    async def lock_and_check(
        self,
        draw_id: int,
        numbers: Sequence[int],
        now: datetime,
        own_reservation_id: Optional[str] = None,
    ) -> tuple[list[NumberSlot], list[int]]:
        """Lock the requested slots and return them with every conflicting number.

        A slot reserved by own_reservation_id is not a conflict.
        """
        await self.ensure_slots(draw_id, numbers)
        slots = await self.lock_slots(draw_id, numbers)
        await self.release_stale_holds(draw_id, slots, now)

        taken = await self.approved_numbers(draw_id)
        slots = await self.lock_slots(draw_id, numbers)

        conflicts = []
        for slot in slots:
            if slot.n in taken or slot.status == SlotStatus.SOLD:
                conflicts.append(slot.n)
            elif slot.status == SlotStatus.RESERVED and (
                own_reservation_id is None or slot.reservation_id != own_reservation_id
            ):
                conflicts.append(slot.n)

        return slots, sorted(conflicts)

    async def mark_sold(self, draw_id: int, numbers: Iterable[int]) -> list[int]:
        """Mark slots sold. Returns only numbers that changed state."""
        wanted = sorted(set(numbers))
        if not wanted:
            return []

        await self.ensure_slots(draw_id, wanted)
        slots = await self.lock_slots(draw_id, wanted)
        changed = []
        for slot in slots:
            if slot.status != SlotStatus.SOLD:
                slot.status = SlotStatus.SOLD
                slot.reservation_id = None
                changed.append(slot.n)
            elif slot.reservation_id is not None:
                slot.reservation_id = None
        await self.db.flush()
        return changed

    async def count_sold(self, draw_id: int) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(NumberSlot)
            .where(NumberSlot.draw_id == draw_id, NumberSlot.status == SlotStatus.SOLD)
        )
        return int(result.scalar() or 0)

    async def board(
        self,
        draw_id: int,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Board:
        """Every number of the draw with its public state.

        Approved payments count as sold and active unexpired holds as
        reserved even when slot rows lag behind.
        """
        draw = await self.db.get(Draw, draw_id)
        if draw is None:
            raise NotFound(f"Draw {draw_id} not found", code="draw_not_found")

        now = now or utc_now()
        result = await self.db.execute(
            select(NumberSlot).where(NumberSlot.draw_id == draw_id)
        )
        slots = {s.n: s for s in result.scalars().all()}
        sold = await self.approved_numbers(draw_id)
        held = await self.blocking_reservation_numbers(draw_id, now)

        mine: set[int] = set()
        if user_id is not None:
            mine = await self.approved_numbers(draw_id, user_id)
            mine |= await self.blocking_reservation_numbers(draw_id, now, user_id)

        entries = []
        for n in range(draw.total_numbers):
            slot = slots.get(n)
            if n in sold or (slot is not None and slot.status == SlotStatus.SOLD):
                state = SlotStatus.SOLD
            elif n in held:
                state = SlotStatus.RESERVED
            else:
                state = SlotStatus.AVAILABLE
            entries.append(
                BoardEntry(
                    n=n,
                    label=format_number_label(n),
                    state=state,
                    is_mine=n in mine,
                    is_winner=draw.winner_number == n,
                )
            )

        return Board(
            draw_id=draw.id,
            status=draw.status.value,
            total_numbers=draw.total_numbers,
            numbers=entries,
        )
