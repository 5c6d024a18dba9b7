import unittest
from unittest.mock import AsyncMock

from sqlalchemy import select

from newstore.event_emitter import EventEmitter
from newstore.exceptions.core_exceptions import NotFound
from newstore.models.draw import Draw
from newstore.models.number_slot import NumberSlot
from newstore.models.payment import Payment
from newstore.models.reservation import Reservation
from newstore.models.status import (
    DrawStatus,
    PaymentMethod,
    PaymentStatus,
    ReservationStatus,
    SlotStatus,
)
from newstore.services.settlement_service import SettlementService
from tests.helpers import (
    FIXED_NOW,
    FakeClock,
    create_approved_payment,
    create_draw,
    create_test_database,
)


class TestSettlementService(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.db = await create_test_database()
        self.clock = FakeClock()
        self.emitter = EventEmitter()
        self.closed_listener = AsyncMock()
        self.emitter.on("draw_closed", self.closed_listener)
        self.draw = await create_draw(self.db, total_numbers=10)

    async def asyncTearDown(self):
        await self.db.dispose()

    def service(self, session):
        return SettlementService(session, emitter=self.emitter, clock=self.clock)

    async def create_pending_payment(self, payment_id, numbers, reservation_id=None):
        async with self.db.get_session() as session:
            session.add(
                Payment(
                    id=payment_id,
                    user_id="alice",
                    draw_id=self.draw.id,
                    numbers=numbers,
                    amount_cents=len(numbers) * 5500,
                    status=PaymentStatus.PENDING.value,
                    method=PaymentMethod.PIX,
                    created_at=FIXED_NOW,
                )
            )
            if reservation_id:
                session.add(
                    Reservation(
                        id=reservation_id,
                        user_id="alice",
                        draw_id=self.draw.id,
                        numbers=numbers,
                        status=ReservationStatus.ACTIVE,
                        created_at=FIXED_NOW,
                        expires_at=FIXED_NOW,
                        payment_id=payment_id,
                    )
                )
            await session.commit()

    async def apply(self, payment_id, status):
        async with self.db.get_session() as session:
            return await self.service(session).apply_provider_status(payment_id, status)

    async def load(self, model, key):
        async with self.db.get_session() as session:
            return await session.get(model, key)

    async def sold_numbers(self):
        async with self.db.get_session() as session:
            result = await session.execute(
                select(NumberSlot.n)
                .where(
                    NumberSlot.draw_id == self.draw.id,
                    NumberSlot.status == SlotStatus.SOLD,
                )
                .order_by(NumberSlot.n)
            )
            return list(result.scalars().all())

    async def test_pending_status_is_stored_without_settling(self):
        await self.create_pending_payment("p1", [1, 2])

        result = await self.apply("p1", "in_process")

        self.assertEqual(result.status, "in_process")
        self.assertFalse(result.settled)
        self.assertEqual(await self.sold_numbers(), [])

    async def test_approval_settles_numbers_and_reservation(self):
        await self.create_pending_payment("p1", [1, 2], reservation_id="r1")

        result = await self.apply("p1", "APPROVED")

        self.assertEqual(result.status, PaymentStatus.APPROVED)
        self.assertTrue(result.settled)
        self.assertEqual(result.sold_numbers, [1, 2])
        self.assertEqual(await self.sold_numbers(), [1, 2])

        payment = await self.load(Payment, "p1")
        self.assertEqual(payment.paid_at, FIXED_NOW)
        self.assertEqual(payment.settled_at, FIXED_NOW)
        reservation = await self.load(Reservation, "r1")
        self.assertEqual(reservation.status, ReservationStatus.PAID)

    async def test_paid_spelling_normalizes_to_approved(self):
        await self.create_pending_payment("p1", [3])
        result = await self.apply("p1", "pago")
        self.assertEqual(result.status, PaymentStatus.APPROVED)
        self.assertEqual(await self.sold_numbers(), [3])

    async def test_settlement_is_idempotent(self):
        await self.create_pending_payment("p1", [1, 2])
        await self.apply("p1", "approved")

        self.clock.advance(minutes=5)
        again = await self.apply("p1", "approved")

        self.assertFalse(again.settled)
        self.assertEqual(again.sold_numbers, [])
        payment = await self.load(Payment, "p1")
        self.assertEqual(payment.paid_at, FIXED_NOW)
        self.assertEqual(payment.settled_at, FIXED_NOW)

    async def test_approved_payment_is_never_downgraded(self):
        await self.create_pending_payment("p1", [4])
        await self.apply("p1", "approved")

        result = await self.apply("p1", "pending")

        self.assertEqual(result.status, PaymentStatus.APPROVED)
        payment = await self.load(Payment, "p1")
        self.assertEqual(payment.status, PaymentStatus.APPROVED)

    async def test_unknown_payment(self):
        with self.assertRaises(NotFound) as ctx:
            await self.apply("missing", "approved")
        self.assertEqual(ctx.exception.code, "payment_not_found")

    async def test_settle_unsettled_approved_payment(self):
        payment_id = await create_approved_payment(self.db, self.draw.id, "bob", [7])

        async with self.db.get_session() as session:
            settled, changed = await self.service(session).settle_payment(payment_id)

        self.assertTrue(settled)
        self.assertEqual(changed, [7])

    async def test_draw_stays_open_one_short_of_sold_out(self):
        await self.create_pending_payment("p1", list(range(9)))

        result = await self.apply("p1", "approved")

        self.assertFalse(result.draw_closed)
        draw = await self.load(Draw, self.draw.id)
        self.assertEqual(draw.status, DrawStatus.OPEN)
        self.closed_listener.assert_not_awaited()

    async def test_draw_closes_exactly_once_when_sold_out(self):
        await self.create_pending_payment("p1", list(range(9)))
        await self.create_pending_payment("p2", [9])
        await self.apply("p1", "approved")

        result = await self.apply("p2", "approved")

        self.assertTrue(result.draw_closed)
        draw = await self.load(Draw, self.draw.id)
        self.assertEqual(draw.status, DrawStatus.CLOSED)
        self.assertEqual(draw.closed_at, FIXED_NOW)
        self.closed_listener.assert_awaited_once_with(self.draw.id)

        replay = await self.apply("p2", "approved")
        self.assertFalse(replay.draw_closed)
        async with self.db.get_session() as session:
            self.assertFalse(await self.service(session).finalize_draw_if_complete(self.draw.id))
        self.closed_listener.assert_awaited_once()
