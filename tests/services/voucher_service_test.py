import unittest

from sqlalchemy import select

from newstore.exceptions.core_exceptions import Conflict, Forbidden, InvalidInput
from newstore.models.payment import Payment
from newstore.models.reservation import Reservation
from newstore.models.status import PaymentMethod, ReservationStatus
from newstore.models.voucher import Voucher
from newstore.services.draw_service import DrawService
from newstore.services.reservation_service import ReservationService
from newstore.services.voucher_service import VoucherService
from tests.helpers import (
    FakeClock,
    create_approved_payment,
    create_draw,
    create_test_database,
    create_voucher,
    get_draw_status,
)


class TestVoucherService(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.db = await create_test_database()
        self.clock = FakeClock()
        self.draw = await create_draw(self.db, total_numbers=10)

    async def asyncTearDown(self):
        await self.db.dispose()

    async def redeem(self, user_id, numbers, draw_id=None, reservation_id=None):
        async with self.db.get_session() as session:
            return await VoucherService(session, clock=self.clock).redeem(
                user_id, draw_id or self.draw.id, numbers, reservation_id=reservation_id
            )

    async def vouchers(self, user_id):
        async with self.db.get_session() as session:
            result = await session.execute(
                select(Voucher).where(Voucher.user_id == user_id).order_by(Voucher.id)
            )
            return list(result.scalars().all())

    async def test_remaining_sums_balances(self):
        await create_voucher(self.db, "alice", self.draw.id, remaining=2)
        await create_voucher(self.db, "alice", self.draw.id, remaining=3)
        await create_voucher(self.db, "bob", self.draw.id, remaining=1)

        async with self.db.get_session() as session:
            service = VoucherService(session)
            self.assertEqual(await service.remaining("alice", self.draw.id), 5)
            self.assertEqual(await service.remaining("carol", self.draw.id), 0)

    async def test_redeem_consumes_oldest_vouchers_first(self):
        await create_voucher(
            self.db, "alice", self.draw.id, remaining=1, created_at=self.clock.now
        )
        await create_voucher(
            self.db,
            "alice",
            self.draw.id,
            remaining=3,
            created_at=self.clock.advance(minutes=1),
        )

        result = await self.redeem("alice", [4, 2])

        self.assertEqual(result.numbers, [2, 4])
        self.assertEqual(result.consumed, 2)
        self.assertTrue(result.payment_id.startswith("voucher-"))
        self.assertIsNone(result.reservation_id)

        older, newer = await self.vouchers("alice")
        self.assertEqual(older.remaining, 0)
        self.assertTrue(older.used)
        self.assertEqual(older.consumed_at, self.clock.now)
        self.assertEqual(newer.remaining, 2)
        self.assertFalse(newer.used)

        async with self.db.get_session() as session:
            payment = await session.get(Payment, result.payment_id)
        self.assertEqual(payment.amount_cents, 0)
        self.assertEqual(payment.method, PaymentMethod.VOUCHER)
        self.assertIsNotNone(payment.settled_at)

    async def test_redeem_without_enough_vouchers(self):
        await create_voucher(self.db, "alice", self.draw.id, remaining=1)

        with self.assertRaises(Conflict) as ctx:
            await self.redeem("alice", [1, 2])

        self.assertEqual(ctx.exception.code, "not_enough_vouchers")
        self.assertEqual(ctx.exception.details["remaining"], 1)
        (voucher,) = await self.vouchers("alice")
        self.assertEqual(voucher.remaining, 1)

    async def test_redeem_conflicts_on_sold_numbers(self):
        await create_voucher(self.db, "alice", self.draw.id, remaining=2)
        await create_approved_payment(self.db, self.draw.id, "bob", [3])

        with self.assertRaises(Conflict) as ctx:
            await self.redeem("alice", [3, 4])

        self.assertEqual(ctx.exception.conflicts, [3])

    async def test_redeem_own_reservation_marks_it_paid(self):
        await create_voucher(self.db, "alice", self.draw.id, remaining=2)
        async with self.db.get_session() as session:
            reservation = await ReservationService(session, clock=self.clock).reserve(
                "alice", [5, 6], draw_id=self.draw.id
            )

        result = await self.redeem(
            "alice", [5, 6], reservation_id=reservation.reservation_id
        )

        self.assertEqual(result.reservation_id, reservation.reservation_id)
        async with self.db.get_session() as session:
            stored = await session.get(Reservation, reservation.reservation_id)
        self.assertEqual(stored.status, ReservationStatus.PAID)
        self.assertEqual(stored.payment_id, result.payment_id)

    async def test_redeem_someone_elses_reservation(self):
        await create_voucher(self.db, "bob", self.draw.id, remaining=1)
        async with self.db.get_session() as session:
            reservation = await ReservationService(session, clock=self.clock).reserve(
                "alice", [5], draw_id=self.draw.id
            )

        with self.assertRaises(Forbidden):
            await self.redeem("bob", [5], reservation_id=reservation.reservation_id)

    async def test_redeem_validations(self):
        with self.assertRaises(InvalidInput):
            await self.redeem("alice", [])
        with self.assertRaises(InvalidInput) as ctx:
            await self.redeem("alice", [1], draw_id=999)
        self.assertEqual(ctx.exception.code, "invalid_draw_id")

        async with self.db.get_session() as session:
            await DrawService(session).close_draw(self.draw.id)
        with self.assertRaises(Conflict) as ctx:
            await self.redeem("alice", [1])
        self.assertEqual(ctx.exception.code, "draw_closed")

    async def test_redeeming_last_numbers_closes_draw(self):
        await create_approved_payment(
            self.db, self.draw.id, "bob", list(range(8)), settled=True
        )
        await create_voucher(self.db, "alice", self.draw.id, remaining=2)

        result = await self.redeem("alice", [8, 9])

        self.assertTrue(result.draw_closed)
        self.assertEqual(await get_draw_status(self.db, self.draw.id), "closed")

    async def test_issue_opens_draw_for_new_product(self):
        async with self.db.get_session() as session:
            issued = await VoucherService(session, clock=self.clock).issue_for_purchase(
                "alice", "prod-new", "order-1", count=2
            )

        self.assertTrue(issued.created)
        self.assertTrue(issued.draw_created)
        self.assertEqual(issued.draw.product_id, "prod-new")
        self.assertEqual(issued.voucher.remaining, 2)

    async def test_issue_is_idempotent_per_purchase(self):
        async with self.db.get_session() as session:
            service = VoucherService(session, clock=self.clock)
            first = await service.issue_for_purchase("alice", "prod-1", "order-1")
            second = await service.issue_for_purchase("alice", "prod-1", "order-1")

        self.assertFalse(second.created)
        self.assertFalse(second.draw_created)
        self.assertEqual(first.voucher.id, second.voucher.id)
        self.assertEqual(len(await self.vouchers("alice")), 1)

    async def test_issue_validations(self):
        async with self.db.get_session() as session:
            service = VoucherService(session)
            with self.assertRaises(InvalidInput):
                await service.issue_for_purchase("alice", "", "order-1")
            with self.assertRaises(InvalidInput) as ctx:
                await service.issue_for_purchase("alice", "prod-1", "order-1", count=0)
        self.assertEqual(ctx.exception.code, "invalid_count")
