import unittest
from unittest.mock import AsyncMock

from newstore.exceptions.core_exceptions import (
    Conflict,
    Forbidden,
    InvalidInput,
    NotFound,
    ProviderError,
)
from newstore.models.payment import Payment
from newstore.models.reservation import Reservation
from newstore.models.status import PaymentStatus, ReservationStatus
from newstore.services.payment_service import PaymentService
from newstore.services.price_service import PriceService
from newstore.services.reservation_service import ReservationService
from newstore.services.settlement_service import SettlementService
from newstore.event_emitter import EventEmitter
from tests.helpers import (
    FakeClock,
    create_approved_payment,
    create_draw,
    create_mock_provider,
    create_test_database,
    make_provider_payment,
)


class TestPaymentService(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.db = await create_test_database()
        self.clock = FakeClock()
        self.provider = create_mock_provider()
        self.draw = await create_draw(self.db)

    async def asyncTearDown(self):
        await self.db.dispose()

    def service(self, session, public_url="https://store.example.com"):
        settlement = SettlementService(session, emitter=EventEmitter(), clock=self.clock)
        return PaymentService(
            session,
            provider=self.provider,
            prices=PriceService(session, default_cents=5500),
            settlement=settlement,
            public_url=public_url,
            clock=self.clock,
        )

    async def reserve(self, user_id, numbers):
        async with self.db.get_session() as session:
            return await ReservationService(session, clock=self.clock).reserve(
                user_id, numbers
            )

    async def checkout(self, user_id, reservation_id, email="alice@example.com"):
        async with self.db.get_session() as session:
            return await self.service(session).create_pix_for_reservation(
                user_id, email, reservation_id
            )

    async def load(self, model, key):
        async with self.db.get_session() as session:
            return await session.get(model, key)

    async def test_pix_checkout_creates_pending_payment(self):
        reservation = await self.reserve("alice", [45, 12])
        self.provider.create_pix_payment.side_effect = None
        self.provider.create_pix_payment.return_value = make_provider_payment(
            "mp-1", external_reference=reservation.reservation_id
        )

        result = await self.checkout("alice", reservation.reservation_id)

        self.assertEqual(result.payment_id, "mp-1")
        self.assertEqual(result.status, PaymentStatus.PENDING)
        self.assertEqual(result.amount_cents, 11000)
        self.assertEqual(result.qr_code, "00020126PIXCODE")

        kwargs = self.provider.create_pix_payment.await_args.kwargs
        self.assertEqual(kwargs["amount_cents"], 11000)
        self.assertEqual(kwargs["description"], "Sorteio New Store - números 12, 45")
        self.assertEqual(kwargs["external_reference"], reservation.reservation_id)
        self.assertEqual(
            kwargs["notification_url"],
            "https://store.example.com/api/payments/webhook",
        )
        self.assertEqual((kwargs["expires_at"] - self.clock.now).total_seconds(), 1800)

        payment = await self.load(Payment, "mp-1")
        self.assertEqual(payment.numbers, [12, 45])
        self.assertEqual(payment.user_id, "alice")
        stored = await self.load(Reservation, reservation.reservation_id)
        self.assertEqual(stored.payment_id, "mp-1")

    async def test_checkout_without_public_url_sends_no_webhook(self):
        reservation = await self.reserve("alice", [1])

        async with self.db.get_session() as session:
            await self.service(session, public_url="").create_pix_for_reservation(
                "alice", "alice@example.com", reservation.reservation_id
            )

        kwargs = self.provider.create_pix_payment.await_args.kwargs
        self.assertIsNone(kwargs["notification_url"])

    async def test_checkout_validations(self):
        reservation = await self.reserve("alice", [1])

        with self.assertRaises(InvalidInput) as ctx:
            await self.checkout("alice", None)
        self.assertEqual(ctx.exception.code, "missing_reservation")

        with self.assertRaises(NotFound):
            await self.checkout("alice", "missing")

        with self.assertRaises(Forbidden):
            await self.checkout("bob", reservation.reservation_id)

        with self.assertRaises(InvalidInput) as ctx:
            await self.checkout("alice", reservation.reservation_id, email=None)
        self.assertEqual(ctx.exception.code, "missing_email")

        self.clock.advance(minutes=6)
        with self.assertRaises(Conflict) as ctx:
            await self.checkout("alice", reservation.reservation_id)
        self.assertEqual(ctx.exception.code, "reservation_expired")

        self.provider.create_pix_payment.assert_not_awaited()

    async def test_checkout_rejects_numbers_sold_meanwhile(self):
        reservation = await self.reserve("alice", [1, 2])
        await create_approved_payment(self.db, self.draw.id, "bob", [2])

        with self.assertRaises(Conflict) as ctx:
            await self.checkout("alice", reservation.reservation_id)

        self.assertEqual(ctx.exception.code, "unavailable")
        self.assertEqual(ctx.exception.conflicts, [2])

    async def test_checkout_provider_failure_propagates(self):
        reservation = await self.reserve("alice", [1])
        self.provider.create_pix_payment.side_effect = ProviderError("timeout")

        with self.assertRaises(ProviderError):
            await self.checkout("alice", reservation.reservation_id)

        stored = await self.load(Reservation, reservation.reservation_id)
        self.assertEqual(stored.status, ReservationStatus.ACTIVE)
        self.assertIsNone(stored.payment_id)

    async def test_webhook_ignores_other_types_and_missing_ids(self):
        async with self.db.get_session() as session:
            service = self.service(session)
            ignored = await service.handle_webhook({"type": "merchant_order"}, {})
            missing = await service.handle_webhook({"type": "payment"}, {})
            empty = await service.handle_webhook(None, {})

        self.assertEqual(ignored.reason, "ignored_type")
        self.assertEqual(missing.reason, "missing_id")
        self.assertEqual(empty.reason, "missing_id")
        self.provider.get_payment.assert_not_awaited()

    async def test_webhook_reads_id_from_query(self):
        reservation = await self.reserve("alice", [5])
        result = await self.checkout("alice", reservation.reservation_id)
        self.provider.get_payment.return_value = make_provider_payment(
            result.payment_id, status="approved"
        )

        async with self.db.get_session() as session:
            outcome = await self.service(session).handle_webhook(
                {}, {"data.id": result.payment_id, "type": "payment"}
            )

        self.assertTrue(outcome.handled)
        self.assertEqual(outcome.status, PaymentStatus.APPROVED)

    async def test_webhook_never_raises(self):
        self.provider.get_payment.side_effect = ProviderError("boom")

        async with self.db.get_session() as session:
            outcome = await self.service(session).handle_webhook(
                {"type": "payment", "data": {"id": "123"}}, {}
            )

        self.assertFalse(outcome.handled)
        self.assertEqual(outcome.reason, "error")

    async def test_webhook_for_unknown_payment(self):
        self.provider.get_payment.return_value = make_provider_payment("999")

        async with self.db.get_session() as session:
            outcome = await self.service(session).handle_webhook(
                {"type": "payment", "data": {"id": "999"}}, {}
            )

        self.assertEqual(outcome.reason, "unknown")

    async def test_webhook_adopts_payment_missing_locally(self):
        reservation = await self.reserve("alice", [30, 31])
        self.provider.get_payment.return_value = make_provider_payment(
            "mp-lost",
            status="approved",
            external_reference=reservation.reservation_id,
            amount=110.0,
        )

        async with self.db.get_session() as session:
            outcome = await self.service(session).handle_webhook(
                {"type": "payment", "data": {"id": "mp-lost"}}, {}
            )

        self.assertTrue(outcome.handled)
        payment = await self.load(Payment, "mp-lost")
        self.assertEqual(payment.numbers, [30, 31])
        self.assertEqual(payment.amount_cents, 11000)
        self.assertIsNotNone(payment.settled_at)
        stored = await self.load(Reservation, reservation.reservation_id)
        self.assertEqual(stored.status, ReservationStatus.PAID)

    async def test_poll_status_checks_owner(self):
        reservation = await self.reserve("alice", [5])
        result = await self.checkout("alice", reservation.reservation_id)
        self.provider.get_payment.return_value = make_provider_payment(
            result.payment_id, status="pending"
        )

        async with self.db.get_session() as session:
            with self.assertRaises(Forbidden):
                await self.service(session).poll_status("bob", result.payment_id)

        async with self.db.get_session() as session:
            polled = await self.service(session).poll_status(
                "bob", result.payment_id, is_admin=True
            )
        self.assertEqual(polled.status, PaymentStatus.PENDING)

    async def test_list_for_user_oldest_first(self):
        first = await create_approved_payment(self.db, self.draw.id, "alice", [1])
        self.clock.advance(minutes=1)
        second = await create_approved_payment(
            self.db, self.draw.id, "alice", [2], created_at=self.clock.now
        )
        await create_approved_payment(self.db, self.draw.id, "bob", [3])

        async with self.db.get_session() as session:
            payments = await self.service(session).list_for_user("alice")

        self.assertEqual([p.id for p in payments], [first, second])

    async def test_replay_requires_id(self):
        async with self.db.get_session() as session:
            with self.assertRaises(InvalidInput):
                await self.service(session).replay("")


class TestCheckoutFlow(unittest.IsolatedAsyncioTestCase):
    """Reserve, pay by PIX, receive the webhook, replay it."""

    async def asyncSetUp(self):
        self.db = await create_test_database()
        self.clock = FakeClock()
        self.provider = create_mock_provider()
        self.draw = await create_draw(self.db)

    async def asyncTearDown(self):
        await self.db.dispose()

    def payment_service(self, session):
        return PaymentService(
            session,
            provider=self.provider,
            prices=PriceService(session, default_cents=5500),
            settlement=SettlementService(session, emitter=EventEmitter(), clock=self.clock),
            clock=self.clock,
        )

    async def test_reserve_checkout_webhook_and_replay(self):
        async with self.db.get_session() as session:
            reservation = await ReservationService(session, clock=self.clock).reserve(
                "alice", [12, 45]
            )

        self.provider.create_pix_payment.side_effect = None
        self.provider.create_pix_payment.return_value = make_provider_payment(
            "mp-77", external_reference=reservation.reservation_id
        )
        async with self.db.get_session() as session:
            checkout = await self.payment_service(session).create_pix_for_reservation(
                "alice", "alice@example.com", reservation.reservation_id
            )
        self.assertEqual(checkout.status, PaymentStatus.PENDING)

        self.provider.get_payment = AsyncMock(
            return_value=make_provider_payment("mp-77", status="approved")
        )
        async with self.db.get_session() as session:
            outcome = await self.payment_service(session).handle_webhook(
                {"type": "payment", "data": {"id": "mp-77"}}, {}
            )
        self.assertTrue(outcome.handled)

        async with self.db.get_session() as session:
            board = await self.payment_service(session).ledger.board(self.draw.id, "alice")
        states = {e.n: (e.state, e.is_mine) for e in board.numbers}
        self.assertEqual(states[12], ("sold", True))
        self.assertEqual(states[45], ("sold", True))
        self.assertEqual(states[13], ("available", False))

        async with self.db.get_session() as session:
            stored = await session.get(Reservation, reservation.reservation_id)
            self.assertEqual(stored.status, ReservationStatus.PAID)

        async with self.db.get_session() as session:
            replay = await self.payment_service(session).replay("mp-77")
        self.assertFalse(replay.settled)
        self.assertEqual(replay.sold_numbers, [])
        self.assertFalse(replay.draw_closed)
