import unittest

from sqlalchemy import func, select

from newstore.exceptions.core_exceptions import Conflict, InvalidInput, NotFound
from newstore.models.number_slot import NumberSlot
from newstore.models.status import DrawStatus
from newstore.services.draw_service import DrawService
from tests.helpers import create_approved_payment, create_test_database


class TestDrawService(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.db = await create_test_database()

    async def asyncTearDown(self):
        await self.db.dispose()

    async def test_create_draw_seeds_slots(self):
        async with self.db.get_session() as session:
            draw = await DrawService(session).create_draw(
                product_id="prod-1", product_name="Console", total_numbers=50
            )
            count = await session.execute(
                select(func.count()).select_from(NumberSlot).where(
                    NumberSlot.draw_id == draw.id
                )
            )

        self.assertEqual(draw.status, DrawStatus.OPEN)
        self.assertEqual(count.scalar(), 50)

    async def test_create_draw_rejects_empty_draw(self):
        async with self.db.get_session() as session:
            with self.assertRaises(InvalidInput):
                await DrawService(session).create_draw(total_numbers=0)

    async def test_get_open_draw_prefers_latest(self):
        async with self.db.get_session() as session:
            service = DrawService(session)
            await service.create_draw(product_id="a", total_numbers=5)
            latest = await service.create_draw(product_id="b", total_numbers=5)

            self.assertEqual((await service.get_open_draw()).id, latest.id)
            self.assertEqual((await service.get_open_draw("a")).product_id, "a")
            self.assertIsNone(await service.get_open_draw("missing"))

    async def test_ensure_open_draw_reuses_open_draw(self):
        async with self.db.get_session() as session:
            service = DrawService(session)
            created, was_created = await service.ensure_open_draw("prod-9")
            await session.commit()
            again, created_again = await service.ensure_open_draw("prod-9")

        self.assertTrue(was_created)
        self.assertFalse(created_again)
        self.assertEqual(created.id, again.id)

    async def test_close_draw_is_idempotent(self):
        async with self.db.get_session() as session:
            service = DrawService(session)
            draw = await service.create_draw(total_numbers=5)
            closed, changed = await service.close_draw(draw.id)
            first_closed_at = closed.closed_at
            _, changed_again = await service.close_draw(draw.id)

        self.assertTrue(changed)
        self.assertFalse(changed_again)
        self.assertIsNotNone(first_closed_at)

    async def test_close_unknown_draw(self):
        async with self.db.get_session() as session:
            with self.assertRaises(NotFound):
                await DrawService(session).close_draw(404)

    async def test_list_draws_filters_by_status(self):
        async with self.db.get_session() as session:
            service = DrawService(session)
            first = await service.create_draw(total_numbers=5)
            await service.create_draw(total_numbers=5)
            await service.close_draw(first.id)

            closed = await service.list_draws("closed")
            everything = await service.list_draws()
            with self.assertRaises(InvalidInput):
                await service.list_draws("bogus")

        self.assertEqual([d.id for d in closed], [first.id])
        self.assertEqual(len(everything), 2)

    async def test_record_winner(self):
        async with self.db.get_session() as session:
            draw = await DrawService(session).create_draw(total_numbers=10)
        await create_approved_payment(self.db, draw.id, "alice", [4, 6])

        async with self.db.get_session() as session:
            service = DrawService(session)
            with self.assertRaises(Conflict) as ctx:
                await service.record_winner(draw.id, 4)
            self.assertEqual(ctx.exception.code, "draw_not_closed")

            await service.close_draw(draw.id)
            with self.assertRaises(InvalidInput):
                await service.record_winner(draw.id, 10)

            result = await service.record_winner(draw.id, 6)
            self.assertEqual(result.winner_number, 6)
            self.assertEqual(result.winner_user_id, "alice")

            again = await service.record_winner(draw.id, 6)
            self.assertEqual(again.winner_number, 6)

            with self.assertRaises(Conflict) as ctx:
                await service.record_winner(draw.id, 5)
            self.assertEqual(ctx.exception.code, "winner_already_recorded")
