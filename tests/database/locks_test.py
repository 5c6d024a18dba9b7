import unittest
from unittest.mock import AsyncMock, Mock

from newstore.database.locks import (
    DRAW_COMPLETION_LOCK,
    AdvisoryLockTimeout,
    advisory_lock,
    concern_key,
)
from tests.helpers import create_test_database


def session_for(dialect, scalar=1):
    session = Mock()
    session.bind.dialect.name = dialect
    result = Mock()
    result.scalar.return_value = scalar
    session.execute = AsyncMock(return_value=result)
    return session


class TestAdvisoryLock(unittest.IsolatedAsyncioTestCase):
    def test_concern_key_is_stable_signed_int(self):
        key = concern_key(DRAW_COMPLETION_LOCK)
        self.assertEqual(key, concern_key("draw_completion"))
        self.assertTrue(-(2**31) <= key < 2**31)

    async def test_postgresql_uses_transaction_lock(self):
        session = session_for("postgresql")

        async with advisory_lock(session, DRAW_COMPLETION_LOCK, 7):
            pass

        statement, params = session.execute.await_args.args
        self.assertIn("pg_advisory_xact_lock", str(statement))
        self.assertEqual(params["resource"], 7)

    async def test_mysql_acquires_and_releases(self):
        session = session_for("mysql")

        async with advisory_lock(session, DRAW_COMPLETION_LOCK, 7):
            self.assertEqual(session.execute.await_count, 1)

        first, second = session.execute.await_args_list
        self.assertIn("GET_LOCK", str(first.args[0]))
        self.assertIn("RELEASE_LOCK", str(second.args[0]))
        self.assertEqual(second.args[1], {"name": "draw_completion:7"})

    async def test_mysql_timeout(self):
        session = session_for("mysql", scalar=0)

        with self.assertRaises(AdvisoryLockTimeout):
            async with advisory_lock(session, DRAW_COMPLETION_LOCK, 7):
                self.fail("lock body must not run")

    async def test_sqlite_is_a_no_op(self):
        database = await create_test_database()
        try:
            async with database.get_session() as session:
                async with advisory_lock(session, DRAW_COMPLETION_LOCK, 1):
                    entered = True
            self.assertTrue(entered)
        finally:
            await database.dispose()
