import logging
import unittest
from unittest.mock import Mock

from aiohttp import web

from newstore.common.logging_utils import (
    log_api_call,
    log_request_execution,
    log_service_execution,
    log_task_execution,
)
from newstore.exceptions.core_exceptions import Conflict
from newstore.logging_config import JSONFormatter

test_logger = logging.getLogger("tests.logging_utils")


class TestLoggingDecorators(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        previous = logging.root.manager.disable
        logging.disable(logging.NOTSET)
        self.addCleanup(logging.disable, previous)

    async def test_request_logging_records_user_and_status(self):
        @log_request_execution(test_logger)
        async def handler(request):
            return web.Response(status=201)

        state = {"user": Mock(id="alice")}
        request = Mock(method="POST", path="/api/reservations", get=state.get)

        with self.assertLogs(test_logger, level="INFO") as logs:
            response = await handler(request)

        self.assertEqual(response.status, 201)
        self.assertIn("by alice", logs.output[0])
        self.assertIn("answered 201", logs.output[-1])
        self.assertEqual(logs.records[0].context["user_id"], "alice")

    async def test_request_logging_reraises_domain_errors(self):
        @log_request_execution(test_logger)
        async def handler(request):
            raise Conflict("unavailable", "taken", conflicts=[3])

        request = Mock(method="POST", path="/api/reservations", get=lambda key: None)

        with self.assertLogs(test_logger, level="INFO") as logs:
            with self.assertRaises(Conflict):
                await handler(request)

        self.assertIn("by anonymous", logs.output[0])
        self.assertIn("409 unavailable", logs.output[-1])

    async def test_task_logging_reraises(self):
        @log_task_execution(test_logger)
        async def job():
            raise RuntimeError("db down")

        with self.assertLogs(test_logger, level="ERROR") as logs:
            with self.assertRaises(RuntimeError):
                await job()

        self.assertIn("Task job failed", logs.output[0])

    async def test_service_logging_keeps_domain_errors_at_debug(self):
        @log_service_execution(test_logger)
        async def reserve():
            raise Conflict("unavailable", "taken")

        with self.assertLogs(test_logger, level="DEBUG") as logs:
            with self.assertRaises(Conflict):
                await reserve()

        self.assertTrue(all(r.levelno == logging.DEBUG for r in logs.records))

    async def test_api_call_logging_returns_result(self):
        @log_api_call("mercadopago", test_logger)
        async def get_payment(payment_id):
            return {"id": payment_id}

        with self.assertLogs(test_logger, level="DEBUG") as logs:
            result = await get_payment("123")

        self.assertEqual(result, {"id": "123"})
        self.assertEqual(logs.records[-1].context["service"], "mercadopago")


class TestJSONFormatter(unittest.TestCase):
    def test_format_includes_context(self):
        record = logging.LogRecord(
            "newstore.test", logging.INFO, __file__, 1, "hello %s", ("world",), None
        )
        record.context = {"draw_id": 7}

        output = JSONFormatter().format(record)

        self.assertIn('"msg": "hello world"', output)
        self.assertIn('"context": {"draw_id": 7}', output)
