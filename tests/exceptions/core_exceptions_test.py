import unittest

from newstore.exceptions.core_exceptions import (
    Conflict,
    Forbidden,
    InvalidInput,
    NotFound,
    ProviderError,
    SecurityCodeRequired,
    Unauthorized,
)


class TestCoreExceptions(unittest.TestCase):
    def test_statuses(self):
        self.assertEqual(InvalidInput().status, 400)
        self.assertEqual(Unauthorized().status, 401)
        self.assertEqual(Forbidden().status, 403)
        self.assertEqual(NotFound().status, 404)
        self.assertEqual(Conflict().status, 409)
        self.assertEqual(ProviderError().status, 502)

    def test_conflict_body_lists_sorted_conflicts(self):
        error = Conflict("unavailable", "taken", conflicts=[7, 5, 7])

        self.assertEqual(error.conflicts, [5, 7])
        self.assertEqual(
            error.to_dict(),
            {"error": "unavailable", "message": "taken", "conflicts": [5, 7]},
        )

    def test_conflict_extra_details(self):
        error = Conflict("max_numbers_reached", "limit", max=20, current=18)
        self.assertEqual(error.to_dict()["max"], 20)
        self.assertEqual(error.to_dict()["current"], 18)
        self.assertNotIn("conflicts", error.to_dict())

    def test_invalid_input_code(self):
        error = InvalidInput("bad", code="numbers_invalid")
        self.assertEqual(error.to_dict(), {"error": "numbers_invalid", "message": "bad"})

    def test_provider_error_is_retryable(self):
        error = ProviderError("down", provider_status=503)
        self.assertEqual(
            error.to_dict(),
            {
                "error": "provider_error",
                "message": "down",
                "retryable": True,
                "provider_status": 503,
            },
        )

    def test_security_code_required_is_a_provider_error(self):
        error = SecurityCodeRequired()
        self.assertIsInstance(error, ProviderError)
        self.assertEqual(error.code, "security_code_required")

    def test_provider_rejection_is_not_retryable(self):
        error = ProviderError("bad payer email", provider_status=400, retryable=False)

        self.assertFalse(error.retryable)
        self.assertFalse(error.to_dict()["retryable"])

    def test_security_code_required_is_not_retryable(self):
        self.assertFalse(SecurityCodeRequired().to_dict()["retryable"])
