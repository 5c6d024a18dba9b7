from typing import Any, Iterable, Optional


class NewStoreError(Exception):
    status = 500
    default_code = "internal_error"

    def __init__(
        self,
        message="Unexpected error.",
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.code, "message": self.message}
        body.update(self.details)
        return body


class InvalidInput(NewStoreError):
    status = 400
    default_code = "invalid_input"

    def __init__(self, message="Invalid input.", code: Optional[str] = None, **details):
        super().__init__(message, code, details)


class Unauthorized(NewStoreError):
    status = 401
    default_code = "unauthorized"

    def __init__(self, message="Authentication required."):
        super().__init__(message)


class Forbidden(NewStoreError):
    status = 403
    default_code = "forbidden"

    def __init__(self, message="You are not allowed to do that."):
        super().__init__(message)


class NotFound(NewStoreError):
    status = 404
    default_code = "not_found"

    def __init__(self, message="Resource not found.", code: Optional[str] = None):
        super().__init__(message, code)


class Conflict(NewStoreError):
    status = 409
    default_code = "conflict"

    def __init__(
        self,
        code: str = "conflict",
        message="Request conflicts with the current state.",
        conflicts: Optional[Iterable[int]] = None,
        **details,
    ):
        self.conflicts = sorted(set(conflicts)) if conflicts is not None else []
        if conflicts is not None:
            details["conflicts"] = self.conflicts
        super().__init__(message, code, details)


class ProviderError(NewStoreError):
    """Payment provider failed. `retryable` is False when the provider
    rejected the request itself, so resending it unchanged cannot succeed."""

    status = 502
    default_code = "provider_error"

    def __init__(
        self,
        message="Payment provider request failed.",
        code: Optional[str] = None,
        provider_status: Optional[int] = None,
        retryable: bool = True,
    ):
        self.provider_status = provider_status
        self.retryable = retryable
        details: dict[str, Any] = {"retryable": retryable}
        if provider_status is not None:
            details["provider_status"] = provider_status
        super().__init__(message, code, details)


class SecurityCodeRequired(ProviderError):
    default_code = "security_code_required"

    def __init__(self, message="Provider requires the card security code."):
        super().__init__(message, retryable=False)
