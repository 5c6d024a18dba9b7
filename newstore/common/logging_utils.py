"""Timing decorators for handlers, jobs, services and provider calls.

Each decorator logs start and finish with the elapsed time and attaches a
small `context` dict that the JSON formatter emits as a separate field.
"""

import functools
import logging
import time
from typing import Callable, Optional

from aiohttp import web

from newstore.exceptions.core_exceptions import NewStoreError


def _resolve(logger: Optional[logging.Logger], func: Callable) -> logging.Logger:
    return logger if logger is not None else logging.getLogger(func.__module__)


def _elapsed(start: float) -> float:
    return time.monotonic() - start


def log_request_execution(logger: Optional[logging.Logger] = None):
    """Log an aiohttp handler with caller identity and response status."""

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(request: web.Request, *args, **kwargs):
            log = _resolve(logger, func)
            user = request.get("user")
            context = {
                "handler": func.__name__,
                "method": request.method,
                "path": request.path,
                "user_id": user.id if user is not None else None,
            }
            start = time.monotonic()
            log.info(
                f"{request.method} {request.path} by "
                f"{context['user_id'] or 'anonymous'}",
                extra={"context": context},
            )

            try:
                response = await func(request, *args, **kwargs)
            except web.HTTPException:
                raise
            except NewStoreError as e:
                log.info(
                    f"{func.__name__} rejected with {e.status} {e.code} "
                    f"after {_elapsed(start):.2f}s",
                    extra={"context": context},
                )
                raise
            except Exception as e:
                log.warning(
                    f"{func.__name__} failed after {_elapsed(start):.2f}s: {e}",
                    extra={"context": context},
                )
                raise

            log.info(
                f"{func.__name__} answered {response.status} in {_elapsed(start):.2f}s",
                extra={"context": context},
            )
            return response

        return wrapper

    return decorator


def log_task_execution(logger: Optional[logging.Logger] = None):
    """Log a background job; failures are logged with traceback and re-raised."""

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            log = _resolve(logger, func)
            start = time.monotonic()
            log.info(f"Task {func.__name__} started")

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                log.error(
                    f"Task {func.__name__} failed after {_elapsed(start):.2f}s: {e}",
                    exc_info=True,
                    extra={"context": {"task": func.__name__}},
                )
                raise

            log.info(f"Task {func.__name__} finished in {_elapsed(start):.2f}s")
            return result

        return wrapper

    return decorator


def log_service_execution(logger: Optional[logging.Logger] = None):
    # Domain errors are expected outcomes (conflicts, bad input) so stay at debug.
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            log = _resolve(logger, func)
            start = time.monotonic()
            log.debug(f"Service call {func.__qualname__} started")

            try:
                result = await func(*args, **kwargs)
            except NewStoreError as e:
                log.debug(f"Service call {func.__qualname__} rejected: {e.code} {e.message}")
                raise
            except Exception as e:
                log.error(
                    f"Service call {func.__qualname__} failed after "
                    f"{_elapsed(start):.2f}s: {e}",
                    exc_info=True,
                )
                raise

            log.debug(f"Service call {func.__qualname__} done in {_elapsed(start):.2f}s")
            return result

        return wrapper

    return decorator


def log_api_call(service_name: str, logger: Optional[logging.Logger] = None):
    """Log a call to an external API such as the payment provider."""

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            log = _resolve(logger, func)
            context = {"service": service_name, "call": func.__name__}
            start = time.monotonic()
            log.debug(f"{service_name}.{func.__name__} started", extra={"context": context})

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                log.error(
                    f"{service_name}.{func.__name__} failed after "
                    f"{_elapsed(start):.2f}s: {e}",
                    extra={"context": context},
                )
                raise

            log.debug(
                f"{service_name}.{func.__name__} done in {_elapsed(start):.2f}s",
                extra={"context": context},
            )
            return result

        return wrapper

    return decorator
