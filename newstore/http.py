import asyncio
import logging
import sys
from typing import Any, Optional, TypedDict

import aiohttp

from newstore.event_emitter import event_emitter

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15

# Statuses below 500 that still mean "the call did not happen, try later"
TRANSIENT_STATUSES = {
    408: "No response from remote server",
    429: "Rate limited by remote server",
}


class HttpResponse(TypedDict):
    status: int
    body: Any


class HttpException(Exception):
    def __init__(
        self,
        message="Unexpected response from target.",
        status: Optional[int] = None,
    ):
        self.message = message
        self.status = status
        super().__init__(self.message)


def _failure_reason(status: int) -> Optional[str]:
    if status >= 500:
        return "A remote server error occurred"
    return TRANSIENT_STATUSES.get(status)


class AsyncHttpClient:
    """Shared aiohttp session. Requests are never retried here; callers decide."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self.session: Optional[aiohttp.ClientSession] = None
        self._session_lock = asyncio.Lock()
        self.timeout = timeout

        event_emitter.on("shutdown", self.cleanup, priority=20)

    async def _initialize_session(self):
        async with self._session_lock:
            if not self.session or self.session.closed:
                logger.debug("Opening http session...")
                self.session = aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                )

    async def _read_body(self, response: aiohttp.ClientResponse, url: str) -> Any:
        content_type = response.content_type.lower()
        try:
            if "json" in content_type:
                return await response.json()
            if "text" in content_type or "html" in content_type:
                return await response.text()
            return await response.read()
        except Exception as e:
            logger.error(f"Error reading response body from {url}: {e}")
            raise HttpException(f"Failed to read response data: {e}", response.status)

    async def request(
        self,
        method: str,
        url: str,
        params=None,
        headers=None,
        json_data=None,
        timeout: Optional[float] = None,
    ) -> HttpResponse:
        """Send a request and return status and decoded body.

        Server errors, 408 and 429 raise HttpException. Other 4xx
        responses are returned so callers can inspect the error body.
        """
        await self._initialize_session()
        assert self.session

        per_request_timeout = (
            aiohttp.ClientTimeout(total=timeout) if timeout is not None else None
        )
        try:
            async with self.session.request(
                method,
                url,
                params=params,
                headers=headers,
                json=json_data,
                timeout=per_request_timeout,
            ) as response:
                reason = _failure_reason(response.status)
                if reason is not None:
                    logger.warning(f"{method} {url} answered {response.status}")
                    raise HttpException(f"{reason}: {response.status}", response.status)

                return HttpResponse(
                    status=response.status, body=await self._read_body(response, url)
                )
        except HttpException:
            raise
        except asyncio.TimeoutError as e:
            logger.warning(f"{method} request to {url} timed out")
            raise HttpException(f"{method} request timed out: {e}")
        except aiohttp.ClientError as e:
            logger.error(f"{method} client error for {url}: {e}")
            raise HttpException(f"{method} request failed: {e}")

    async def get(self, url, params=None, headers=None, timeout=None) -> HttpResponse:
        return await self.request("GET", url, params=params, headers=headers, timeout=timeout)

    async def post(
        self, url, json_data=None, params=None, headers=None, timeout=None
    ) -> HttpResponse:
        return await self.request(
            "POST", url, params=params, headers=headers, json_data=json_data, timeout=timeout
        )

    async def cleanup(self):
        if self.session:
            logger.debug("Closing http session...")
            await self.session.close()

    async def __aenter__(self):
        await self._initialize_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.cleanup()


try:
    HTTP = AsyncHttpClient()
except Exception as e:
    logger.critical(e)
    sys.exit(1)
