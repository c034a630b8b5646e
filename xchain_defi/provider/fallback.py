"""HTTP and JSON-RPC endpoint fallback and redundancy.

- See :py:class:`ResilientRpcClient`
"""

import asyncio
import json
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import aiohttp

from xchain_defi.utils import get_url_domain

logger = logging.getLogger(__name__)


#: Transport level exceptions worth retrying on another endpoint
DEFAULT_RETRYABLE_EXCEPTIONS = (
    aiohttp.ClientConnectionError,
    aiohttp.ClientPayloadError,
    aiohttp.ServerTimeoutError,
    asyncio.TimeoutError,
    ConnectionError,
)

#: HTTP status codes signalling throttling or a sick node
DEFAULT_RETRYABLE_HTTP_STATUS_CODES = (
    408,  # Request timeout
    429,  # Too many requests
    500,  # Internal server error
    502,  # Bad gateway
    503,  # Service unavailable
    504,  # Gateway timeout
    520,  # Cloudflare unknown error
    524,  # Cloudflare timeout
)

#: JSON-RPC error codes signalling node trouble rather than a bad request
DEFAULT_RETRYABLE_RPC_ERROR_CODES = (
    -32005,  # Node is behind / rate limited
    -32603,  # Internal error
    -32004,  # Block not available
)


class JsonRpcError(ValueError):
    """JSON-RPC call returned an error object."""

    def __init__(self, method: str, error: dict):
        self.method = method
        self.code = error.get("code")
        self.rpc_message = error.get("message", "")
        self.data = error.get("data")
        super().__init__(f"JSON-RPC {method} failed with {self.code}: {self.rpc_message}")


class RetryableHTTPStatus(Exception):
    """Internal marker for a retryable HTTP status code."""

    def __init__(self, status: int, text: str):
        self.status = status
        self.text = text
        super().__init__(f"HTTP {status}: {text[:200]}")


@dataclass(slots=True, frozen=True)
class HTTPResult:
    """Non-retryable HTTP response handed back to the caller."""

    status: int

    #: Parsed JSON, or ``None`` if the body was not JSON
    data: Any

    text: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class ResilientRpcClient:
    """Fault tolerant HTTP client over a primary and fallback endpoints.

    Fall back to the next endpoint on the list if a request fails
    with a transport error, a throttling or server error status code,
    or a retryable JSON-RPC error. Sleeps with backoff between retries.

    Responses with other status codes, like 404 or 400, are valid answers
    and returned to the caller as :py:class:`HTTPResult`.

    Example::

        client = ResilientRpcClient(["https://primary.example/rpc", "https://backup.example/rpc"])
        slot = await client.json_rpc("getSlot", [])
        await client.close()
    """

    def __init__(
        self,
        endpoints: list[str],
        session: aiohttp.ClientSession | None = None,
        retryable_exceptions=DEFAULT_RETRYABLE_EXCEPTIONS,
        retryable_status_codes=DEFAULT_RETRYABLE_HTTP_STATUS_CODES,
        retryable_rpc_error_codes=DEFAULT_RETRYABLE_RPC_ERROR_CODES,
        sleep: float = 1.0,
        backoff: float = 1.6,
        retries: int = 4,
        timeout: float = 30.0,
        switchover_noisiness=logging.WARNING,
        sleep_func: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        :param endpoints:
            Base URLs, primary first.

        :param session:
            Shared aiohttp session. If not given, we create and own one.

        :param sleep:
            Seconds between retries.

        :param backoff:
            Multiplier to increase sleep.

        :param retries:
            How many retries we attempt before giving up.

        :param switchover_noisiness:
            How loud we are about switchover issues.

        :param sleep_func:
            Injectable for tests.
        """
        assert endpoints, "At least one endpoint needed"
        self.endpoints = [e.rstrip("/") for e in endpoints]
        self.session = session
        self.owns_session = session is None
        self.retryable_exceptions = retryable_exceptions
        self.retryable_status_codes = retryable_status_codes
        self.retryable_rpc_error_codes = retryable_rpc_error_codes
        self.sleep = sleep
        self.backoff = backoff
        self.retries = retries
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.switchover_noisiness = switchover_noisiness
        self.sleep_func = sleep_func

        #: Currently active endpoint index
        self.currently_active_endpoint = 0

        #: endpoint index -> method -> completed call count
        self.api_call_counts = defaultdict(Counter)

        #: endpoint index -> method -> retry count
        self.api_retry_counts = defaultdict(Counter)

        self.retry_count = 0

        self._request_id = 0

    def __repr__(self):
        names = [get_url_domain(e) for e in self.endpoints]
        return f"<Resilient RPC client {', '.join(names)}>"

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        if self.owns_session and self.session is not None:
            await self.session.close()
            self.session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None:
            self.session = aiohttp.ClientSession()
        return self.session

    def get_active_endpoint(self) -> str:
        return self.endpoints[self.currently_active_endpoint]

    def has_multiple_endpoints(self) -> bool:
        return len(self.endpoints) >= 2

    def switch_endpoint(self, cause: str = "<not specified>"):
        """Cycle to the next endpoint."""
        old_name = get_url_domain(self.get_active_endpoint())
        self.currently_active_endpoint = (self.currently_active_endpoint + 1) % len(self.endpoints)
        new_name = get_url_domain(self.get_active_endpoint())
        if old_name != new_name:
            logger.log(self.switchover_noisiness, "Switched endpoints %s -> %s, cause: %s", old_name, new_name, cause)

    def reset_switch(self):
        """Go back to the primary endpoint."""
        self.currently_active_endpoint = 0

    async def _call_once(self, http_method: str, url: str, json_body: Any, data: bytes | None, headers: dict | None) -> HTTPResult:
        session = self._get_session()
        async with session.request(http_method, url, json=json_body, data=data, headers=headers, timeout=self.timeout) as response:
            text = await response.text()
            if response.status in self.retryable_status_codes:
                raise RetryableHTTPStatus(response.status, text)
            try:
                parsed = json.loads(text) if text else None
            except ValueError:
                parsed = None
            return HTTPResult(status=response.status, data=parsed, text=text)

    async def request(
        self,
        http_method: str,
        path: str = "",
        json_body: Any = None,
        data: bytes | None = None,
        headers: dict | None = None,
        api_name: str | None = None,
    ) -> HTTPResult:
        """Make a HTTP request against the active endpoint.

        - Cycle through endpoints and sleep between retries on retryable errors
        - Give up after ``retries`` and raise the last error

        :param path:
            Appended to the endpoint base URL.

        :param api_name:
            Name used in call statistics, defaults to ``path``.
        """
        api_name = api_name or path or http_method
        current_sleep = self.sleep

        for i in range(self.retries + 1):
            url = self.get_active_endpoint() + path
            try:
                result = await self._call_once(http_method, url, json_body, data, headers)
                self.api_call_counts[self.currently_active_endpoint][api_name] += 1
                return result
            except (RetryableHTTPStatus, *self.retryable_exceptions) as e:
                if self.has_multiple_endpoints():
                    self.switch_endpoint(cause=str(e))

                if i >= self.retries:
                    raise

                logger.log(
                    self.switchover_noisiness,
                    "Encountered retryable error %s: %s\nWhen calling %s\nRetrying in %f seconds, retry #%d / %d",
                    e.__class__.__name__,
                    e,
                    api_name,
                    current_sleep,
                    i + 1,
                    self.retries,
                )
                self.retry_count += 1
                self.api_retry_counts[self.currently_active_endpoint][api_name] += 1
                await self.sleep_func(current_sleep)
                current_sleep *= self.backoff

        raise AssertionError("Unreachable")

    async def json_rpc(self, method: str, params: list | None = None) -> Any:
        """Call a JSON-RPC 2.0 method and return its ``result``.

        :raises JsonRpcError:
            The node returned a non-retryable error object, or retries ran out.
        """
        current_sleep = self.sleep
        for i in range(self.retries + 1):
            self._request_id += 1
            payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params or []}
            result = await self.request("POST", json_body=payload, api_name=method)

            if not result.ok or not isinstance(result.data, dict):
                raise JsonRpcError(method, {"code": result.status, "message": result.text[:200]})

            error = result.data.get("error")
            if error is None:
                return result.data.get("result")

            if error.get("code") in self.retryable_rpc_error_codes and i < self.retries:
                if self.has_multiple_endpoints():
                    self.switch_endpoint(cause=str(error))
                logger.log(self.switchover_noisiness, "Retryable JSON-RPC error %s for %s, retrying in %f seconds", error, method, current_sleep)
                self.retry_count += 1
                self.api_retry_counts[self.currently_active_endpoint][method] += 1
                await self.sleep_func(current_sleep)
                current_sleep *= self.backoff
                continue

            raise JsonRpcError(method, error)

        raise AssertionError("Unreachable")
