"""
Authenticated HTTP client for the TruckBook REST API.

All backend requests go through this module to ensure:
- Bearer token on every call
- Proper timeouts (no hanging requests)
- Retry logic with exponential backoff for idempotent calls
- 429 rate limit handling
- 401 clears the session (via on_unauthorized) and fails the request
- The `{success, message, data}` envelope is unwrapped in one place
"""
import asyncio
import json
import logging
from typing import Any, Callable, Optional, Union

import aiohttp

from config import API_BASE_URL, HTTP_TOTAL_TIMEOUT

logger = logging.getLogger(__name__)

# Default timeouts (seconds)
DEFAULT_TIMEOUT = aiohttp.ClientTimeout(
    total=HTTP_TOTAL_TIMEOUT,
    connect=10,
    sock_read=20,
)

RETRYABLE_STATUSES = (500, 502, 503, 504)

TokenSource = Union[str, Callable[[], Optional[str]], None]


class ApiError(Exception):
    """
    A failed backend call.

    status is None for network-level failures (no HTTP response).
    message is the server's message, for logs only.
    """

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        payload: Any = None,
        timed_out: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.payload = payload
        self.timed_out = timed_out

    @property
    def is_network_error(self) -> bool:
        return self.status is None

    def __repr__(self) -> str:
        return f"ApiError(status={self.status}, message={self.message!r})"


def _unwrap(body: Any, status: Optional[int] = None) -> Any:
    """Return `data` from the response envelope, or the body itself."""
    if isinstance(body, dict) and "success" in body:
        if not body.get("success"):
            raise ApiError(str(body.get("message") or "Request failed"), status=status, payload=body)
        return body.get("data")
    return body


async def _read_json(resp: aiohttp.ClientResponse) -> Any:
    """Parse the body as JSON; None when it is empty or not JSON."""
    text = await resp.text()
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


def _error_message(body: Any, fallback: str) -> str:
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or fallback)
    return fallback


class ApiClient:
    """
    Thin wrapper around aiohttp bound to one user's bearer token.

    Args:
        base_url: API root, e.g. http://localhost:5000/api/v1
        token: Bearer token, or a callable returning it (None for public endpoints)
        on_unauthorized: Called once when the backend answers 401
        timeout: aiohttp timeout for each attempt
    """

    def __init__(
        self,
        base_url: str = API_BASE_URL,
        *,
        token: TokenSource = None,
        on_unauthorized: Optional[Callable[[], None]] = None,
        timeout: Optional[aiohttp.ClientTimeout] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.on_unauthorized = on_unauthorized
        self.timeout = timeout or DEFAULT_TIMEOUT

    def with_token(
        self,
        token: TokenSource,
        on_unauthorized: Optional[Callable[[], None]] = None,
    ) -> "ApiClient":
        return ApiClient(
            self.base_url,
            token=token,
            on_unauthorized=on_unauthorized,
            timeout=self.timeout,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        token = self.token() if callable(self.token) else self.token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def get(self, path: str, *, params: Optional[dict] = None, max_retries: int = 3) -> Any:
        return await self.request("GET", path, params=params, max_retries=max_retries)

    async def post(self, path: str, json_data: Optional[dict] = None, *, max_retries: int = 3) -> Any:
        return await self.request("POST", path, json_data=json_data, max_retries=max_retries)

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        json_data: Optional[dict] = None,
        max_retries: int = 3,
    ) -> Any:
        """
        Perform a request and return the unwrapped `data` of the envelope.

        Pass max_retries=1 for calls that must not be repeated
        (booking creation, payment initiation).

        Raises:
            ApiError: On HTTP error status, failed envelope, or network failure
        """
        url = self._url(path)
        last_error: Optional[ApiError] = None
        max_retries = max(1, max_retries)

        for attempt in range(max_retries):
            is_last = attempt == max_retries - 1
            try:
                async with aiohttp.ClientSession(timeout=self.timeout) as session:
                    async with session.request(
                        method,
                        url,
                        params=params,
                        json=json_data,
                        headers=self._headers(),
                    ) as resp:
                        if resp.status == 429 and not is_last:
                            retry_after = int(resp.headers.get("Retry-After", 5))
                            logger.warning("HTTP 429 on %s %s, waiting %ss", method, path, retry_after)
                            await asyncio.sleep(retry_after)
                            continue

                        body = await _read_json(resp)

                        if resp.status == 401:
                            logger.info("HTTP 401 on %s %s, clearing session", method, path)
                            if self.on_unauthorized is not None:
                                self.on_unauthorized()
                            raise ApiError(_error_message(body, "Unauthorized"), status=401, payload=body)

                        if resp.status >= 400:
                            error = ApiError(
                                _error_message(body, resp.reason or "HTTP error"),
                                status=resp.status,
                                payload=body,
                            )
                            if resp.status in RETRYABLE_STATUSES and not is_last:
                                last_error = error
                                await asyncio.sleep(2 ** attempt)
                                continue
                            raise error

                        if body is None:
                            raise ApiError(f"Non-JSON response from {path}", status=resp.status)
                        return _unwrap(body, resp.status)
            except asyncio.TimeoutError:
                last_error = ApiError(f"Timeout on {method} {path}", timed_out=True)
                if is_last:
                    break
                delay = 2 ** attempt
                logger.warning("Timeout on %s %s, retry %s/%s in %ss", method, path, attempt + 1, max_retries, delay)
                await asyncio.sleep(delay)
            except aiohttp.ClientError as e:
                last_error = ApiError(f"Network error on {method} {path}: {e}")
                if is_last:
                    break
                await asyncio.sleep(2 ** attempt)

        raise last_error or ApiError(f"Request failed: {method} {path}")
