"""
http_client.py: the single retry primitive every vendor call goes through.

Only HTTP 429 is retried, with a linear backoff (backoff * attempt).
Any other non-2xx response raises RequestFailedError straight away.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import httpx

logger = logging.getLogger("intel-report.http")

RequestFactory = Callable[[], Awaitable[httpx.Response]]


def _url_of(response: httpx.Response) -> str:
    # Responses built by hand (tests, mocks) carry no request
    try:
        return str(response.request.url)
    except RuntimeError:
        return ""


class RequestFailedError(Exception):
    def __init__(self, status_code: int, url: str = "", body: str = ""):
        super().__init__(f"HTTP {status_code} from {url or 'upstream'}")
        self.status_code = status_code
        self.url = url
        self.body = body[:500]


class RetriesExceededError(RequestFailedError):
    def __init__(self, url: str = "", attempts: int = 0):
        super().__init__(429, url)
        self.attempts = attempts
        self.args = (f"exceeded retries ({attempts} attempts) for {url or 'upstream'}",)


async def fetch_with_retry(
    request: RequestFactory,
    retries: int = 2,
    backoff: float = 0.5,
) -> httpx.Response:
    """
    Run ``request`` and return the response once it is 2xx.

    ``request`` must build a fresh request on every call. Transport errors
    (timeouts, DNS, resets) propagate unchanged; callers treat them like any
    other vendor failure.
    """
    attempts = retries + 1
    url = ""
    for attempt in range(1, attempts + 1):
        response = await request()
        url = _url_of(response)

        if response.status_code == 429:
            if attempt < attempts:
                wait = backoff * attempt
                logger.warning(f"429 from {url}, retry {attempt}/{retries} in {wait:.2f}s")
                await asyncio.sleep(wait)
                continue
            raise RetriesExceededError(url, attempts)

        if not response.is_success:
            raise RequestFailedError(response.status_code, url, response.text)

        return response

    # only reachable with a negative retry budget
    raise RetriesExceededError(url, attempts)


def build_http_client(timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """Shared AsyncClient for the whole process. Closed on app shutdown."""
    return httpx.AsyncClient(
        timeout=timeout,
        follow_redirects=True,
        headers={"User-Agent": "IntelReportBot/1.0"},
        transport=transport,
    )
