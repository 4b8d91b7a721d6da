"""RPDE page fetcher.

This module fetches one RPDE page per call, spacing requests to the same
publisher host, and turns the response into a Page or a FetchError.
"""

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urljoin, urlparse

import httpx

from rpde_harvester.exceptions import (
    HttpStatusError,
    MalformedDataError,
    TransportError,
)
from rpde_harvester.logging_config import get_logger
from rpde_harvester.models.schemas import Item, ItemState, Page

DEFAULT_TIMEOUT = 30.0
DEFAULT_USER_AGENT = "RPDEHarvester/0.1 (+https://openactive.io)"


class RateLimiter:
    """Enforces a minimum interval between requests to the same origin host.

    Each host has its own lock and last-call time, so slow publishers never
    hold up requests to other hosts.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last_call: Dict[str, float] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @staticmethod
    def origin(url: str) -> str:
        parsed = urlparse(url)
        return (parsed.netloc or parsed.path).lower()

    def last_call_time(self, url: str) -> Optional[float]:
        return self._last_call.get(self.origin(url))

    async def acquire(self, url: str) -> float:
        """Wait until a request to ``url``'s host is allowed, then claim the slot.

        Returns:
            Seconds spent waiting
        """
        host = self.origin(url)
        lock = self._locks.setdefault(host, asyncio.Lock())

        async with lock:
            waited = 0.0
            last = self._last_call.get(host)
            if last is not None:
                elapsed = self._clock() - last
                if elapsed < self.min_interval:
                    waited = self.min_interval - elapsed
                    await self._sleep(waited)
            self._last_call[host] = self._clock()
            return waited


def create_client(
    timeout: float = DEFAULT_TIMEOUT,
    user_agent: str = DEFAULT_USER_AGENT,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Create the HTTP client shared by all feed workers."""
    return httpx.AsyncClient(
        follow_redirects=True,
        timeout=timeout,
        headers={"User-Agent": user_agent, "Accept": "application/json"},
        transport=transport,
    )


async def fetch_page(
    url: str,
    client: httpx.AsyncClient,
    rate_limiter: Optional[RateLimiter] = None,
) -> Page:
    """Fetch and parse one RPDE page.

    Args:
        url: Page URL (the feed's current cursor)
        client: HTTP client
        rate_limiter: Optional limiter shared between workers

    Returns:
        Parsed Page; each item's source_url is set to ``url``

    Raises:
        TransportError: Connection error, timeout or other request failure
        HttpStatusError: Status outside [200, 400)
        MalformedDataError: Body is not a valid RPDE page
    """
    logger = get_logger(__name__)

    if rate_limiter is not None:
        await rate_limiter.acquire(url)

    try:
        response = await client.get(url)
    except httpx.InvalidURL as e:
        raise MalformedDataError(f"Invalid URL: {e}", url) from e
    except httpx.RequestError as e:
        # Connection errors, timeouts, redirect loops and undecodable bodies
        logger.warning(f"Reading URL failed: {url}: {e!r}")
        raise TransportError(f"{type(e).__name__}: {e}", url) from e

    if not 200 <= response.status_code < 400:
        logger.warning(f"Reading URL status error: {url}: HTTP {response.status_code}")
        raise HttpStatusError(response.status_code, url)

    try:
        document = json.loads(response.content)
    except ValueError as e:
        raise MalformedDataError(f"Invalid JSON: {e}", url) from e

    return parse_page(url, document)


def parse_page(url: str, document: Any) -> Page:
    """Convert a decoded RPDE document into a Page.

    Raises:
        MalformedDataError: If the document does not follow the RPDE shape
    """
    if not isinstance(document, dict):
        raise MalformedDataError("Page is not a JSON object", url)

    raw_next = document.get("next")
    if not isinstance(raw_next, str) or not raw_next.strip():
        raise MalformedDataError("Page has no 'next' URL", url)

    # Relative links resolve against the page they came from
    next_url = urljoin(url, raw_next.strip())
    parsed = urlparse(next_url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise MalformedDataError(f"Page has an unusable 'next' URL: {raw_next!r}", url)

    raw_items = document.get("items", [])
    if raw_items is None:
        raw_items = []
    if not isinstance(raw_items, list):
        raise MalformedDataError("'items' is not a list", url)

    items = [_parse_item(url, position, raw) for position, raw in enumerate(raw_items)]
    return Page(url=url, items=items, next=next_url)


def _parse_item(url: str, position: int, raw: Any) -> Item:
    if not isinstance(raw, dict):
        raise MalformedDataError(f"Item {position} is not an object", url)

    item_id = raw.get("id")
    if isinstance(item_id, bool) or not isinstance(item_id, (str, int)) or item_id == "":
        raise MalformedDataError(f"Item {position} has no usable 'id'", url)

    modified = raw.get("modified")
    if isinstance(modified, bool) or not isinstance(modified, (str, int)) or modified == "":
        raise MalformedDataError(
            f"Item {item_id!r} has unsupported 'modified' {modified!r}"
            " (expected an integer or a string)",
            url,
        )

    state = raw.get("state")
    try:
        state = ItemState(state)
    except ValueError:
        raise MalformedDataError(f"Item {item_id!r} has unrecognized state {state!r}", url) from None

    kind = raw.get("kind")
    return Item(
        id=str(item_id),
        modified=modified,
        state=state,
        payload=raw.get("data"),
        kind=kind if isinstance(kind, str) else None,
        source_url=url,
    )
