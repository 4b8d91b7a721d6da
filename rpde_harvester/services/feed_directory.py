"""Feed directory service.

This module reads the list of RPDE feed URLs published by a dataset directory.
The directory is a JSON array of dataset records; each record's ``dataurl``
is the first page (stem) of one feed.
"""

from typing import Any, List, Optional, Tuple

import httpx

from rpde_harvester.logging_config import get_logger
from rpde_harvester.services.page_fetcher import DEFAULT_USER_AGENT
from rpde_harvester.storage import database


async def fetch_directory(
    directory_url: str,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = 30.0,
) -> List[str]:
    """Fetch feed stems from a dataset directory.

    Args:
        directory_url: URL of the directory listing
        client: Optional HTTP client (a temporary one is created if omitted)
        timeout: Request timeout for the temporary client

    Returns:
        Feed URLs in directory order, duplicates removed. Empty list if the
        directory cannot be read.
    """
    logger = get_logger(__name__)
    logger.info(f"Reading feed directory: {directory_url}")

    if client is None:
        async with httpx.AsyncClient(
            follow_redirects=True,
            timeout=timeout,
            headers={"User-Agent": DEFAULT_USER_AGENT},
        ) as temporary:
            return await fetch_directory(directory_url, temporary)

    try:
        response = await client.get(directory_url)
        response.raise_for_status()
        records = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"Unable to read data feeds URL: {e}")
        return []

    urls = extract_feed_urls(records)
    logger.info(f"Directory lists {len(urls)} feeds")
    return urls


def extract_feed_urls(records: Any) -> List[str]:
    """Pull ``dataurl`` values out of directory records."""
    if isinstance(records, dict):
        # Some directories wrap the list
        records = records.get("datasets") or records.get("items") or []
    if not isinstance(records, list):
        return []

    urls: List[str] = []
    seen = set()
    for record in records:
        if not isinstance(record, dict):
            continue
        url = record.get("dataurl")
        if not isinstance(url, str):
            continue
        url = url.strip()
        if not url.startswith(("http://", "https://")) or url in seen:
            continue
        seen.add(url)
        urls.append(url)
    return urls


async def seed_from_directory(
    directory_url: str,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = 30.0,
) -> Tuple[int, int]:
    """Register every feed the directory lists.

    New feeds start disabled; feeds already in the control table keep their
    cursor and enabled flag.

    Returns:
        Tuple of (feeds listed by the directory, feeds newly registered)
    """
    urls = await fetch_directory(directory_url, client, timeout)
    if not urls:
        get_logger(__name__).warning(f"Directory {directory_url} listed no feeds")
        return 0, 0

    added = await database.register_feeds(urls)
    get_logger(__name__).info(f"Directory lists {len(urls)} feeds, {added} newly registered")
    return len(urls), added
