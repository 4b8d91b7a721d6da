"""Services for rpde_harvester."""

from .feed_directory import fetch_directory, seed_from_directory
from .page_fetcher import RateLimiter, create_client, fetch_page, parse_page
from .reconciler import reconcile

__all__ = [
    "fetch_directory",
    "seed_from_directory",
    "RateLimiter",
    "create_client",
    "fetch_page",
    "parse_page",
    "reconcile",
]
