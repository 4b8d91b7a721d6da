"""Harvester MCP tools.

This module provides MCP tools for inspecting feeds, selecting which feeds are
harvested, running sweeps and controlling a running harvest.

NOTE: Never use Optional parameters in MCP tools - they break MCP clients.
Use empty string "" for optional strings and 0 for optional integers.
"""

import asyncio
import functools
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import Context

from rpde_harvester.exceptions import HarvesterError
from rpde_harvester.harvest.scheduler import Scheduler
from rpde_harvester.logging_config import get_logger
from rpde_harvester.services.feed_directory import seed_from_directory
from rpde_harvester.storage import database

_scheduler: Optional[Scheduler] = None
_background_sweep: Optional[asyncio.Task] = None


def set_scheduler(scheduler: Optional[Scheduler]) -> None:
    """Set the scheduler the tools operate on."""
    global _scheduler
    _scheduler = scheduler


def _get_scheduler() -> Scheduler:
    if _scheduler is None:
        raise HarvesterError("Harvester is not initialized")
    return _scheduler


def tool_errors(func):
    """Turn harvester and validation errors into error responses."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> Dict[str, Any]:
        try:
            return await func(*args, **kwargs)
        except (HarvesterError, ValueError) as e:
            get_logger(__name__).warning(f"{func.__name__} failed: {e}")
            return {"success": False, "error": str(e)}

    return wrapper


def _log_background_sweep(task: asyncio.Task) -> None:
    """Report the outcome of a sweep started with wait=False."""
    logger = get_logger(__name__)
    if task.cancelled():
        logger.info("Background sweep cancelled")
        return
    error = task.exception()
    if error is not None:
        logger.error(f"Background sweep failed: {error!r}")
        return
    report = task.result()
    logger.info(f"Background sweep finished: {len(report.results)} feeds, {len(report.failures)} failures")


def _parse_ids(feed_ids: str) -> List[int]:
    """Parse a comma separated list of feed ids."""
    ids = []
    for part in feed_ids.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            ids.append(int(part))
        except ValueError:
            raise ValueError(f"Invalid feed id: {part!r}") from None
    return ids


@tool_errors
async def list_feeds(enabled_only: bool = False, ctx: Context = None) -> Dict[str, Any]:
    """List feeds in the control table with their cursor and status.

    Args:
        enabled_only: Only list feeds selected for harvesting
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - count: number of feeds
        - feeds: list of feed status objects
    """
    logger = get_logger(__name__)
    logger.info(f"list_feeds called: enabled_only={enabled_only}")

    statuses = await database.feed_statuses()
    feeds = [s.to_dict() for s in statuses if s.feed.enabled or not enabled_only]

    return {
        "success": True,
        "count": len(feeds),
        "feeds": feeds,
    }


@tool_errors
async def feed_status(feed_id: int, ctx: Context = None) -> Dict[str, Any]:
    """Show one feed's cursor, last success, last error and item count.

    Args:
        feed_id: Feed id (from list_feeds)
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - feed: status object (if found)
        - error: string if the feed does not exist
    """
    statuses = await database.feed_statuses([feed_id])
    if not statuses:
        return {"success": False, "error": f"Feed {feed_id} not found"}

    return {"success": True, "feed": statuses[0].to_dict()}


@tool_errors
async def add_feed(url: str, enabled: bool = False, ctx: Context = None) -> Dict[str, Any]:
    """Register an RPDE feed by the URL of its first page.

    Registering an existing URL returns the existing feed unchanged.

    Args:
        url: First page URL of the RPDE feed
        enabled: Select the feed for harvesting straight away
        ctx: MCP Context object (injected automatically)
    """
    if not url.startswith(("http://", "https://")):
        raise ValueError(f"Feed URL must be http or https: {url}")

    feed = await database.register_feed(url)
    if enabled and not feed.enabled:
        await database.set_enabled([feed.id], True)
        feed.enabled = True

    return {
        "success": True,
        "feed": {"id": feed.id, "stem": feed.stem, "cursor": feed.cursor, "enabled": feed.enabled},
    }


@tool_errors
async def seed_feeds(directory_url: str = "", ctx: Context = None) -> Dict[str, Any]:
    """Register every feed listed by the dataset directory.

    Args:
        directory_url: Directory to read (empty string uses the configured one)
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - listed: number of feed URLs in the directory
        - added: number of feeds not registered before
    """
    scheduler = _get_scheduler()
    url = directory_url or scheduler.config.directory_url

    listed, added = await seed_from_directory(url, scheduler.client)
    if not listed:
        return {"success": False, "error": f"No feeds could be read from {url}"}

    return {"success": True, "listed": listed, "added": added}


@tool_errors
async def select_feeds(
    feed_ids: str = "",
    all_feeds: bool = False,
    ctx: Context = None,
) -> Dict[str, Any]:
    """Choose which feeds the harvester advances.

    Enables exactly the given feeds and disables all others.

    Args:
        feed_ids: Comma separated feed ids, e.g. "1,4,7"
        all_feeds: Enable every registered feed (feed_ids is ignored)
        ctx: MCP Context object (injected automatically)
    """
    if all_feeds:
        ids = [feed.id for feed in await database.list_feeds()]
    else:
        ids = _parse_ids(feed_ids)
        if not ids:
            return {"success": False, "error": "Provide feed_ids or set all_feeds"}

    enabled = await database.enable_only(ids)
    return {"success": True, "enabled": enabled}


@tool_errors
async def run_sweep(feed_ids: str = "", wait: bool = True, ctx: Context = None) -> Dict[str, Any]:
    """Read every enabled feed up to its current end.

    Args:
        feed_ids: Comma separated ids to restrict the sweep (empty string for all enabled)
        wait: Wait for the sweep and return its report; False starts it in the background
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - report: per-feed outcomes, pages and errors (when wait is true)
        - started: true when the sweep was started in the background
    """
    global _background_sweep

    scheduler = _get_scheduler()
    ids = _parse_ids(feed_ids) or None

    if scheduler.sweeping:
        return {"success": False, "error": "A sweep is already running"}

    if not wait:
        _background_sweep = asyncio.create_task(scheduler.run_sweep(ids), name="background-sweep")
        _background_sweep.add_done_callback(_log_background_sweep)
        return {"success": True, "started": True}

    report = await scheduler.run_sweep(ids)
    return {"success": True, "report": report.to_dict()}


@tool_errors
async def pause_harvest(ctx: Context = None) -> Dict[str, Any]:
    """Pause a running harvest once in-flight page steps have finished."""
    scheduler = _get_scheduler()
    await scheduler.pause()
    return {"success": True, "state": scheduler.state.value}


@tool_errors
async def resume_harvest(ctx: Context = None) -> Dict[str, Any]:
    """Resume a paused harvest."""
    scheduler = _get_scheduler()
    scheduler.resume()
    return {"success": True, "state": scheduler.state.value}


@tool_errors
async def stop_harvest(ctx: Context = None) -> Dict[str, Any]:
    """Stop the harvest after each worker's current page step."""
    scheduler = _get_scheduler()
    scheduler.stop()
    return {"success": True, "state": scheduler.state.value}


@tool_errors
async def harvest_state(ctx: Context = None) -> Dict[str, Any]:
    """Report the run state and the last sweep's summary."""
    scheduler = _get_scheduler()
    report = scheduler.last_report
    return {
        "success": True,
        "state": scheduler.state.value,
        "sweeping": scheduler.sweeping,
        "last_sweep": report.to_dict() if report else None,
    }


@tool_errors
async def list_snapshot_items(feed_id: int = 0, limit: int = 50, ctx: Context = None) -> Dict[str, Any]:
    """List live items from feed snapshots.

    Args:
        feed_id: Only this feed (0 for all enabled feeds, read through a collate pass)
        limit: Maximum number of items to return
        ctx: MCP Context object (injected automatically)
    """
    scheduler = _get_scheduler()
    result = await scheduler.collate([feed_id] if feed_id else None)
    items = result.items[:limit] if limit > 0 else result.items

    return {
        "success": True,
        "total": len(result.items),
        "count": len(items),
        "items": [item.to_dict() for item in items],
    }


# List of harvest tools for registration
harvest_tools = [
    list_feeds,
    feed_status,
    add_feed,
    seed_feeds,
    select_feeds,
    run_sweep,
    pause_harvest,
    resume_harvest,
    stop_harvest,
    harvest_state,
    list_snapshot_items,
]
