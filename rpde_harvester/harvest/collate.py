"""Collate pass: combine every enabled feed's snapshot into one list."""

from typing import Iterable, Optional

from rpde_harvester.logging_config import get_logger
from rpde_harvester.models.schemas import CollatedItem, CollateResult
from rpde_harvester.storage import database


async def collate_snapshots(feed_ids: Optional[Iterable[int]] = None) -> CollateResult:
    """Read the snapshots of enabled feeds.

    Each snapshot is read in one locked query, so a feed being rewritten by
    its worker is seen either before or after the write.

    Args:
        feed_ids: Restrict to these feeds (still only enabled ones)

    Returns:
        CollateResult with every live item tagged by feed id
    """
    logger = get_logger(__name__)
    logger.info("COLLATING")

    feeds = await database.list_feeds(enabled_only=True)
    if feed_ids is not None:
        wanted = set(feed_ids)
        feeds = [feed for feed in feeds if feed.id in wanted]

    result = CollateResult()
    for feed in feeds:
        snapshot = await database.load_snapshot(feed.id)
        result.feeds_read += 1
        if not snapshot:
            logger.info(f"NO DATA FOR FEED {feed.id}")
            result.feeds_without_data.append(feed.id)
            continue

        logger.info(f"ADDING {len(snapshot)} ITEMS from feed {feed.id}")
        result.items.extend(CollatedItem(feed_id=feed.id, item=item) for item in snapshot.values())

    logger.info(f"COLLATED {len(result.items)} items from {result.feeds_read} feeds")
    return result
