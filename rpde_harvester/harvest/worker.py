"""Per-feed worker.

A FeedWorker owns one feed for the duration of a sweep and walks it page by
page: load cursor, fetch, reconcile, persist snapshot, persist cursor. It stops
at the end of the feed, on the first failure, at the per-sweep page limit, or
when the shared run state says stop.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx

from rpde_harvester.exceptions import FetchError, HarvesterError, PersistenceError
from rpde_harvester.harvest.run_control import RunControl
from rpde_harvester.logging_config import get_logger
from rpde_harvester.services.page_fetcher import RateLimiter, fetch_page
from rpde_harvester.services.reconciler import reconcile
from rpde_harvester.storage import database

logger = get_logger(__name__)


class FeedPhase(str, Enum):
    IDLE = "idle"
    FETCHING_PAGE = "fetching_page"
    RECONCILING = "reconciling"
    PERSISTING = "persisting"
    END_OF_FEED = "end_of_feed"
    MORE_PAGES = "more_pages"


class SweepOutcome(str, Enum):
    END_OF_FEED = "end_of_feed"
    SKIPPED = "skipped"
    FETCH_FAILED = "fetch_failed"
    PERSISTENCE_FAILED = "persistence_failed"
    PAGE_LIMIT = "page_limit"
    STOPPED = "stopped"
    CRASHED = "crashed"


@dataclass
class FeedSweepResult:
    """Completion event a worker reports to the scheduler."""

    feed_id: int
    outcome: SweepOutcome
    pages: int = 0
    items: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.outcome in (
            SweepOutcome.FETCH_FAILED,
            SweepOutcome.PERSISTENCE_FAILED,
            SweepOutcome.CRASHED,
        )

    def to_dict(self) -> dict:
        return {
            "feed_id": self.feed_id,
            "outcome": self.outcome.value,
            "pages": self.pages,
            "items": self.items,
            "error": self.error,
            "error_kind": self.error_kind,
        }


@dataclass
class StepResult:
    fetched_url: str
    next_url: str
    items_added: int
    is_end: bool


class FeedWorker:
    """Runs the page state machine for a single feed."""

    def __init__(
        self,
        feed_id: int,
        client: httpx.AsyncClient,
        rate_limiter: RateLimiter,
        control: RunControl,
        max_pages: int = 1000,
    ):
        self.feed_id = feed_id
        self.client = client
        self.rate_limiter = rate_limiter
        self.control = control
        self.max_pages = max_pages
        self.phase = FeedPhase.IDLE

    async def run_sweep(self) -> FeedSweepResult:
        """Read pages until end of feed, failure, page limit or stop."""
        result = FeedSweepResult(feed_id=self.feed_id, outcome=SweepOutcome.STOPPED)

        try:
            while True:
                if not await self.control.checkpoint():
                    logger.info(f"Feed {self.feed_id}: stop requested after {result.pages} pages")
                    result.outcome = SweepOutcome.STOPPED
                    break

                async with self.control.step():
                    step = await self.step(page_no=result.pages + 1)

                if step is None:
                    result.outcome = SweepOutcome.SKIPPED
                    break

                result.pages += 1
                result.items += step.items_added

                if step.is_end:
                    logger.info(f"Feed {self.feed_id}: END OF FEED after {result.pages} pages")
                    result.outcome = SweepOutcome.END_OF_FEED
                    break

                if result.pages >= self.max_pages:
                    logger.warning(
                        f"Feed {self.feed_id}: page limit of {self.max_pages} reached, "
                        "resuming next sweep"
                    )
                    result.outcome = SweepOutcome.PAGE_LIMIT
                    break

        except FetchError as e:
            logger.warning(f"Feed {self.feed_id}: unable to read next page ({e.kind}): {e}")
            result.outcome = SweepOutcome.FETCH_FAILED
            self._set_error(result, e)
            await self._record_error(e)
        except PersistenceError as e:
            logger.error(f"Feed {self.feed_id}: storage failure: {e}")
            result.outcome = SweepOutcome.PERSISTENCE_FAILED
            self._set_error(result, e)
            await self._record_error(e)
        except Exception as e:
            logger.exception(f"Feed {self.feed_id}: unexpected failure")
            result.outcome = SweepOutcome.CRASHED
            self._set_error(result, e)
            await self._record_error(e)
        finally:
            self.phase = FeedPhase.IDLE

        return result

    async def step(self, page_no: int = 1) -> Optional[StepResult]:
        """Fetch, reconcile and persist one page.

        Returns:
            StepResult, or None if the feed is missing or disabled

        Raises:
            FetchError: The page could not be fetched; nothing was written
            PersistenceError: Snapshot or cursor could not be saved
        """
        feed = await database.get_feed(self.feed_id)
        if feed is None or not feed.enabled:
            logger.info(f"Feed {self.feed_id}: not enabled, skipping")
            return None

        cursor = feed.cursor
        logger.info(f"Reading feed {self.feed_id} page {page_no} - {cursor}")

        self.phase = FeedPhase.FETCHING_PAGE
        page = await fetch_page(cursor, self.client, self.rate_limiter)

        self.phase = FeedPhase.RECONCILING
        existing = await database.load_snapshot(self.feed_id)
        snapshot, items_added = reconcile(existing, page)

        self.phase = FeedPhase.PERSISTING
        if items_added:
            logger.info(
                f"Feed {self.feed_id}: READING {len(existing)} ITEMS FROM PREVIOUS DATA "
                f"AND ADDING {items_added} ITEMS -> {len(snapshot)} live"
            )
            await database.save_snapshot(self.feed_id, snapshot)
        else:
            logger.info(f"Feed {self.feed_id}: NO NEW ITEMS")

        # Saved even at the end of the feed so the next sweep polls the same page
        await database.save_cursor(self.feed_id, page.next)
        await database.record_success(self.feed_id)

        step = StepResult(
            fetched_url=cursor,
            next_url=page.next,
            items_added=items_added,
            is_end=page.is_end,
        )
        self.phase = FeedPhase.END_OF_FEED if step.is_end else FeedPhase.MORE_PAGES
        return step

    def _set_error(self, result: FeedSweepResult, error: Exception) -> None:
        result.error = str(error) or type(error).__name__
        result.error_kind = _error_kind(error)

    async def _record_error(self, error: Exception) -> None:
        try:
            await database.record_error(
                self.feed_id, _error_kind(error), str(error) or type(error).__name__
            )
        except PersistenceError as e:
            logger.error(f"Feed {self.feed_id}: could not record error status: {e}")


def _error_kind(error: Exception) -> str:
    """Status kind for an error; anything outside the hierarchy is an internal error."""
    if isinstance(error, HarvesterError):
        return error.kind
    return "internal"
