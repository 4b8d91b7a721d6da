"""Feed scheduler.

The scheduler runs sweeps over the enabled feeds. Each feed gets its own
worker task; a semaphore caps how many run at once and workers report back
through a queue of FeedSweepResult events. A single RunControl lets callers
pause, resume or stop the harvest between page steps.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, List, Optional

import httpx

from rpde_harvester.config import HarvesterConfig
from rpde_harvester.exceptions import HarvesterError
from rpde_harvester.harvest.collate import collate_snapshots
from rpde_harvester.harvest.run_control import RunControl, RunState
from rpde_harvester.harvest.worker import FeedSweepResult, FeedWorker, SweepOutcome
from rpde_harvester.logging_config import get_logger
from rpde_harvester.models.schemas import CollateResult, Feed
from rpde_harvester.services.page_fetcher import RateLimiter, create_client
from rpde_harvester.storage import database

logger = get_logger(__name__)

CollateCallback = Callable[[CollateResult], Awaitable[None]]


@dataclass
class SweepReport:
    """Summary of one pass over the enabled feeds."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    results: List[FeedSweepResult] = field(default_factory=list)

    @property
    def pages(self) -> int:
        return sum(r.pages for r in self.results)

    @property
    def failures(self) -> List[FeedSweepResult]:
        return [r for r in self.results if r.failed]

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "feeds": len(self.results),
            "pages": self.pages,
            "failures": len(self.failures),
            "results": [r.to_dict() for r in sorted(self.results, key=lambda r: r.feed_id)],
        }


class Scheduler:
    """Supervises per-feed workers across sweeps."""

    def __init__(
        self,
        config: HarvesterConfig,
        client: Optional[httpx.AsyncClient] = None,
        rate_limiter: Optional[RateLimiter] = None,
        control: Optional[RunControl] = None,
    ):
        self.config = config
        self._owns_client = client is None
        self.client = client or create_client(config.request_timeout, config.user_agent)
        self.rate_limiter = rate_limiter or RateLimiter(config.min_interval)
        self.control = control or RunControl()
        self.last_report: Optional[SweepReport] = None
        self.last_collate: Optional[CollateResult] = None
        self._sweeping = False

    @property
    def state(self) -> RunState:
        return self.control.state

    @property
    def sweeping(self) -> bool:
        return self._sweeping

    async def run_sweep(self, feed_ids: Optional[Iterable[int]] = None) -> SweepReport:
        """Run every enabled feed (optionally only ``feed_ids``) to its current end.

        Raises:
            HarvesterError: If a sweep is already in progress
        """
        if self._sweeping:
            raise HarvesterError("A sweep is already running")

        owns_run = self.control.state is RunState.STOPPED
        if owns_run:
            self.control.start()

        self._sweeping = True
        try:
            feeds = await self._select_feeds(feed_ids)
            report = await self._sweep(feeds)
        finally:
            self._sweeping = False
            if owns_run and self.control.state is not RunState.STOPPED:
                self.control.stop()

        self.last_report = report
        return report

    async def _select_feeds(self, feed_ids: Optional[Iterable[int]]) -> List[Feed]:
        feeds = await database.list_feeds(enabled_only=True)
        if feed_ids is not None:
            wanted = set(feed_ids)
            feeds = [feed for feed in feeds if feed.id in wanted]
        return feeds

    async def _sweep(self, feeds: List[Feed]) -> SweepReport:
        report = SweepReport(started_at=datetime.now(timezone.utc))
        logger.info(f"Sweep started over {len(feeds)} feeds ({self.config.max_workers} workers)")

        semaphore = asyncio.Semaphore(self.config.max_workers)
        events: "asyncio.Queue[FeedSweepResult]" = asyncio.Queue()

        async def supervise(feed: Feed) -> None:
            async with semaphore:
                worker = FeedWorker(
                    feed.id,
                    self.client,
                    self.rate_limiter,
                    self.control,
                    max_pages=self.config.max_pages_per_sweep,
                )
                try:
                    result = await worker.run_sweep()
                except Exception as e:
                    logger.exception(f"Feed {feed.id}: worker crashed")
                    result = FeedSweepResult(
                        feed_id=feed.id,
                        outcome=SweepOutcome.CRASHED,
                        error=str(e),
                        error_kind="internal",
                    )
            await events.put(result)

        tasks = [asyncio.create_task(supervise(feed), name=f"feed-{feed.id}") for feed in feeds]
        try:
            for _ in tasks:
                result = await events.get()
                report.results.append(result)
                if result.failed:
                    logger.warning(f"Feed {result.feed_id}: {result.outcome.value}: {result.error}")
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        report.finished_at = datetime.now(timezone.utc)
        logger.info(
            f"Sweep finished: {len(report.results)} feeds, {report.pages} pages, "
            f"{len(report.failures)} failures"
        )
        return report

    async def collate(self, feed_ids: Optional[Iterable[int]] = None) -> CollateResult:
        """Pause a running harvest, read all snapshots, then resume."""
        was_running = self.control.state is RunState.RUNNING
        if was_running:
            await self.control.pause()
        try:
            result = await collate_snapshots(feed_ids)
        finally:
            if was_running:
                self.control.resume()

        self.last_collate = result
        return result

    async def run_forever(
        self,
        on_collate: Optional[CollateCallback] = None,
        max_sweeps: Optional[int] = None,
    ) -> None:
        """Sweep every sweep_interval and collate every collate_interval until stopped."""
        self.control.start()
        logger.info(
            f"Harvester running: sweep every {self.config.sweep_interval:.0f}s, "
            f"collate every {self.config.collate_interval:.0f}s"
        )

        async def sweep_loop() -> None:
            sweeps = 0
            while self.control.state is not RunState.STOPPED:
                try:
                    await self.run_sweep()
                except HarvesterError as e:
                    logger.error(f"Sweep failed: {e}")
                sweeps += 1
                if max_sweeps is not None and sweeps >= max_sweeps:
                    self.control.stop()
                    break
                if await self.control.sleep(self.config.sweep_interval):
                    break

        async def collate_loop() -> None:
            while not await self.control.sleep(self.config.collate_interval):
                try:
                    result = await self.collate()
                except HarvesterError as e:
                    logger.error(f"Collate failed: {e}")
                    continue
                if on_collate is not None:
                    await on_collate(result)

        collator = asyncio.create_task(collate_loop(), name="collate")
        try:
            await sweep_loop()
        finally:
            self.control.stop()
            collator.cancel()
            await asyncio.gather(collator, return_exceptions=True)
        logger.info("Harvester stopped")

    async def pause(self) -> None:
        await self.control.pause()

    def resume(self) -> None:
        self.control.resume()

    def stop(self) -> None:
        self.control.stop()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
