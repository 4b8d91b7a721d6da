"""Unit tests for feed workers and the sweep scheduler.

Uses an in-memory database and a fake publisher served through
httpx.MockTransport.
"""

import asyncio

import httpx
import pytest

from rpde_harvester.exceptions import HarvesterError, MalformedDataError
from rpde_harvester.harvest.collate import collate_snapshots
from rpde_harvester.harvest.run_control import RunControl, RunState
from rpde_harvester.harvest.scheduler import Scheduler
from rpde_harvester.harvest.worker import FeedPhase, FeedWorker, SweepOutcome
from rpde_harvester.services.page_fetcher import RateLimiter, create_client
from rpde_harvester.storage.database import (
    get_feed,
    load_cursor,
    load_snapshot,
    register_feed,
    save_snapshot,
    set_enabled,
)
from rpde_harvester.models.schemas import Item, ItemState
from tests.conftest import rpde_item, rpde_page


pytestmark = pytest.mark.anyio

FEED = "https://publisher.example/rpde/sessions"
PAGE2 = FEED + "?afterTimestamp=1&afterId=a"
PAGE3 = FEED + "?afterTimestamp=2&afterId=a"
OTHER = "https://other.example/feed"


async def enabled_feed(url=FEED):
    feed = await register_feed(url)
    await set_enabled([feed.id], True)
    return feed


def make_worker(feed_id, client, control=None, max_pages=100):
    if control is None:
        control = RunControl()
        control.start()
    return FeedWorker(feed_id, client, RateLimiter(0), control, max_pages=max_pages)


class TestWorkerStep:
    """Scenarios for a single fetch-reconcile-persist step."""

    async def test_first_page_into_empty_snapshot(self, in_memory_db, publisher, http_client):
        publisher.pages[FEED] = rpde_page([rpde_item("a", 1)], PAGE2)
        feed = await enabled_feed()
        worker = make_worker(feed.id, http_client)

        step = await worker.step()

        assert step.items_added == 1
        assert step.is_end is False
        assert worker.phase is FeedPhase.MORE_PAGES
        assert await load_cursor(feed.id) == PAGE2
        snapshot = await load_snapshot(feed.id)
        assert list(snapshot) == ["a"]
        assert snapshot["a"].modified == 1
        assert snapshot["a"].source_url == FEED

    async def test_newer_version_replaces_snapshot_entry(self, in_memory_db, publisher, http_client):
        publisher.pages[FEED] = rpde_page([rpde_item("a", 1)], PAGE2)
        publisher.pages[PAGE2] = rpde_page([rpde_item("a", 2, name="Renamed")], PAGE3)
        feed = await enabled_feed()
        worker = make_worker(feed.id, http_client)

        await worker.step()
        await worker.step()

        snapshot = await load_snapshot(feed.id)
        assert snapshot["a"].modified == 2
        assert snapshot["a"].payload["name"] == "Renamed"
        assert snapshot["a"].source_url == PAGE2

    async def test_deleted_item_is_removed(self, in_memory_db, publisher, http_client):
        publisher.pages[FEED] = rpde_page([rpde_item("a", 1)], PAGE2)
        publisher.pages[PAGE2] = rpde_page([rpde_item("a", 2, state="deleted")], PAGE3)
        feed = await enabled_feed()
        worker = make_worker(feed.id, http_client)

        await worker.step()
        await worker.step()

        assert await load_snapshot(feed.id) == {}
        assert await load_cursor(feed.id) == PAGE3

    async def test_malformed_page_changes_nothing(self, in_memory_db, publisher, http_client):
        feed = await enabled_feed()
        existing = Item(id="a", modified=1, state=ItemState.UPDATED, payload={"v": 1})
        await save_snapshot(feed.id, {"a": existing})
        publisher.pages[FEED] = rpde_page(
            [rpde_item("a", 5), rpde_item("b", 6, state="archived")], PAGE2
        )
        worker = make_worker(feed.id, http_client)

        with pytest.raises(MalformedDataError):
            await worker.step()

        assert await load_snapshot(feed.id) == {"a": existing}
        assert await load_cursor(feed.id) == FEED

    async def test_empty_page_still_advances_cursor(self, in_memory_db, publisher, http_client):
        publisher.pages[FEED] = rpde_page([], PAGE2)
        feed = await enabled_feed()
        worker = make_worker(feed.id, http_client)

        step = await worker.step()

        assert step.items_added == 0
        assert await load_cursor(feed.id) == PAGE2

    async def test_relative_next_is_stored_as_absolute_cursor(self, in_memory_db, publisher, http_client):
        publisher.pages[FEED] = rpde_page([rpde_item("a", 1)], "/rpde/sessions?afterTimestamp=1&afterId=a")
        feed = await enabled_feed()
        worker = make_worker(feed.id, http_client)

        await worker.step()

        assert await load_cursor(feed.id) == PAGE2

    async def test_unusable_next_changes_nothing(self, in_memory_db, publisher, http_client):
        publisher.pages[FEED] = rpde_page([rpde_item("a", 1)], "mailto:feeds@publisher.example")
        feed = await enabled_feed()
        worker = make_worker(feed.id, http_client)

        with pytest.raises(MalformedDataError):
            await worker.step()

        assert await load_snapshot(feed.id) == {}
        assert await load_cursor(feed.id) == FEED

    async def test_disabled_feed_is_skipped(self, in_memory_db, publisher, http_client):
        feed = await register_feed(FEED)
        worker = make_worker(feed.id, http_client)

        assert await worker.step() is None
        assert publisher.requests == []


class TestWorkerSweep:
    """Tests for the per-feed page loop."""

    async def test_reads_until_end_of_feed(self, in_memory_db, publisher, http_client):
        publisher.pages[FEED] = rpde_page([rpde_item("a", 1)], PAGE2)
        publisher.pages[PAGE2] = rpde_page([rpde_item("b", 2)], PAGE3)
        publisher.pages[PAGE3] = rpde_page([], PAGE3)
        feed = await enabled_feed()
        worker = make_worker(feed.id, http_client)

        result = await worker.run_sweep()

        assert result.outcome is SweepOutcome.END_OF_FEED
        assert result.pages == 3
        assert result.items == 2
        assert worker.phase is FeedPhase.IDLE
        assert await load_cursor(feed.id) == PAGE3
        assert set(await load_snapshot(feed.id)) == {"a", "b"}

    async def test_end_of_feed_fixed_point(self, in_memory_db, publisher, http_client):
        publisher.pages[FEED] = rpde_page([], FEED)
        feed = await enabled_feed()
        worker = make_worker(feed.id, http_client)

        result = await worker.run_sweep()

        assert result.outcome is SweepOutcome.END_OF_FEED
        assert result.pages == 1
        assert await load_cursor(feed.id) == FEED

    async def test_fetch_failure_is_recorded(self, in_memory_db, publisher, http_client):
        publisher.fail[FEED] = 503
        feed = await enabled_feed()
        worker = make_worker(feed.id, http_client)

        result = await worker.run_sweep()

        assert result.outcome is SweepOutcome.FETCH_FAILED
        assert result.error_kind == "http_status"
        stored = await get_feed(feed.id)
        assert stored.last_error == "HTTP 503"
        assert stored.last_error_kind == "http_status"
        assert stored.cursor == FEED

    async def test_failure_after_progress_keeps_last_cursor(self, in_memory_db, publisher, http_client):
        publisher.pages[FEED] = rpde_page([rpde_item("a", 1)], PAGE2)
        publisher.fail[PAGE2] = 500
        feed = await enabled_feed()
        worker = make_worker(feed.id, http_client)

        result = await worker.run_sweep()

        assert result.outcome is SweepOutcome.FETCH_FAILED
        assert result.pages == 1
        assert await load_cursor(feed.id) == PAGE2
        assert list(await load_snapshot(feed.id)) == ["a"]

    async def test_redirect_loop_is_recorded_as_transport_failure(self, in_memory_db):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(302, headers={"Location": FEED})

        feed = await enabled_feed()
        async with create_client(transport=httpx.MockTransport(handler)) as client:
            result = await make_worker(feed.id, client).run_sweep()

        assert result.outcome is SweepOutcome.FETCH_FAILED
        assert result.error_kind == "transport"
        stored = await get_feed(feed.id)
        assert stored.last_error_kind == "transport"
        assert "TooManyRedirects" in stored.last_error
        assert stored.last_attempt_at is not None

    async def test_unexpected_error_keeps_progress_and_status(self, in_memory_db, publisher):
        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == PAGE2:
                raise RuntimeError("handler blew up")
            return publisher.handler(request)

        publisher.pages[FEED] = rpde_page([rpde_item("a", 1)], PAGE2)
        feed = await enabled_feed()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            result = await make_worker(feed.id, client).run_sweep()

        assert result.outcome is SweepOutcome.CRASHED
        assert result.pages == 1
        assert result.items == 1
        assert result.error_kind == "internal"
        stored = await get_feed(feed.id)
        assert stored.last_error == "handler blew up"
        assert stored.last_error_kind == "internal"
        assert stored.cursor == PAGE2

    async def test_page_limit_stops_runaway_feed(self, in_memory_db, publisher, http_client):
        for n in range(10):
            publisher.pages[f"{FEED}?p={n}" if n else FEED] = rpde_page(
                [rpde_item(str(n), n + 1)], f"{FEED}?p={n + 1}"
            )
        feed = await enabled_feed()
        worker = make_worker(feed.id, http_client, max_pages=3)

        result = await worker.run_sweep()

        assert result.outcome is SweepOutcome.PAGE_LIMIT
        assert result.pages == 3
        assert await load_cursor(feed.id) == f"{FEED}?p=3"

    async def test_stopped_control_exits_before_fetching(self, in_memory_db, publisher, http_client):
        feed = await enabled_feed()
        worker = make_worker(feed.id, http_client, control=RunControl())

        result = await worker.run_sweep()

        assert result.outcome is SweepOutcome.STOPPED
        assert publisher.requests == []


class TestScheduler:
    """Tests for sweeps across feeds."""

    async def test_sweep_isolates_failures(self, in_memory_db, publisher, http_client, config):
        publisher.fail[FEED] = 500
        publisher.pages[OTHER] = rpde_page([rpde_item("x", 1)], OTHER)
        bad = await enabled_feed(FEED)
        good = await enabled_feed(OTHER)
        scheduler = Scheduler(config, client=http_client)

        report = await scheduler.run_sweep()

        outcomes = {r.feed_id: r.outcome for r in report.results}
        assert outcomes == {bad.id: SweepOutcome.FETCH_FAILED, good.id: SweepOutcome.END_OF_FEED}
        assert [r.feed_id for r in report.failures] == [bad.id]
        assert list(await load_snapshot(good.id)) == ["x"]
        assert scheduler.state is RunState.STOPPED
        assert scheduler.last_report is report

    async def test_sweep_only_advances_enabled_feeds(self, in_memory_db, publisher, http_client, config):
        publisher.pages[FEED] = rpde_page([], FEED)
        publisher.pages[OTHER] = rpde_page([], OTHER)
        enabled = await enabled_feed(FEED)
        await register_feed(OTHER)
        scheduler = Scheduler(config, client=http_client)

        report = await scheduler.run_sweep()

        assert [r.feed_id for r in report.results] == [enabled.id]
        assert publisher.requests == [FEED]

    async def test_sweep_subset(self, in_memory_db, publisher, http_client, config):
        publisher.pages[FEED] = rpde_page([], FEED)
        publisher.pages[OTHER] = rpde_page([], OTHER)
        await enabled_feed(FEED)
        other = await enabled_feed(OTHER)
        scheduler = Scheduler(config, client=http_client)

        report = await scheduler.run_sweep([other.id])

        assert [r.feed_id for r in report.results] == [other.id]
        assert publisher.requests == [OTHER]

    async def test_concurrent_sweeps_are_rejected(self, in_memory_db, publisher, http_client, config):
        release = asyncio.Event()

        async def slow_handler(request):
            await release.wait()
            return publisher.handler(request)

        publisher.pages[FEED] = rpde_page([], FEED)
        await enabled_feed(FEED)

        async with httpx.AsyncClient(transport=httpx.MockTransport(slow_handler)) as client:
            scheduler = Scheduler(config, client=client)
            first = asyncio.create_task(scheduler.run_sweep())
            await asyncio.sleep(0.01)

            with pytest.raises(HarvesterError, match="already running"):
                await scheduler.run_sweep()

            release.set()
            await first

    async def test_collate_pauses_and_resumes(self, in_memory_db, publisher, http_client, config):
        publisher.pages[FEED] = rpde_page([rpde_item("a", 1), rpde_item("b", 1)], FEED)
        feed = await enabled_feed(FEED)
        scheduler = Scheduler(config, client=http_client)
        await scheduler.run_sweep()

        scheduler.control.start()
        result = await scheduler.collate()

        assert scheduler.state is RunState.RUNNING
        assert result.feeds_read == 1
        assert sorted(i.item.id for i in result.items) == ["a", "b"]
        assert all(i.feed_id == feed.id for i in result.items)
        assert scheduler.last_collate is result

    async def test_collate_waits_for_in_flight_step(self, in_memory_db, publisher, config, monkeypatch):
        publisher.pages[FEED] = rpde_page([rpde_item("a", 1)], PAGE2)
        publisher.pages[PAGE2] = rpde_page([rpde_item("b", 2)], PAGE2)
        feed = await enabled_feed(FEED)
        fetching = asyncio.Event()
        release = asyncio.Event()

        async def slow_handler(request):
            if str(request.url) == FEED:
                fetching.set()
                await release.wait()
            return publisher.handler(request)

        seen = {}

        async def observed_collate(feed_ids=None):
            seen["requests"] = list(publisher.requests)
            seen["cursor"] = await load_cursor(feed.id)
            return await collate_snapshots(feed_ids)

        monkeypatch.setattr("rpde_harvester.harvest.scheduler.collate_snapshots", observed_collate)

        async with httpx.AsyncClient(transport=httpx.MockTransport(slow_handler)) as client:
            scheduler = Scheduler(config, client=client)
            sweep = asyncio.create_task(scheduler.run_sweep())
            await asyncio.wait_for(fetching.wait(), timeout=5)

            collate = asyncio.create_task(scheduler.collate())
            await asyncio.sleep(0.01)
            assert scheduler.state is RunState.PAUSED
            assert not collate.done()

            release.set()
            result = await asyncio.wait_for(collate, timeout=5)
            report = await asyncio.wait_for(sweep, timeout=5)

        # The collate ran after the in-flight page was persisted and before the next fetch
        assert seen["requests"] == [FEED]
        assert seen["cursor"] == PAGE2
        assert [i.item.id for i in result.items] == ["a"]
        assert report.results[0].outcome is SweepOutcome.END_OF_FEED
        assert publisher.requests == [FEED, PAGE2]

    async def test_collate_reports_feeds_without_data(self, in_memory_db, http_client, config):
        feed = await enabled_feed(FEED)
        scheduler = Scheduler(config, client=http_client)

        result = await scheduler.collate()

        assert result.items == []
        assert result.feeds_without_data == [feed.id]
        assert scheduler.state is RunState.STOPPED

    async def test_run_forever_stops_after_max_sweeps(self, in_memory_db, publisher, http_client, config):
        publisher.pages[FEED] = rpde_page([rpde_item("a", 1)], FEED)
        await enabled_feed(FEED)
        config.sweep_interval = 0.01
        scheduler = Scheduler(config, client=http_client)

        await asyncio.wait_for(scheduler.run_forever(max_sweeps=2), timeout=5)

        assert scheduler.state is RunState.STOPPED
        assert publisher.requests == [FEED, FEED]
