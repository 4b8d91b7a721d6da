"""Shared test fixtures for rpde_harvester tests."""

import json
from typing import Dict, List, Optional
from unittest.mock import AsyncMock, patch

import aiosqlite
import httpx
import pytest

from rpde_harvester.config import HarvesterConfig
from rpde_harvester.storage.database import init_database


@pytest.fixture
def anyio_backend():
    """Run async tests on asyncio only."""
    return "asyncio"


@pytest.fixture
async def in_memory_db():
    """Create an in-memory database for testing."""
    db = await aiosqlite.connect(":memory:")
    db.row_factory = aiosqlite.Row
    await init_database(db)

    # Patch get_database to return our in-memory connection
    with patch("rpde_harvester.storage.database.get_database", AsyncMock(return_value=db)):
        yield db

    await db.close()


def rpde_item(item_id: str, modified, state: str = "updated", **data) -> dict:
    """Build one RPDE item as published on the wire."""
    item = {"id": item_id, "modified": modified, "state": state, "kind": "SessionSeries"}
    if state == "updated":
        item["data"] = {"name": f"Session {item_id}", **data}
    return item


def rpde_page(items: List[dict], next_url: str) -> dict:
    return {"items": items, "next": next_url, "license": "https://creativecommons.org/licenses/by/4.0/"}


class FakePublisher:
    """Serves canned RPDE pages through httpx.MockTransport.

    Pages are keyed by full URL. Unknown URLs answer 404. ``fail`` maps a URL
    to a status code or an exception to simulate outages.
    """

    def __init__(self, pages: Optional[Dict[str, dict]] = None):
        self.pages: Dict[str, dict] = dict(pages or {})
        self.raw: Dict[str, bytes] = {}
        self.fail: Dict[str, object] = {}
        self.requests: List[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)

        failure = self.fail.get(url)
        if isinstance(failure, Exception):
            raise failure
        if isinstance(failure, int):
            return httpx.Response(failure, text="unavailable")

        if url in self.raw:
            return httpx.Response(200, content=self.raw[url])
        if url in self.pages:
            return httpx.Response(200, content=json.dumps(self.pages[url]).encode())
        return httpx.Response(404, text="not found")

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
async def http_client(publisher):
    async with publisher.client() as client:
        yield client


@pytest.fixture
def config(tmp_path):
    """Config with no rate-limit delay and a throwaway database path."""
    return HarvesterConfig(
        db_path=tmp_path / "harvest.db",
        min_interval=0.0,
        max_workers=2,
        max_pages_per_sweep=50,
    )
