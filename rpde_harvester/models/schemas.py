"""Data models for rpde_harvester.

This module defines the core data structures for feeds, RPDE items and pages.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

Modified = Union[int, str]


class ItemState(str, Enum):
    """RPDE item state. The wire values are exact and lower case."""

    UPDATED = "updated"
    DELETED = "deleted"


@dataclass
class Feed:
    """Represents one publisher feed in the control table."""

    id: int
    stem: str
    cursor: str
    enabled: bool = False
    last_attempt_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_error_kind: Optional[str] = None


@dataclass
class Item:
    """Represents one RPDE item as last observed on a page."""

    id: str
    modified: Modified
    state: ItemState
    payload: Any = None
    kind: Optional[str] = None
    source_url: Optional[str] = None

    @property
    def is_deleted(self) -> bool:
        return self.state is ItemState.DELETED


@dataclass
class Page:
    """Result of one fetch: items in page order plus the next cursor."""

    url: str
    items: List[Item]
    next: str

    @property
    def is_end(self) -> bool:
        """True when the publisher has no further items right now."""
        return self.next == self.url


# id -> latest non-deleted item
Snapshot = Dict[str, Item]


@dataclass
class FeedStatus:
    """Operator-facing status of one feed."""

    feed: Feed
    item_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.feed.id,
            "stem": self.feed.stem,
            "cursor": self.feed.cursor,
            "enabled": self.feed.enabled,
            "item_count": self.item_count,
            "last_attempt_at": _iso(self.feed.last_attempt_at),
            "last_success_at": _iso(self.feed.last_success_at),
            "last_error": self.feed.last_error,
            "last_error_kind": self.feed.last_error_kind,
        }


@dataclass
class CollatedItem:
    """An item from the collate pass, tagged with the feed it came from."""

    feed_id: int
    item: Item

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feed_id": self.feed_id,
            "id": self.item.id,
            "modified": self.item.modified,
            "state": self.item.state.value,
            "kind": self.item.kind,
            "source_url": self.item.source_url,
            "data": self.item.payload,
        }


@dataclass
class CollateResult:
    items: List[CollatedItem] = field(default_factory=list)
    feeds_read: int = 0
    feeds_without_data: List[int] = field(default_factory=list)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
