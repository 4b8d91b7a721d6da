"""Data models for rpde_harvester."""

from .schemas import (
    CollatedItem,
    CollateResult,
    Feed,
    FeedStatus,
    Item,
    ItemState,
    Page,
    Snapshot,
)

__all__ = [
    "CollatedItem",
    "CollateResult",
    "Feed",
    "FeedStatus",
    "Item",
    "ItemState",
    "Page",
    "Snapshot",
]
