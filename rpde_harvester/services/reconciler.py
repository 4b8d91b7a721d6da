"""Page reconciliation service.

Merges a freshly fetched RPDE page into a feed's snapshot. For every item id
only the version with the greatest ``modified`` value survives, and a winning
version in the deleted state removes the id altogether.
"""

from typing import Dict, Iterable, Tuple

from rpde_harvester.models.schemas import Item, Modified, Page, Snapshot


def modified_key(value: Modified) -> Tuple[int, object]:
    """Sort key for RPDE ``modified`` values.

    Integers and integer strings (optionally signed) compare numerically and
    sort before any other string, which compares lexically (ISO timestamps
    order correctly).
    """
    if isinstance(value, int) and not isinstance(value, bool):
        return (0, value)
    if isinstance(value, str):
        digits = value[1:] if value.startswith("-") else value
        if digits.isdecimal():
            return (0, int(value))
        return (1, value)
    raise TypeError(f"Unsupported modified value: {value!r}")


def latest_versions(candidates: Iterable[Item]) -> Dict[str, Item]:
    """Pick the latest version of each id, later candidates winning ties."""
    latest: Dict[str, Item] = {}
    for item in candidates:
        current = latest.get(item.id)
        if current is None or modified_key(item.modified) >= modified_key(current.modified):
            latest[item.id] = item
    return latest


def reconcile(existing: Snapshot, page: Page) -> Tuple[Snapshot, int]:
    """Merge a page into a snapshot.

    Args:
        existing: Current snapshot for the feed (not modified)
        page: Newly fetched page

    Returns:
        Tuple of (new_snapshot, items_added) where items_added is the number of
        items the page carried. An empty page returns the snapshot unchanged.
    """
    if not page.items:
        return dict(existing), 0

    candidates = list(existing.values()) + list(page.items)
    merged = latest_versions(candidates)

    snapshot = {
        item_id: item for item_id, item in merged.items() if not item.is_deleted
    }
    return snapshot, len(page.items)
