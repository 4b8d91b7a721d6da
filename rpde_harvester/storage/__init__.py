"""Storage layer for rpde_harvester."""

from .database import (
    get_database,
    init_database,
    configure_database,
    close_database,
    register_feed,
    register_feeds,
    get_feed,
    list_feeds,
    set_enabled,
    enable_only,
    load_cursor,
    save_cursor,
    record_success,
    record_error,
    load_snapshot,
    save_snapshot,
    count_items,
    feed_statuses,
)

__all__ = [
    "get_database",
    "init_database",
    "configure_database",
    "close_database",
    "register_feed",
    "register_feeds",
    "get_feed",
    "list_feeds",
    "set_enabled",
    "enable_only",
    "load_cursor",
    "save_cursor",
    "record_success",
    "record_error",
    "load_snapshot",
    "save_snapshot",
    "count_items",
    "feed_statuses",
]
