"""Deduplication and freshness filtering of parsed feed items."""

from collections.abc import Iterable
from datetime import datetime

from .models import FeedItem

DEFAULT_ITEMS_PER_SOURCE = 10


def filter_items(
    items: Iterable[FeedItem],
    existing_urls: set[str],
    window_start: datetime,
    limit: int = DEFAULT_ITEMS_PER_SOURCE,
) -> list[FeedItem]:
    """Keep the items of one source that should be ingested.

    Drops items whose link was already ingested for the display day or repeats
    an earlier item of the same batch, and items without a publish time or
    published before ``window_start``. Feed order is preserved and the result
    is capped at ``limit``.

    Args:
        items: Items in feed order (newest first)
        existing_urls: Links already stored for the current display day
        window_start: Oldest acceptable publish time (inclusive)
        limit: Maximum number of items to keep

    Returns:
        The filtered items
    """
    selected: list[FeedItem] = []
    seen: set[str] = set()

    for item in items:
        if len(selected) >= limit:
            break
        if item.link in existing_urls or item.link in seen:
            continue
        if item.published is None or item.published < window_start:
            continue
        seen.add(item.link)
        selected.append(item)

    return selected
