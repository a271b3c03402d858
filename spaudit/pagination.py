"""
Pagination and delta-feed helpers.

Graph collection endpoints return ``{"value": [...]}`` with an optional
``@odata.nextLink`` for the next page and, on the last page of a delta
query, an ``@odata.deltaLink`` to resume incremental sync later.
"""
import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .models import DeltaEntry

logger = logging.getLogger(__name__)

NEXT_LINK = '@odata.nextLink'
DELTA_LINK = '@odata.deltaLink'


class PageWalker:
    """
    Lazily iterate every item of a paginated collection.

    ``next_link`` always holds the URL of the next unread page, so a walk
    interrupted mid-way can be restarted by passing it back as
    ``continuation_token``. Once exhausted, ``next_link`` is None and
    ``delta_link`` holds the terminal delta token if the server sent one.
    """

    def __init__(self, client, initial_url: str, continuation_token: Optional[str] = None):
        self.client = client
        self.initial_url = initial_url
        self.next_link: Optional[str] = continuation_token or initial_url
        self.delta_link: Optional[str] = None
        self.pages = 0

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        while self.next_link:
            data = self.client.get_json(self.next_link)
            self.pages += 1
            items = data.get('value')
            # Single-entity endpoints (e.g. /sites/root) come back without "value"
            if items is None and data.get('id'):
                items = [data]
            for item in items or []:
                if isinstance(item, dict):
                    yield item
            self.next_link = data.get(NEXT_LINK)
            if data.get(DELTA_LINK):
                self.delta_link = data[DELTA_LINK]

    @property
    def exhausted(self) -> bool:
        return self.next_link is None


def walk_pages(client, url: str) -> List[Dict[str, Any]]:
    """Materialize a complete paginated collection."""
    return list(PageWalker(client, url))


def walk_delta(client, delta_link: str) -> Tuple[List[DeltaEntry], Optional[str]]:
    """
    Fetch every change since ``delta_link``.

    Returns the entries (``@removed`` items as tombstones, the rest as
    upserts) and the new delta link to store for the next sync.
    """
    walker = PageWalker(client, delta_link)
    entries = [DeltaEntry.from_item(item) for item in walker if item.get('id')]
    tombstones = sum(1 for e in entries if e.is_tombstone)
    logger.debug(f"Delta sync returned {len(entries)} changes ({tombstones} removals)")
    return entries, walker.delta_link


def apply_delta(working: Dict[str, Any], entries: List[DeltaEntry]) -> Dict[str, Any]:
    """Fold delta entries into a working set keyed by id (in place)."""
    for entry in entries:
        if entry.is_tombstone:
            working.pop(entry.id, None)
        else:
            working[entry.id] = entry.item
    return working
