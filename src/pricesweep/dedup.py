from __future__ import annotations

from .models import ItemRef
from .utils import stable_id_from_url


def url_identity(url: str) -> str:
    return f"url:{stable_id_from_url(url)}"


def item_identity(item: ItemRef) -> str:
    """Storage key for an item: its source id, else a hash of its normalized URL."""
    if item.id is not None and str(item.id) != "":
        return str(item.id)
    return url_identity(item.url)


class DedupCollector:
    """Accumulates unique items for one crawl.

    Two items are the same when both ids are present and equal. When either
    id is missing the normalized URL hash decides. Not thread-safe; a crawl
    owns its collector.
    """

    def __init__(self) -> None:
        self._items: list[ItemRef] = []
        self._seen_ids: set[str] = set()
        self._url_hashes: set[str] = set()
        self._id_less_url_hashes: set[str] = set()

    def add(self, item: ItemRef) -> bool:
        url_hash = stable_id_from_url(item.url)
        has_id = item.id is not None and str(item.id) != ""
        if has_id:
            item_id = str(item.id)
            if item_id in self._seen_ids or url_hash in self._id_less_url_hashes:
                return False
            self._seen_ids.add(item_id)
        else:
            if url_hash in self._url_hashes:
                return False
            self._id_less_url_hashes.add(url_hash)
        self._url_hashes.add(url_hash)
        self._items.append(item)
        return True

    def add_many(self, items: list[ItemRef]) -> int:
        return sum(1 for item in items if self.add(item))

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item: ItemRef) -> bool:
        url_hash = stable_id_from_url(item.url)
        if item.id is not None and str(item.id) != "":
            return str(item.id) in self._seen_ids or url_hash in self._id_less_url_hashes
        return url_hash in self._url_hashes

    @property
    def items(self) -> list[ItemRef]:
        return list(self._items)
