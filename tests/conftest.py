from __future__ import annotations

import threading

import pytest

from pricesweep.config import build_config, merge_config
from pricesweep.models import ItemRef
from pricesweep.source import ParseError, SearchPage, SearchSource, SourceError
from pricesweep.storage import init_db

FAST_OVERRIDES = {
    "crawl": {
        "leaf_delay_seconds": 0.0,
        "split_delay_seconds": 0.0,
        "page_retry_delay_seconds": 0.0,
        "max_pages_per_leaf": 200,
    },
    "chunks": {
        "item_backoff_seconds": 0.0,
        "sub_batch_delay_seconds": 0.0,
    },
}


class FakeSource(SearchSource):
    """In-memory source that truncates every query at ``ceiling`` results."""

    def __init__(
        self,
        listings: list[tuple[str | None, int]] | None = None,
        *,
        ceiling: int = 1000,
        page_size: int = 24,
        with_history: bool = True,
    ) -> None:
        self.listings = sorted(listings or [], key=lambda entry: (entry[1], str(entry[0])))
        self.ceiling = ceiling
        self.page_size = page_size
        self.with_history = with_history
        self.search_calls = 0
        self.detail_calls: dict[str, int] = {}
        self.history_calls = 0
        self.fail_search = False
        self.fail_details: dict[str, Exception] = {}
        self.fail_history = False
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def search(self, query, page):
        self.search_calls += 1
        if self.fail_search:
            raise SourceError("search unavailable", status_code=503, transient=True)
        low = query.min_price if query.min_price is not None else 0
        high = query.max_price if query.max_price is not None else float("inf")
        matching = [entry for entry in self.listings if low <= entry[1] <= high]
        visible = matching[: self.ceiling]
        start = page * self.page_size
        items = [self._ref(item_id, price) for item_id, price in visible[start : start + self.page_size]]
        return SearchPage(items=items, total=len(matching))

    def fetch_detail(self, ref):
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            self.detail_calls[ref.url] = self.detail_calls.get(ref.url, 0) + 1
        try:
            error = self.fail_details.get(ref.url)
            if error is not None:
                raise error
            detail = {"id": ref.id, "price": ref.price, "title": f"Listing {ref.id}"}
            if self.with_history:
                detail["history_url"] = f"https://example.test/history/{ref.id}"
            return detail
        finally:
            with self._lock:
                self.in_flight -= 1

    def fetch_history(self, url):
        with self._lock:
            self.history_calls += 1
        if self.fail_history:
            raise ParseError("history page changed")
        return [{"date": "2020-01-01", "price": 100000}]

    def _ref(self, item_id, price):
        path = f"/properties/{item_id}" if item_id is not None else f"/listing-{price}"
        return ItemRef(id=item_id, url=f"https://example.test{path}", price=price)


class FlakySource(FakeSource):
    """Fails each detail fetch ``failures`` times before succeeding."""

    def __init__(self, *args, failures: int = 2, status_code: int = 429, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.failures = failures
        self.status_code = status_code

    def fetch_detail(self, ref):
        with self._lock:
            attempts = self.detail_calls.get(ref.url, 0)
        if attempts < self.failures:
            with self._lock:
                self.detail_calls[ref.url] = attempts + 1
            raise SourceError("rate limited", status_code=self.status_code, transient=True)
        return super().fetch_detail(ref)


def make_listings(count: int, start: int = 1000, step: int = 1000, prefix: str = "p") -> list[tuple[str, int]]:
    return [(f"{prefix}{index}", start + index * step) for index in range(count)]


def make_refs(count: int) -> list[ItemRef]:
    return [
        ItemRef(id=f"r{index}", url=f"https://example.test/properties/r{index}", price=100000 + index)
        for index in range(count)
    ]


def make_config(overrides: dict | None = None):
    cfg = merge_config(FAST_OVERRIDES)
    if overrides:
        cfg = merge_config(overrides, base=cfg)
    return build_config(cfg)


def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    monkeypatch.delenv("PS_DB_URL", raising=False)
    monkeypatch.delenv("PS_ADMIN_TOKEN", raising=False)
    monkeypatch.setenv("PS_DATA_DIR", str(tmp_path / "data"))


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "state.sqlite3")


@pytest.fixture
def conn(db_path):
    connection = init_db(db_path)
    yield connection
    connection.close()
