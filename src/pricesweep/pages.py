from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from .models import ItemRef
from .source import ParseError, QueryDefinition, SearchSource, SourceError
from .utils import log_event


@dataclass
class PageWalkResult:
    items: list[ItemRef] = field(default_factory=list)
    pages_fetched: int = 0
    failed_pages: int = 0
    stopped_by: str = "empty_pages"


def walk_pages(
    source: SearchSource,
    query: QueryDefinition,
    *,
    logger: logging.Logger,
    empty_page_limit: int = 3,
    max_pages: int | None = None,
    retries: int = 3,
    retry_delay_seconds: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
) -> PageWalkResult:
    """Paginate ``query`` from page 0 until pages stop yielding new items.

    A page that fails on every attempt counts as an empty page.
    """
    result = PageWalkResult()
    seen: set[str] = set()
    empty_streak = 0
    page = 0
    while True:
        if max_pages is not None and page >= max_pages:
            result.stopped_by = "page_cap"
            break
        items = _fetch_page(source, query, page, retries, retry_delay_seconds, sleep, logger)
        if items is None:
            result.failed_pages += 1
            new_items: list[ItemRef] = []
        else:
            result.pages_fetched += 1
            new_items = []
            for item in items:
                key = item.id if item.id is not None else item.url
                if key in seen:
                    continue
                seen.add(key)
                new_items.append(item)
        if new_items:
            empty_streak = 0
            result.items.extend(new_items)
        else:
            empty_streak += 1
            if empty_streak >= empty_page_limit:
                break
        page += 1
    log_event(
        logger,
        logging.DEBUG,
        "page_walk_done",
        min_price=query.min_price,
        max_price=query.max_price,
        items=len(result.items),
        pages=result.pages_fetched,
        failed_pages=result.failed_pages,
        stopped_by=result.stopped_by,
    )
    return result


def _fetch_page(
    source: SearchSource,
    query: QueryDefinition,
    page: int,
    retries: int,
    retry_delay_seconds: float,
    sleep: Callable[[float], None],
    logger: logging.Logger,
) -> list[ItemRef] | None:
    attempts = max(1, retries)
    for attempt in range(1, attempts + 1):
        try:
            return source.search(query, page).items
        except SourceError as exc:
            log_event(
                logger,
                logging.WARNING,
                "page_fetch_failed",
                page=page,
                attempt=attempt,
                min_price=query.min_price,
                max_price=query.max_price,
                error=str(exc),
            )
            if isinstance(exc, ParseError) or attempt >= attempts:
                break
            sleep(retry_delay_seconds)
    return None
