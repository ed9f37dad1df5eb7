from __future__ import annotations

import logging

from .source import QueryDefinition, SearchSource, SourceError
from .utils import log_event


def probe_count(
    source: SearchSource, query: QueryDefinition, logger: logging.Logger
) -> int | None:
    """Return the reported match count for ``query``, or None when it cannot be read.

    The count is only a splitting signal; it may itself be capped by the source.
    """
    try:
        page = source.search(query, 0)
    except SourceError as exc:
        log_event(
            logger,
            logging.WARNING,
            "probe_failed",
            min_price=query.min_price,
            max_price=query.max_price,
            status_code=exc.status_code,
            error=str(exc),
        )
        return None
    if page.total is None:
        log_event(
            logger,
            logging.WARNING,
            "probe_missing_total",
            min_price=query.min_price,
            max_price=query.max_price,
        )
        return None
    log_event(
        logger,
        logging.DEBUG,
        "probe_ok",
        min_price=query.min_price,
        max_price=query.max_price,
        total=page.total,
    )
    return page.total
