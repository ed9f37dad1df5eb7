from __future__ import annotations

import logging
import math
import time
from dataclasses import asdict, dataclass
from typing import Callable

from .config import CrawlConfig
from .dedup import DedupCollector
from .models import ItemRef, LeafRecord, RangeNode, SplitStats
from .pages import walk_pages
from .probe import probe_count
from .source import QueryDefinition, SearchSource
from .utils import format_price, log_event

MIN_UPPER_BOUND = 1000


class CrawlError(RuntimeError):
    pass


@dataclass
class CrawlResult:
    items: list[ItemRef]
    stats: SplitStats

    def stats_dict(self) -> dict[str, object]:
        return {
            "total_splits": self.stats.total_splits,
            "max_depth_reached": self.stats.max_depth_reached,
            "probes": self.stats.probes,
            "capped_leaves": self.stats.capped_leaves,
            "leaves": [asdict(leaf) for leaf in self.stats.leaves],
        }


def initial_range(query: QueryDefinition, default_max_price: int) -> tuple[int, int]:
    low = query.min_price if query.min_price is not None and query.min_price > 0 else 0
    high = query.max_price
    if high is None or high < MIN_UPPER_BOUND:
        high = default_max_price
    if high <= low:
        raise ValueError(f"invalid price range {low}-{high}")
    return low, high


def round_to_clean_boundary(value: float, bands: list[list[int]], step_above: int) -> int:
    step = step_above
    for limit, band_step in bands:
        if value < limit:
            step = band_step
            break
    return int(math.floor(value / step + 0.5) * step)


class RangeSplitCrawler:
    """Enumerates every item of a query whose result count the source truncates.

    Ranges reporting more than the ceiling are split at a weighted midpoint and
    walked depth-first, lower half first, until each leaf fits under the ceiling
    or the depth or width budget runs out.
    """

    def __init__(
        self,
        source: SearchSource,
        settings: CrawlConfig,
        *,
        logger: logging.Logger,
        sleep: Callable[[float], None] = time.sleep,
        heartbeat: Callable[[], None] | None = None,
    ) -> None:
        self.source = source
        self.settings = settings
        self.logger = logger
        self.sleep = sleep
        # Called before every probe; raising from it aborts the crawl.
        self.heartbeat = heartbeat

    def split_point(self, node: RangeNode) -> int | None:
        """Return the split boundary for ``node``, or None when it is too narrow."""
        settings = self.settings
        if node.width < settings.min_split_width:
            return None
        low = node.min + settings.clamp_margin
        high = node.max - settings.clamp_margin
        if low > high:
            return None
        raw = node.min + settings.split_ratio * node.width
        mid = round_to_clean_boundary(raw, settings.rounding_bands, settings.rounding_step_above)
        mid = max(low, min(high, mid))
        if mid <= node.min or mid >= node.max:
            return None
        return mid

    def crawl(
        self,
        query: QueryDefinition,
        price_range: tuple[int, int],
        collector: DedupCollector | None = None,
    ) -> CrawlResult:
        collector = collector if collector is not None else DedupCollector()
        stats = SplitStats()
        settings = self.settings
        root = RangeNode(min=price_range[0], max=price_range[1], depth=0)
        if root.min >= root.max:
            raise ValueError(f"invalid price range {root.min}-{root.max}")
        stack: list[tuple[RangeNode, bool]] = [(root, False)]
        while stack:
            if self.heartbeat is not None:
                self.heartbeat()
            node, pause_first = stack.pop()
            if pause_first:
                self.sleep(settings.split_delay_seconds)
            stats.max_depth_reached = max(stats.max_depth_reached, node.depth)
            stats.probes += 1
            range_query = query.with_price_range(node.min, node.max)
            count = probe_count(self.source, range_query, self.logger)
            probe_failed = count is None
            reported = count or 0

            if reported <= settings.ceiling or node.depth >= settings.max_depth:
                reason = "under_ceiling" if reported <= settings.ceiling else "max_depth"
                if reason == "max_depth":
                    log_event(
                        self.logger,
                        logging.WARNING,
                        "crawl_max_depth_reached",
                        range=node.label(),
                        depth=node.depth,
                        reported=reported,
                    )
                self._scrape_leaf(range_query, node, reported, reason, probe_failed, collector, stats)
                continue

            mid = self.split_point(node)
            if mid is None:
                log_event(
                    self.logger,
                    logging.WARNING,
                    "crawl_range_too_narrow",
                    range=node.label(),
                    depth=node.depth,
                    reported=reported,
                )
                self._scrape_leaf(range_query, node, reported, "too_narrow", probe_failed, collector, stats)
                continue

            stats.total_splits += 1
            log_event(
                self.logger,
                logging.INFO,
                "crawl_split",
                range=node.label(),
                depth=node.depth,
                reported=reported,
                midpoint=format_price(mid),
            )
            stack.append((RangeNode(min=mid, max=node.max, depth=node.depth + 1), True))
            stack.append((RangeNode(min=node.min, max=mid, depth=node.depth + 1), False))

        log_event(
            self.logger,
            logging.INFO,
            "crawl_done",
            range=root.label(),
            items=len(collector),
            splits=stats.total_splits,
            max_depth=stats.max_depth_reached,
            leaves=len(stats.leaves),
            capped_leaves=stats.capped_leaves,
        )
        return CrawlResult(items=collector.items, stats=stats)

    def _scrape_leaf(
        self,
        query: QueryDefinition,
        node: RangeNode,
        reported: int,
        reason: str,
        probe_failed: bool,
        collector: DedupCollector,
        stats: SplitStats,
    ) -> None:
        settings = self.settings
        walk = walk_pages(
            self.source,
            query,
            logger=self.logger,
            empty_page_limit=settings.empty_page_limit,
            max_pages=settings.max_pages_per_leaf or None,
            retries=settings.page_retries,
            retry_delay_seconds=settings.page_retry_delay_seconds,
            sleep=self.sleep,
        )
        if node.depth == 0 and probe_failed and not walk.items and walk.failed_pages:
            raise CrawlError(f"source unreachable for root range {node.label()}")
        added = collector.add_many(walk.items)
        leaf = LeafRecord(
            min=node.min,
            max=node.max,
            depth=node.depth,
            reported_count=reported,
            items_found=len(walk.items),
            unique_added=added,
            reason=reason,
            capped=reported > settings.ceiling,
            probe_failed=probe_failed,
            failed_pages=walk.failed_pages,
        )
        stats.leaves.append(leaf)
        log_event(
            self.logger,
            logging.INFO,
            "crawl_leaf",
            range=node.label(),
            depth=node.depth,
            reported=reported,
            found=leaf.items_found,
            added=added,
            reason=reason,
        )
        self.sleep(settings.leaf_delay_seconds)
