from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable

from .config import ChunksConfig
from .dedup import item_identity
from .models import DetailRecord, ItemRef
from .source import ParseError, SearchSource, SourceError
from .storage import get_listing, upsert_listing
from .utils import log_event, utc_now_iso


@dataclass
class BatchResult:
    succeeded: list[DetailRecord] = field(default_factory=list)
    failed: list[tuple[ItemRef, str]] = field(default_factory=list)
    fast_mode: bool = False
    sub_batches: int = 0
    waves: int = 0
    pool_size: int = 0
    history_failures: int = 0

    def summary(self) -> dict[str, object]:
        return {
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "fast_mode": self.fast_mode,
            "sub_batches": self.sub_batches,
            "waves": self.waves,
            "history_failures": self.history_failures,
        }


@dataclass
class _Fetched:
    ref: ItemRef
    detail: dict[str, Any] | None = None
    history: list[dict[str, Any]] | None = None
    history_error: str | None = None
    error: str | None = None


class ChunkWorker:
    """Fetches full detail for a batch of item refs with bounded concurrency.

    Fetches run on a thread pool. Writes and the read-back of each stored
    record happen on the calling thread, which owns ``conn``.
    """

    def __init__(
        self,
        conn: Any,
        source: SearchSource,
        settings: ChunksConfig,
        *,
        logger: logging.Logger,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.conn = conn
        self.source = source
        self.settings = settings
        self.logger = logger
        self.sleep = sleep

    def fetch_batch(
        self,
        refs: list[ItemRef],
        concurrency: int | None = None,
        import_id: str | None = None,
    ) -> BatchResult:
        settings = self.settings
        max_concurrent = max(1, concurrency or settings.max_concurrent)
        size = settings.sub_batch_size
        result = BatchResult(fast_mode=len(refs) > settings.fast_mode_threshold)
        if not refs:
            return result
        if result.fast_mode:
            log_event(
                self.logger,
                logging.INFO,
                "chunk_fast_mode",
                items=len(refs),
                threshold=settings.fast_mode_threshold,
            )
        sub_batches = [refs[i : i + size] for i in range(0, len(refs), size)]
        waves = [sub_batches[i : i + max_concurrent] for i in range(0, len(sub_batches), max_concurrent)]
        result.sub_batches = len(sub_batches)
        result.waves = len(waves)
        result.pool_size = min(size * max_concurrent, len(refs))

        with ThreadPoolExecutor(max_workers=result.pool_size) as executor:
            for wave_index, wave in enumerate(waves):
                if wave_index:
                    self.sleep(settings.sub_batch_delay_seconds)
                futures = [
                    executor.submit(self._fetch_item, ref, result.fast_mode)
                    for batch in wave
                    for ref in batch
                ]
                for future in futures:
                    self._store(future.result(), result, import_id)
                log_event(
                    self.logger,
                    logging.DEBUG,
                    "chunk_wave_done",
                    wave=wave_index + 1,
                    waves=result.waves,
                    succeeded=len(result.succeeded),
                    failed=len(result.failed),
                )

        log_event(
            self.logger,
            logging.INFO,
            "chunk_batch_done",
            import_id=import_id,
            items=len(refs),
            succeeded=len(result.succeeded),
            failed=len(result.failed),
            fast_mode=result.fast_mode,
            sub_batches=result.sub_batches,
        )
        return result

    def _fetch_item(self, ref: ItemRef, fast_mode: bool) -> _Fetched:
        fetched = _Fetched(ref=ref)
        try:
            detail = self._with_retry(lambda: self.source.fetch_detail(ref), ref.url)
            if not isinstance(detail, dict):
                raise ParseError(f"detail for {ref.url} is {type(detail).__name__}, not an object")
            fetched.detail = detail
        except Exception as exc:  # noqa: BLE001
            fetched.error = str(exc) or exc.__class__.__name__
            return fetched
        history_url = fetched.detail.get("history_url")
        if fast_mode or not history_url:
            return fetched
        try:
            fetched.history = self._with_retry(
                lambda: self.source.fetch_history(str(history_url)), str(history_url)
            )
        except Exception as exc:  # noqa: BLE001
            fetched.history_error = str(exc) or exc.__class__.__name__
        return fetched

    def _with_retry(self, call: Callable[[], Any], url: str) -> Any:
        attempts = max(1, self.settings.item_retries)
        for attempt in range(1, attempts + 1):
            try:
                return call()
            except ParseError:
                raise
            except Exception as exc:
                if attempt >= attempts:
                    raise
                delay = self.settings.item_backoff_seconds * 2 ** (attempt - 1)
                if isinstance(exc, SourceError) and exc.rate_limited:
                    delay *= 2
                log_event(
                    self.logger,
                    logging.WARNING,
                    "item_fetch_retry",
                    url=url,
                    attempt=attempt,
                    delay=delay,
                    error=str(exc),
                )
                self.sleep(delay)
        raise RuntimeError("unreachable")

    def _store(self, fetched: _Fetched, result: BatchResult, import_id: str | None) -> None:
        ref = fetched.ref
        if fetched.error is not None:
            log_event(self.logger, logging.WARNING, "item_failed", url=ref.url, error=fetched.error)
            result.failed.append((ref, fetched.error))
            return
        if fetched.history_error is not None:
            result.history_failures += 1
            log_event(
                self.logger,
                logging.WARNING,
                "history_fetch_failed",
                url=ref.url,
                error=fetched.history_error,
            )
        record = _build_record(ref, fetched.detail, fetched.history)
        upsert_listing(self.conn, record, import_id)
        stored = get_listing(self.conn, record.item_id)
        if stored is None:
            result.failed.append((ref, "record missing after write"))
            return
        result.succeeded.append(stored)


def _build_record(
    ref: ItemRef, detail: dict[str, Any], history: list[dict[str, Any]] | None
) -> DetailRecord:
    fields = dict(detail)
    for key, value in ref.to_dict().items():
        if key in ("id", "url"):
            continue
        if fields.get(key) is None and value is not None:
            fields[key] = value
    price = detail.get("price")
    if price is None:
        price = ref.price
    return DetailRecord(
        item_id=item_identity(ref),
        url=ref.url,
        price=int(price) if price is not None else None,
        fields=fields,
        history=history,
        fetched_at=utc_now_iso(),
    )
