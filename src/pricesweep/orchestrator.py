from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable

from .chunks import ChunkWorker
from .config import Config, load_runtime_config
from .crawler import RangeSplitCrawler, initial_range
from .models import (
    IMPORT_CANCELLED,
    IMPORT_COMPLETED,
    IMPORT_PENDING,
    IMPORT_PLANNING,
    IMPORT_RUNNING,
    SCHEDULE_IMPORTING,
    SCHEDULE_PENDING,
    ImportJob,
    ItemRef,
    Job,
    ScheduleEntry,
)
from .source import HttpSearchSource, QueryDefinition, SearchSource
from .storage import (
    CHUNK_JOB_TYPE,
    cancel_import_job,
    claim_import_planning,
    claim_next_job,
    complete_import_job,
    complete_job,
    complete_schedule,
    count_jobs,
    count_schedules,
    create_import_job,
    create_schedule,
    fail_import_job,
    fail_job,
    fail_schedule,
    first_schedule_with_status,
    get_import_job,
    get_schedule,
    iter_chunk_refs,
    list_chunk_results,
    list_import_jobs,
    list_schedules,
    mark_schedule_discovered,
    record_chunk_result,
    renew_planning_lease,
    reset_schedule,
    reset_stale_planning,
    start_schedule,
    write_import_plan,
)
from .utils import log_event, parse_iso

CANCELLED_SCHEDULE_MESSAGE = "import cancelled"


class ImportNotFoundError(LookupError):
    pass


class InvalidTransitionError(RuntimeError):
    pass


class PlanningLeaseLost(RuntimeError):
    """The planner no longer owns the import: it was cancelled or requeued."""


class ImportOrchestrator:
    """Drives imports through pending, planning, running and a terminal state.

    ``advance`` is safe to call repeatedly and from several processes at once:
    planning is claimed with a conditional update, the plan is written only
    while ``total_chunks`` is unset, and chunk results are recorded once per
    chunk index.
    """

    def __init__(
        self,
        conn: Any,
        config: Config,
        source: SearchSource,
        *,
        logger: logging.Logger | None = None,
        sleep: Callable[[float], None] = time.sleep,
        worker_id: str = "orchestrator",
    ) -> None:
        self.conn = conn
        self.config = config
        self.source = source
        self.logger = logger or logging.getLogger("pricesweep.orchestrator")
        self.sleep = sleep
        self.worker_id = worker_id

    @classmethod
    def from_runtime(
        cls,
        conn: Any,
        *,
        source: SearchSource | None = None,
        logger: logging.Logger | None = None,
        worker_id: str = "orchestrator",
    ) -> "ImportOrchestrator":
        config = load_runtime_config(conn)
        return cls(
            conn,
            config,
            source or HttpSearchSource.from_config(config),
            logger=logger,
            worker_id=worker_id,
        )

    # imports

    def create_import(
        self, query: QueryDefinition | dict[str, Any], schedule_id: str | None = None
    ) -> str:
        if isinstance(query, dict):
            query = QueryDefinition.from_dict(query)
        import_id = create_import_job(self.conn, query.to_dict(), schedule_id=schedule_id)
        log_event(
            self.logger,
            logging.INFO,
            "import_created",
            import_id=import_id,
            schedule_id=schedule_id,
            base_url=query.base_url,
        )
        return import_id

    def advance(self, import_id: str) -> dict[str, Any]:
        job = self._require(import_id)
        if job.status == IMPORT_PENDING:
            lease = claim_import_planning(self.conn, import_id)
            if lease is not None:
                log_event(self.logger, logging.INFO, "import_planning", import_id=import_id)
                self._plan(job, lease)
        elif job.status == IMPORT_PLANNING:
            if reset_stale_planning(self.conn, import_id, self.config.jobs.lock_timeout_seconds):
                log_event(
                    self.logger, logging.WARNING, "import_planning_requeued", import_id=import_id
                )
        elif job.status == IMPORT_RUNNING:
            if job.total_chunks is not None and job.processed_chunks >= job.total_chunks:
                self._finalize(import_id)
            elif self.config.jobs.inline_chunks:
                self.run_next_chunk(parent_id=import_id)
        else:
            self._sync_schedule(job)
        return self.status(import_id)

    def status(self, import_id: str, include_chunks: bool = False) -> dict[str, Any]:
        job = self._require(import_id)
        summary = _summarize(job)
        summary["queued_chunks"] = count_jobs(self.conn, import_id, "queued")
        summary["continue_polling"] = (
            not job.is_terminal or count_schedules(self.conn, SCHEDULE_PENDING) > 0
        )
        if include_chunks:
            summary["chunks"] = list_chunk_results(self.conn, import_id)
        return summary

    def list_imports(self, limit: int = 50) -> list[dict[str, Any]]:
        return [_summarize(job) for job in list_import_jobs(self.conn, limit)]

    def cancel(self, import_id: str, reason: str = "cancelled_by_user") -> dict[str, Any]:
        job = self._require(import_id)
        if job.is_terminal:
            raise InvalidTransitionError(f"import {import_id} is already {job.status}")
        if not cancel_import_job(self.conn, import_id, reason):
            current = self._require(import_id)
            raise InvalidTransitionError(f"import {import_id} is already {current.status}")
        log_event(self.logger, logging.INFO, "import_cancelled", import_id=import_id, reason=reason)
        if job.schedule_id:
            fail_schedule(self.conn, job.schedule_id, CANCELLED_SCHEDULE_MESSAGE)
        return self.status(import_id)

    # chunk execution

    def run_next_chunk(self, parent_id: str | None = None, worker_id: str | None = None) -> Job | None:
        task = claim_next_job(
            self.conn,
            worker_id or self.worker_id,
            allowed_types=[CHUNK_JOB_TYPE],
            lock_timeout_seconds=self.config.jobs.lock_timeout_seconds,
            parent_id=parent_id,
        )
        if task is None:
            return None
        self.execute_chunk_task(task)
        return task

    def execute_chunk_task(self, task: Job) -> dict[str, Any]:
        try:
            outcome = self.run_chunk(str(task.payload["import_id"]), int(task.payload["chunk_index"]))
        except Exception as exc:
            fail_job(self.conn, task.id, str(exc))
            raise
        complete_job(self.conn, task.id, outcome)
        return outcome

    def run_chunk(self, import_id: str, chunk_index: int) -> dict[str, Any]:
        job = get_import_job(self.conn, import_id, with_plan=True)
        if job is None:
            raise ImportNotFoundError(import_id)
        if job.status != IMPORT_RUNNING:
            log_event(
                self.logger,
                logging.INFO,
                "chunk_skipped",
                import_id=import_id,
                chunk=chunk_index,
                status=job.status,
            )
            return {"chunk_index": chunk_index, "skipped": True, "status": job.status}

        refs = [ItemRef.from_dict(entry) for entry in iter_chunk_refs(job, chunk_index)]
        worker = ChunkWorker(
            self.conn, self.source, self.config.chunks, logger=self.logger, sleep=self.sleep
        )
        error = None
        fast_mode = False
        try:
            batch = worker.fetch_batch(refs, import_id=import_id)
            succeeded = len(batch.succeeded)
            failed_items = len(batch.failed)
            fast_mode = batch.fast_mode
            chunk_failed = bool(refs) and succeeded == 0
            if chunk_failed:
                error = batch.failed[0][1] if batch.failed else "no items fetched"
        except Exception as exc:  # noqa: BLE001
            log_event(
                self.logger,
                logging.ERROR,
                "chunk_error",
                import_id=import_id,
                chunk=chunk_index,
                error=str(exc),
            )
            succeeded, failed_items, chunk_failed, error = 0, len(refs), True, str(exc)

        recorded = record_chunk_result(
            self.conn,
            import_id,
            chunk_index,
            failed=chunk_failed,
            succeeded_count=succeeded,
            failed_count=failed_items,
            fast_mode=fast_mode,
            error=error,
        )
        if not recorded:
            log_event(
                self.logger,
                logging.WARNING,
                "chunk_already_recorded",
                import_id=import_id,
                chunk=chunk_index,
            )
        else:
            log_event(
                self.logger,
                logging.INFO,
                "chunk_done",
                import_id=import_id,
                chunk=chunk_index,
                failed=chunk_failed,
                succeeded=succeeded,
                failed_items=failed_items,
            )
        self._maybe_finalize(import_id)
        return {
            "chunk_index": chunk_index,
            "skipped": False,
            "recorded": recorded,
            "failed": chunk_failed,
            "succeeded": succeeded,
            "failed_items": failed_items,
            "fast_mode": fast_mode,
        }

    # schedules

    def create_schedule(self, name: str, query: QueryDefinition | dict[str, Any]) -> ScheduleEntry:
        if isinstance(query, dict):
            query = QueryDefinition.from_dict(query)
        schedule_id = create_schedule(self.conn, name, query.to_dict())
        log_event(self.logger, logging.INFO, "schedule_created", schedule_id=schedule_id, name=name)
        return self._require_schedule(schedule_id)

    def list_schedules(self) -> list[ScheduleEntry]:
        return list_schedules(self.conn)

    def retry_schedule(self, schedule_id: str) -> ScheduleEntry:
        schedule = self._require_schedule(schedule_id)
        if schedule.status == SCHEDULE_IMPORTING:
            raise InvalidTransitionError(f"schedule {schedule_id} is importing")
        import_id = self.create_import(schedule.query_definition, schedule_id=schedule_id)
        if not reset_schedule(self.conn, schedule_id, import_id):
            fail_import_job(self.conn, import_id, "schedule changed during retry")
            raise InvalidTransitionError(f"schedule {schedule_id} is importing")
        log_event(
            self.logger, logging.INFO, "schedule_retried", schedule_id=schedule_id, import_id=import_id
        )
        return self._require_schedule(schedule_id)

    def process_schedules(self) -> dict[str, Any]:
        """Run one step of the schedule queue for a single external poller."""
        action = "done"
        schedule = first_schedule_with_status(self.conn, SCHEDULE_IMPORTING)
        import_status = None
        if schedule is not None and schedule.import_job_id:
            action = "advanced"
            import_status = self.advance(schedule.import_job_id)
        elif schedule is not None:
            fail_schedule(self.conn, schedule.id, "schedule has no import")
            action = "repaired"
        else:
            schedule = first_schedule_with_status(self.conn, SCHEDULE_PENDING)
            if schedule is not None:
                action = "started"
                import_status = self._start_schedule(schedule)
        pending = count_schedules(self.conn, SCHEDULE_PENDING)
        importing = count_schedules(self.conn, SCHEDULE_IMPORTING)
        return {
            "action": action,
            "schedule_id": schedule.id if schedule else None,
            "import": import_status,
            "pending_schedules": pending,
            "continue_polling": pending + importing > 0,
        }

    def _start_schedule(self, schedule: ScheduleEntry) -> dict[str, Any] | None:
        import_id = schedule.import_job_id
        existing = get_import_job(self.conn, import_id) if import_id else None
        if existing is None or existing.status != IMPORT_PENDING:
            import_id = self.create_import(schedule.query_definition, schedule_id=schedule.id)
        if not start_schedule(self.conn, schedule.id, import_id):
            fail_import_job(self.conn, import_id, "schedule already started")
            return None
        log_event(
            self.logger, logging.INFO, "schedule_started", schedule_id=schedule.id, import_id=import_id
        )
        return self.advance(import_id)

    # internals

    def _plan(self, job: ImportJob, lease: str) -> None:
        def heartbeat() -> None:
            if not renew_planning_lease(self.conn, job.id, lease):
                raise PlanningLeaseLost(job.id)

        try:
            query = QueryDefinition.from_dict(job.source_query)
            price_range = initial_range(query, self.config.source.default_max_price)
            crawler = RangeSplitCrawler(
                self.source,
                self.config.crawl,
                logger=self.logger,
                sleep=self.sleep,
                heartbeat=heartbeat,
            )
            result = crawler.crawl(query, price_range)
        except PlanningLeaseLost:
            log_event(self.logger, logging.WARNING, "import_planning_abandoned", import_id=job.id)
            return
        except Exception as exc:  # noqa: BLE001
            log_event(
                self.logger, logging.ERROR, "import_planning_failed", import_id=job.id, error=str(exc)
            )
            if fail_import_job(self.conn, job.id, str(exc)) and job.schedule_id:
                fail_schedule(self.conn, job.schedule_id, str(exc))
            return

        size = self.config.chunks.chunk_size
        plan = [
            [ref.to_dict() for ref in result.items[i : i + size]]
            for i in range(0, len(result.items), size)
        ]
        written = write_import_plan(
            self.conn,
            job.id,
            plan,
            result.stats_dict(),
            len(result.items),
            logger=self.logger,
            lease_token=lease,
        )
        if not written:
            return
        log_event(
            self.logger,
            logging.INFO,
            "import_planned",
            import_id=job.id,
            items=len(result.items),
            chunks=len(plan),
            splits=result.stats.total_splits,
        )
        if job.schedule_id:
            mark_schedule_discovered(self.conn, job.schedule_id)
            if not plan:
                complete_schedule(self.conn, job.schedule_id)

    def _maybe_finalize(self, import_id: str) -> None:
        job = get_import_job(self.conn, import_id)
        if (
            job is not None
            and job.status == IMPORT_RUNNING
            and job.total_chunks is not None
            and job.processed_chunks >= job.total_chunks
        ):
            self._finalize(import_id)

    def _finalize(self, import_id: str) -> None:
        if not complete_import_job(self.conn, import_id):
            return
        job = self._require(import_id)
        log_event(
            self.logger,
            logging.INFO,
            "import_completed",
            import_id=import_id,
            completed_chunks=job.completed_chunks,
            failed_chunks=job.failed_chunks,
        )
        if job.schedule_id:
            complete_schedule(self.conn, job.schedule_id)

    def _sync_schedule(self, job: ImportJob) -> None:
        if not job.schedule_id:
            return
        schedule = get_schedule(self.conn, job.schedule_id)
        if schedule is None or schedule.status != SCHEDULE_IMPORTING:
            return
        if schedule.import_job_id != job.id:
            return
        if job.status == IMPORT_COMPLETED:
            complete_schedule(self.conn, schedule.id)
        elif job.status == IMPORT_CANCELLED:
            fail_schedule(self.conn, schedule.id, CANCELLED_SCHEDULE_MESSAGE)
        else:
            fail_schedule(self.conn, schedule.id, job.error_message or "import failed")

    def _require(self, import_id: str) -> ImportJob:
        job = get_import_job(self.conn, import_id)
        if job is None:
            raise ImportNotFoundError(import_id)
        return job

    def _require_schedule(self, schedule_id: str) -> ScheduleEntry:
        schedule = get_schedule(self.conn, schedule_id)
        if schedule is None:
            raise ImportNotFoundError(schedule_id)
        return schedule


def progress_percent(job: ImportJob) -> float:
    if job.total_chunks is None:
        return 0.0
    if job.total_chunks == 0:
        return 100.0 if job.status == IMPORT_COMPLETED else 0.0
    processed = min(job.processed_chunks, job.total_chunks)
    return round(processed / job.total_chunks * 100, 1)


def _summarize(job: ImportJob) -> dict[str, Any]:
    elapsed = None
    eta = None
    if job.started_at:
        start = parse_iso(job.started_at)
        end = parse_iso(job.finished_at) if job.finished_at else datetime.now(tz=timezone.utc)
        elapsed = max(0.0, (end - start).total_seconds())
        if (
            job.status == IMPORT_RUNNING
            and job.total_chunks
            and 0 < job.processed_chunks < job.total_chunks
        ):
            remaining = job.total_chunks - job.processed_chunks
            eta = round(elapsed / job.processed_chunks * remaining, 1)
        elapsed = round(elapsed, 1)
    stats = job.split_stats or {}
    return {
        "id": job.id,
        "schedule_id": job.schedule_id,
        "status": job.status,
        "percent": progress_percent(job),
        "processed": job.processed_chunks,
        "total": job.total_chunks,
        "completed_chunks": job.completed_chunks,
        "failed_chunks": job.failed_chunks,
        "total_items": job.total_items,
        "imported_items": job.imported_items,
        "failed_items": job.failed_items,
        "message": job.message,
        "error_message": job.error_message,
        "created_at": job.created_at,
        "started_at": job.started_at,
        "finished_at": job.finished_at,
        "elapsed_seconds": elapsed,
        "eta_seconds": eta,
        "split_stats": {
            key: stats.get(key)
            for key in ("total_splits", "max_depth_reached", "probes", "capped_leaves")
            if key in stats
        },
    }
