from __future__ import annotations

import argparse
import logging
import os
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait

from .config import ConfigError
from .models import Job
from .orchestrator import ImportOrchestrator
from .source import SearchSource
from .storage import (
    CHUNK_JOB_TYPE,
    claim_next_job,
    complete_job,
    fail_job,
    init_db,
    list_active_import_ids,
)
from .utils import configure_logging, log_event

WORKER_JOB_TYPES = [CHUNK_JOB_TYPE]


def _setup_logging() -> logging.Logger:
    return configure_logging("pricesweep.worker")


def _build_orchestrator(
    worker_id: str, logger: logging.Logger, source: SearchSource | None = None
) -> ImportOrchestrator | None:
    try:
        conn = init_db()
        return ImportOrchestrator.from_runtime(
            conn, source=source, logger=logger, worker_id=worker_id
        )
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None


def run_once(
    worker_id: str,
    allowed_types: list[str] | None = None,
    source: SearchSource | None = None,
) -> int:
    logger = _setup_logging()
    orchestrator = _build_orchestrator(worker_id, logger, source)
    if orchestrator is None:
        return 1
    try:
        tick_active_imports(orchestrator, logger)
        job = _claim(orchestrator, worker_id, allowed_types)
        if not job:
            return 0
        return _process_claimed_job(orchestrator, job, logger)
    finally:
        orchestrator.conn.close()


def tick_active_imports(orchestrator: ImportOrchestrator, logger: logging.Logger) -> int:
    """Advance every non-terminal import once; returns how many were advanced."""
    advanced = 0
    for import_id in list_active_import_ids(orchestrator.conn):
        try:
            orchestrator.advance(import_id)
        except Exception as exc:  # noqa: BLE001
            log_event(logger, logging.ERROR, "import_tick_failed", import_id=import_id, error=str(exc))
            continue
        advanced += 1
    return advanced


def _claim(
    orchestrator: ImportOrchestrator, worker_id: str, allowed_types: list[str] | None
) -> Job | None:
    return claim_next_job(
        orchestrator.conn,
        worker_id,
        allowed_types=allowed_types or WORKER_JOB_TYPES,
        lock_timeout_seconds=orchestrator.config.jobs.lock_timeout_seconds,
    )


def _process_claimed_job(orchestrator: ImportOrchestrator, job: Job, logger: logging.Logger) -> int:
    conn = orchestrator.conn
    try:
        result = run_claimed_job(orchestrator, job, logger)
    except Exception as exc:  # noqa: BLE001
        fail_job(conn, job.id, str(exc))
        log_event(
            logger,
            logging.ERROR,
            "job_failed",
            job_id=job.id,
            job_type=job.job_type,
            parent_id=job.parent_id,
            error=str(exc),
        )
        return 1

    if complete_job(conn, job.id, result=result):
        log_event(
            logger,
            logging.INFO,
            "job_succeeded",
            job_id=job.id,
            job_type=job.job_type,
            parent_id=job.parent_id,
        )
    else:
        log_event(logger, logging.ERROR, "job_complete_failed", job_id=job.id)
    return 0


def _process_claimed_job_thread(worker_id: str, job: Job) -> int:
    logger = _setup_logging()
    orchestrator = _build_orchestrator(worker_id, logger)
    if orchestrator is None:
        return 1
    try:
        return _process_claimed_job(orchestrator, job, logger)
    finally:
        orchestrator.conn.close()


def run_claimed_job(
    orchestrator: ImportOrchestrator, job: Job, logger: logging.Logger
) -> dict[str, object]:
    log_event(
        logger,
        logging.INFO,
        "job_claimed",
        job_id=job.id,
        job_type=job.job_type,
        parent_id=job.parent_id,
    )
    if job.job_type == CHUNK_JOB_TYPE:
        payload = job.payload or {}
        import_id = payload.get("import_id")
        chunk_index = payload.get("chunk_index")
        if not import_id or chunk_index is None:
            raise ValueError("import_chunk payload requires import_id and chunk_index")
        return orchestrator.run_chunk(str(import_id), int(chunk_index))
    raise ValueError(f"unsupported job type {job.job_type}")


def run_loop(
    worker_id: str,
    sleep_seconds: int,
    allowed_types: list[str] | None = None,
    concurrency: int = 1,
) -> int:
    if concurrency <= 1:
        while True:
            run_once(worker_id, allowed_types)
            time.sleep(sleep_seconds)
        return 0

    logger = _setup_logging()
    max_workers = max(1, concurrency)
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = set()
        while True:
            while len(futures) < max_workers:
                orchestrator = _build_orchestrator(worker_id, logger)
                if orchestrator is None:
                    break
                try:
                    tick_active_imports(orchestrator, logger)
                    job = _claim(orchestrator, worker_id, allowed_types)
                finally:
                    orchestrator.conn.close()
                if not job:
                    break
                futures.add(executor.submit(_process_claimed_job_thread, worker_id, job))
            if futures:
                done, futures = wait(futures, timeout=sleep_seconds, return_when=FIRST_COMPLETED)
                for future in done:
                    try:
                        future.result()
                    except Exception as exc:  # noqa: BLE001
                        log_event(logger, logging.ERROR, "job_thread_error", error=str(exc))
            else:
                time.sleep(sleep_seconds)


def _parse_only_types(value: str | None) -> list[str] | None:
    if not value:
        return None
    items = [item.strip() for item in value.split(",") if item.strip()]
    return items or None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pricesweep-worker")
    parser.add_argument("--once", action="store_true", help="Run a single step and exit")
    parser.add_argument("--sleep", type=int, default=5, help="Sleep seconds between polls")
    parser.add_argument("--worker-id", default=os.environ.get("HOSTNAME", "worker"))
    parser.add_argument("--only-job-types", default=os.environ.get("PS_WORKER_ONLY_TYPES", ""))
    parser.add_argument(
        "--concurrency",
        type=int,
        default=int(os.environ.get("PS_WORKER_CONCURRENCY", "1")),
    )
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    allowed_types = _parse_only_types(args.only_job_types)
    if args.once:
        return run_once(args.worker_id, allowed_types)
    return run_loop(args.worker_id, args.sleep, allowed_types, args.concurrency)


if __name__ == "__main__":
    raise SystemExit(main())
