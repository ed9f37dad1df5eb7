from __future__ import annotations

import logging
import uuid
from typing import Any, Iterable

from .db import connect_db
from .models import (
    IMPORT_ACTIVE_STATUSES,
    IMPORT_CANCELLED,
    IMPORT_COMPLETED,
    IMPORT_FAILED,
    IMPORT_PENDING,
    IMPORT_PLANNING,
    IMPORT_RUNNING,
    SCHEDULE_COMPLETED,
    SCHEDULE_FAILED,
    SCHEDULE_IMPORTING,
    SCHEDULE_PENDING,
    DetailRecord,
    ImportJob,
    Job,
    ScheduleEntry,
)
from .utils import json_dumps, json_loads, log_event, utc_now_iso, utc_now_iso_offset

CHUNK_JOB_TYPE = "import_chunk"

_IMPORT_COLUMNS = """
    id, schedule_id, source_query_json, status, total_chunks, completed_chunks,
    failed_chunks, total_items, imported_items, failed_items, {plan}, split_stats_json,
    message, error_message, created_at, started_at, finished_at
"""

_JOB_COLUMNS = """
    id, job_type, parent_id, status, payload_json, result_json, requested_at, started_at,
    finished_at, locked_by, locked_at, error
"""

_SCHEDULE_COLUMNS = """
    id, name, query_json, status, import_job_id, discovery_completed, details_completed,
    error_message, created_at, updated_at, started_at, finished_at
"""


def init_db(path: str | None = None):
    return connect_db(path)


def get_setting(conn: Any, key: str, default: object) -> object:
    row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
    if not row:
        return default
    return json_loads(row[0], default)


def set_setting(conn: Any, key: str, value: object) -> None:
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, json_dumps(value), utc_now_iso()),
    )
    conn.commit()


# import jobs


def create_import_job(
    conn: Any, source_query: dict[str, Any], schedule_id: str | None = None
) -> str:
    import_id = f"imp_{uuid.uuid4().hex}"
    conn.execute(
        """
        INSERT INTO import_jobs
            (id, schedule_id, source_query_json, status, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (import_id, schedule_id, json_dumps(source_query), IMPORT_PENDING, utc_now_iso()),
    )
    conn.commit()
    return import_id


def get_import_job(conn: Any, import_id: str, with_plan: bool = False) -> ImportJob | None:
    plan = "chunk_plan_json" if with_plan else "NULL"
    row = conn.execute(
        f"SELECT {_IMPORT_COLUMNS.format(plan=plan)} FROM import_jobs WHERE id = ?",
        (import_id,),
    ).fetchone()
    return _row_to_import_job(row) if row else None


def list_import_jobs(conn: Any, limit: int = 50) -> list[ImportJob]:
    cursor = conn.execute(
        f"""
        SELECT {_IMPORT_COLUMNS.format(plan="NULL")}
        FROM import_jobs
        ORDER BY created_at DESC
        LIMIT ?
        """,
        (limit,),
    )
    return [_row_to_import_job(row) for row in cursor.fetchall()]


def list_active_import_ids(conn: Any, limit: int = 20) -> list[str]:
    placeholders = ",".join(["?"] * len(IMPORT_ACTIVE_STATUSES))
    cursor = conn.execute(
        f"""
        SELECT id FROM import_jobs
        WHERE status IN ({placeholders})
        ORDER BY created_at ASC
        LIMIT ?
        """,
        (*IMPORT_ACTIVE_STATUSES, limit),
    )
    return [row[0] for row in cursor.fetchall()]


def claim_import_planning(conn: Any, import_id: str) -> str | None:
    """Move a pending import to planning and return the lease token, or None.

    Every claim takes a fresh lease; ``started_at`` keeps the first claim time.
    """
    now = utc_now_iso()
    token = f"lease_{uuid.uuid4().hex}"
    cursor = conn.execute(
        """
        UPDATE import_jobs
        SET status = ?, started_at = COALESCE(started_at, ?), message = ?,
            planning_lease_token = ?, planning_lease_at = ?
        WHERE id = ? AND status = ? AND total_chunks IS NULL
        """,
        (IMPORT_PLANNING, now, "planning", token, now, import_id, IMPORT_PENDING),
    )
    conn.commit()
    return token if cursor.rowcount == 1 else None


def renew_planning_lease(conn: Any, import_id: str, token: str) -> bool:
    """Refresh the planning lease; False once the planner no longer holds it."""
    cursor = conn.execute(
        """
        UPDATE import_jobs
        SET planning_lease_at = ?
        WHERE id = ? AND status = ? AND total_chunks IS NULL AND planning_lease_token = ?
        """,
        (utc_now_iso(), import_id, IMPORT_PLANNING, token),
    )
    conn.commit()
    return cursor.rowcount == 1


def reset_stale_planning(conn: Any, import_id: str, lock_timeout_seconds: int) -> bool:
    cutoff = utc_now_iso_offset(seconds=-lock_timeout_seconds)
    cursor = conn.execute(
        """
        UPDATE import_jobs
        SET status = ?, message = ?, planning_lease_token = NULL
        WHERE id = ? AND status = ? AND total_chunks IS NULL
          AND COALESCE(planning_lease_at, started_at) IS NOT NULL
          AND COALESCE(planning_lease_at, started_at) < ?
        """,
        (IMPORT_PENDING, "stale_planning_requeued", import_id, IMPORT_PLANNING, cutoff),
    )
    conn.commit()
    return cursor.rowcount == 1


def write_import_plan(
    conn: Any,
    import_id: str,
    chunk_plan: list[list[dict[str, Any]]],
    split_stats: dict[str, Any],
    total_items: int,
    logger: logging.Logger | None = None,
    lease_token: str | None = None,
) -> bool:
    """Persist the plan and enqueue one chunk task per chunk, atomically.

    Returns False without writing anything when a plan already exists, the
    import left planning, or ``lease_token`` no longer holds the planning lease.
    """
    total_chunks = len(chunk_plan)
    now = utc_now_iso()
    if total_chunks == 0:
        status, message, finished_at = IMPORT_COMPLETED, "no matches", now
    else:
        status, message, finished_at = IMPORT_RUNNING, "running", None
    lease_clause = " AND planning_lease_token = ?" if lease_token is not None else ""
    params: list[Any] = [
        total_chunks,
        json_dumps(chunk_plan),
        json_dumps(split_stats),
        total_items,
        status,
        message,
        finished_at,
        import_id,
        IMPORT_PLANNING,
    ]
    if lease_token is not None:
        params.append(lease_token)
    with conn.transaction():
        cursor = conn.execute(
            """
            UPDATE import_jobs
            SET total_chunks = ?, chunk_plan_json = ?, split_stats_json = ?,
                total_items = ?, status = ?, message = ?, finished_at = ?
            WHERE id = ? AND status = ? AND total_chunks IS NULL
            """
            + lease_clause,
            params,
        )
        if cursor.rowcount != 1:
            if logger:
                log_event(logger, logging.WARNING, "import_plan_refused", import_id=import_id)
            return False
        for index in range(total_chunks):
            _insert_job(
                conn,
                CHUNK_JOB_TYPE,
                {"import_id": import_id, "chunk_index": index},
                parent_id=import_id,
            )
    return True


def complete_import_job(conn: Any, import_id: str, message: str = "completed") -> bool:
    cursor = conn.execute(
        """
        UPDATE import_jobs
        SET status = ?, finished_at = ?, message = ?
        WHERE id = ? AND status = ?
          AND total_chunks IS NOT NULL
          AND completed_chunks + failed_chunks >= total_chunks
        """,
        (IMPORT_COMPLETED, utc_now_iso(), message, import_id, IMPORT_RUNNING),
    )
    conn.commit()
    return cursor.rowcount == 1


def fail_import_job(conn: Any, import_id: str, error: str) -> bool:
    placeholders = ",".join(["?"] * len(IMPORT_ACTIVE_STATUSES))
    cursor = conn.execute(
        f"""
        UPDATE import_jobs
        SET status = ?, finished_at = ?, error_message = ?, message = ?
        WHERE id = ? AND status IN ({placeholders})
        """,
        (IMPORT_FAILED, utc_now_iso(), error, "failed", import_id, *IMPORT_ACTIVE_STATUSES),
    )
    conn.commit()
    return cursor.rowcount == 1


def cancel_import_job(conn: Any, import_id: str, reason: str = "cancelled_by_user") -> bool:
    placeholders = ",".join(["?"] * len(IMPORT_ACTIVE_STATUSES))
    now = utc_now_iso()
    with conn.transaction():
        cursor = conn.execute(
            f"""
            UPDATE import_jobs
            SET status = ?, finished_at = ?, message = ?
            WHERE id = ? AND status IN ({placeholders})
            """,
            (IMPORT_CANCELLED, now, reason, import_id, *IMPORT_ACTIVE_STATUSES),
        )
        if cursor.rowcount != 1:
            return False
        conn.execute(
            """
            UPDATE jobs
            SET status = 'canceled', finished_at = ?, error = ?, locked_by = NULL, locked_at = NULL
            WHERE parent_id = ? AND status = 'queued'
            """,
            (now, reason, import_id),
        )
    return True


def record_chunk_result(
    conn: Any,
    import_id: str,
    chunk_index: int,
    *,
    failed: bool,
    succeeded_count: int,
    failed_count: int,
    fast_mode: bool,
    error: str | None = None,
) -> bool:
    """Record one chunk outcome and bump the job counters in one transaction.

    A chunk already recorded is left untouched and returns False.
    """
    with conn.transaction():
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO import_chunk_results
                (import_id, chunk_index, status, succeeded_count, failed_count,
                 fast_mode, error, finished_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                import_id,
                chunk_index,
                "failed" if failed else "completed",
                succeeded_count,
                failed_count,
                1 if fast_mode else 0,
                error,
                utc_now_iso(),
            ),
        )
        if cursor.rowcount != 1:
            return False
        counter = "failed_chunks" if failed else "completed_chunks"
        conn.execute(
            f"""
            UPDATE import_jobs
            SET {counter} = {counter} + 1,
                imported_items = imported_items + ?,
                failed_items = failed_items + ?
            WHERE id = ?
            """,
            (succeeded_count, failed_count, import_id),
        )
    return True


def list_chunk_results(conn: Any, import_id: str) -> list[dict[str, object]]:
    cursor = conn.execute(
        """
        SELECT chunk_index, status, succeeded_count, failed_count, fast_mode, error, finished_at
        FROM import_chunk_results
        WHERE import_id = ?
        ORDER BY chunk_index ASC
        """,
        (import_id,),
    )
    return [
        {
            "chunk_index": int(row[0]),
            "status": row[1],
            "succeeded": int(row[2] or 0),
            "failed": int(row[3] or 0),
            "fast_mode": bool(row[4]),
            "error": row[5],
            "finished_at": row[6],
        }
        for row in cursor.fetchall()
    ]


# schedules


def create_schedule(conn: Any, name: str, query_definition: dict[str, Any]) -> str:
    schedule_id = f"sch_{uuid.uuid4().hex}"
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO schedules
            (id, name, query_json, status, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (schedule_id, name, json_dumps(query_definition), SCHEDULE_PENDING, now, now),
    )
    conn.commit()
    return schedule_id


def get_schedule(conn: Any, schedule_id: str) -> ScheduleEntry | None:
    row = conn.execute(
        f"SELECT {_SCHEDULE_COLUMNS} FROM schedules WHERE id = ?", (schedule_id,)
    ).fetchone()
    return _row_to_schedule(row) if row else None


def list_schedules(conn: Any) -> list[ScheduleEntry]:
    cursor = conn.execute(
        f"SELECT {_SCHEDULE_COLUMNS} FROM schedules ORDER BY created_at DESC, id DESC"
    )
    return [_row_to_schedule(row) for row in cursor.fetchall()]


def first_schedule_with_status(conn: Any, status: str) -> ScheduleEntry | None:
    row = conn.execute(
        f"""
        SELECT {_SCHEDULE_COLUMNS} FROM schedules
        WHERE status = ?
        ORDER BY created_at ASC, id ASC
        LIMIT 1
        """,
        (status,),
    ).fetchone()
    return _row_to_schedule(row) if row else None


def count_schedules(conn: Any, status: str) -> int:
    row = conn.execute("SELECT COUNT(*) FROM schedules WHERE status = ?", (status,)).fetchone()
    return int(row[0] or 0)


def start_schedule(conn: Any, schedule_id: str, import_id: str) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE schedules
        SET status = ?, import_job_id = ?, started_at = ?, updated_at = ?, error_message = NULL
        WHERE id = ? AND status = ?
        """,
        (SCHEDULE_IMPORTING, import_id, now, now, schedule_id, SCHEDULE_PENDING),
    )
    conn.commit()
    return cursor.rowcount == 1


def mark_schedule_discovered(conn: Any, schedule_id: str) -> None:
    conn.execute(
        "UPDATE schedules SET discovery_completed = 1, updated_at = ? WHERE id = ?",
        (utc_now_iso(), schedule_id),
    )
    conn.commit()


def complete_schedule(conn: Any, schedule_id: str) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE schedules
        SET status = ?, details_completed = 1, discovery_completed = 1,
            finished_at = ?, updated_at = ?
        WHERE id = ? AND status = ?
        """,
        (SCHEDULE_COMPLETED, now, now, schedule_id, SCHEDULE_IMPORTING),
    )
    conn.commit()
    return cursor.rowcount == 1


def fail_schedule(conn: Any, schedule_id: str, error: str) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE schedules
        SET status = ?, error_message = ?, finished_at = ?, updated_at = ?
        WHERE id = ? AND status IN (?, ?)
        """,
        (SCHEDULE_FAILED, error, now, now, schedule_id, SCHEDULE_PENDING, SCHEDULE_IMPORTING),
    )
    conn.commit()
    return cursor.rowcount == 1


def reset_schedule(conn: Any, schedule_id: str, import_id: str) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE schedules
        SET status = ?, import_job_id = ?, discovery_completed = 0, details_completed = 0,
            error_message = NULL, started_at = NULL, finished_at = NULL, updated_at = ?
        WHERE id = ? AND status != ?
        """,
        (SCHEDULE_PENDING, import_id, now, schedule_id, SCHEDULE_IMPORTING),
    )
    conn.commit()
    return cursor.rowcount == 1


# job queue


def enqueue_job(
    conn: Any,
    job_type: str,
    payload: dict[str, object] | None,
    parent_id: str | None = None,
) -> str:
    job_id = _insert_job(conn, job_type, payload, parent_id=parent_id)
    conn.commit()
    return job_id


def _insert_job(
    conn: Any,
    job_type: str,
    payload: dict[str, object] | None,
    parent_id: str | None = None,
) -> str:
    job_id = _new_job_id()
    conn.execute(
        """
        INSERT INTO jobs
            (id, job_type, parent_id, status, payload_json, requested_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            job_id,
            job_type,
            parent_id,
            "queued",
            json_dumps(payload) if payload else None,
            utc_now_iso(),
        ),
    )
    return job_id


def get_job(conn: Any, job_id: str) -> Job | None:
    row = conn.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)).fetchone()
    return _row_to_job(row) if row else None


def list_jobs(conn: Any, limit: int = 50, parent_id: str | None = None) -> list[Job]:
    if parent_id:
        cursor = conn.execute(
            f"""
            SELECT {_JOB_COLUMNS} FROM jobs
            WHERE parent_id = ?
            ORDER BY requested_at DESC, id DESC
            LIMIT ?
            """,
            (parent_id, limit),
        )
    else:
        cursor = conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM jobs ORDER BY requested_at DESC, id DESC LIMIT ?",
            (limit,),
        )
    return [_row_to_job(row) for row in cursor.fetchall()]


def count_jobs(conn: Any, parent_id: str, status: str | None = None) -> int:
    if status:
        row = conn.execute(
            "SELECT COUNT(*) FROM jobs WHERE parent_id = ? AND status = ?",
            (parent_id, status),
        ).fetchone()
    else:
        row = conn.execute(
            "SELECT COUNT(*) FROM jobs WHERE parent_id = ?", (parent_id,)
        ).fetchone()
    return int(row[0] or 0)


def claim_next_job(
    conn: Any,
    worker_id: str,
    allowed_types: list[str] | None = None,
    lock_timeout_seconds: int | None = None,
    parent_id: str | None = None,
) -> Job | None:
    if lock_timeout_seconds is not None:
        cutoff = utc_now_iso_offset(seconds=-lock_timeout_seconds)
        conn.execute(
            """
            UPDATE jobs
            SET status = 'queued',
                locked_by = NULL,
                locked_at = NULL,
                started_at = NULL,
                error = 'stale_lock_requeued'
            WHERE status = 'running' AND locked_at IS NOT NULL AND locked_at < ?
            """,
            (cutoff,),
        )
        conn.commit()
    params: list[object] = []
    clauses = ""
    if allowed_types:
        placeholders = ",".join(["?"] * len(allowed_types))
        clauses += f" AND job_type IN ({placeholders})"
        params.extend(allowed_types)
    if parent_id:
        clauses += " AND parent_id = ?"
        params.append(parent_id)
    for _ in range(20):
        row = conn.execute(
            f"""
            SELECT id FROM jobs
            WHERE status = 'queued' AND locked_by IS NULL {clauses}
            ORDER BY requested_at ASC, id ASC
            LIMIT 1
            """,
            tuple(params),
        ).fetchone()
        if not row:
            return None
        now = utc_now_iso()
        cursor = conn.execute(
            """
            UPDATE jobs
            SET status = 'running', started_at = ?, locked_by = ?, locked_at = ?
            WHERE id = ? AND status = 'queued' AND locked_by IS NULL
            """,
            (now, worker_id, now, row[0]),
        )
        conn.commit()
        if cursor.rowcount == 1:
            return get_job(conn, row[0])
    return None


def complete_job(conn: Any, job_id: str, result: dict[str, object] | None = None) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'succeeded', finished_at = ?, error = NULL, result_json = ?
        WHERE id = ? AND status = 'running'
        """,
        (utc_now_iso(), json_dumps(result) if result else None, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def fail_job(conn: Any, job_id: str, error: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'failed', finished_at = ?, error = ?
        WHERE id = ? AND status = 'running'
        """,
        (utc_now_iso(), error, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def cancel_job(conn: Any, job_id: str, reason: str = "canceled") -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'canceled', finished_at = ?, error = ?, locked_by = NULL, locked_at = NULL
        WHERE id = ? AND status IN ('queued', 'running')
        """,
        (utc_now_iso(), reason, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


# listings


def upsert_listing(conn: Any, record: DetailRecord, import_id: str | None = None) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO listings
            (item_id, url, price, detail_json, history_json, import_job_id, fetched_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(item_id) DO UPDATE SET
            url = excluded.url,
            price = excluded.price,
            detail_json = excluded.detail_json,
            history_json = COALESCE(excluded.history_json, listings.history_json),
            import_job_id = excluded.import_job_id,
            fetched_at = excluded.fetched_at,
            updated_at = excluded.updated_at
        """,
        (
            record.item_id,
            record.url,
            record.price,
            json_dumps(record.fields),
            json_dumps(record.history) if record.history is not None else None,
            import_id,
            record.fetched_at,
            now,
        ),
    )
    conn.commit()


def get_listing(conn: Any, item_id: str) -> DetailRecord | None:
    row = conn.execute(
        """
        SELECT item_id, url, price, detail_json, history_json, fetched_at
        FROM listings WHERE item_id = ?
        """,
        (item_id,),
    ).fetchone()
    if not row:
        return None
    return DetailRecord(
        item_id=row[0],
        url=row[1],
        price=int(row[2]) if row[2] is not None else None,
        fields=json_loads(row[3], {}),
        history=json_loads(row[4], None),
        fetched_at=row[5],
    )


def count_listings(conn: Any, import_id: str | None = None) -> int:
    if import_id:
        row = conn.execute(
            "SELECT COUNT(*) FROM listings WHERE import_job_id = ?", (import_id,)
        ).fetchone()
    else:
        row = conn.execute("SELECT COUNT(*) FROM listings").fetchone()
    return int(row[0] or 0)


def _row_to_import_job(row: tuple) -> ImportJob:
    (
        import_id,
        schedule_id,
        source_query_json,
        status,
        total_chunks,
        completed_chunks,
        failed_chunks,
        total_items,
        imported_items,
        failed_items,
        chunk_plan_json,
        split_stats_json,
        message,
        error_message,
        created_at,
        started_at,
        finished_at,
    ) = row
    return ImportJob(
        id=import_id,
        schedule_id=schedule_id,
        source_query=json_loads(source_query_json, {}),
        status=status,
        total_chunks=int(total_chunks) if total_chunks is not None else None,
        completed_chunks=int(completed_chunks or 0),
        failed_chunks=int(failed_chunks or 0),
        total_items=int(total_items) if total_items is not None else None,
        imported_items=int(imported_items or 0),
        failed_items=int(failed_items or 0),
        chunk_plan=json_loads(chunk_plan_json, None),
        split_stats=json_loads(split_stats_json, None),
        message=message,
        error_message=error_message,
        created_at=created_at,
        started_at=started_at,
        finished_at=finished_at,
    )


def _row_to_schedule(row: tuple) -> ScheduleEntry:
    (
        schedule_id,
        name,
        query_json,
        status,
        import_job_id,
        discovery_completed,
        details_completed,
        error_message,
        created_at,
        updated_at,
        started_at,
        finished_at,
    ) = row
    return ScheduleEntry(
        id=schedule_id,
        name=name,
        query_definition=json_loads(query_json, {}),
        status=status,
        import_job_id=import_job_id,
        discovery_completed=bool(discovery_completed),
        details_completed=bool(details_completed),
        error_message=error_message,
        created_at=created_at,
        updated_at=updated_at,
        started_at=started_at,
        finished_at=finished_at,
    )


def _row_to_job(row: tuple) -> Job:
    (
        job_id,
        job_type,
        parent_id,
        status,
        payload_json,
        result_json,
        requested_at,
        started_at,
        finished_at,
        locked_by,
        locked_at,
        error,
    ) = row
    return Job(
        id=job_id,
        job_type=job_type,
        parent_id=parent_id,
        status=status,
        payload=json_loads(payload_json, {}),
        result=json_loads(result_json, None),
        requested_at=requested_at,
        started_at=started_at,
        finished_at=finished_at,
        locked_by=locked_by,
        locked_at=locked_at,
        error=error,
    )


def _new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"


def iter_chunk_refs(job: ImportJob, chunk_index: int) -> Iterable[dict[str, Any]]:
    plan = job.chunk_plan or []
    if chunk_index < 0 or chunk_index >= len(plan):
        return []
    return plan[chunk_index]
