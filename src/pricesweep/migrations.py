from __future__ import annotations

import logging
from typing import Any, Callable

from .utils import log_event, utc_now_iso

Migration = Callable[[Any], None]

logger = logging.getLogger("pricesweep.migrations")


def apply_migrations(conn) -> None:
    """Apply pending numbered migrations in one transaction.

    Accepts a ``DBConn`` or a raw sqlite3 connection. Existing migrations are
    never edited; schema changes get a new version.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_migrations "
            "(version TEXT PRIMARY KEY, applied_at TEXT NOT NULL)"
        )
        done = {row[0] for row in conn.execute("SELECT version FROM schema_migrations").fetchall()}
        pending = [(version, step) for version, step in _get_migrations() if version not in done]
        for version, step in pending:
            step(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            log_event(logger, logging.INFO, "migration_applied", version=version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _migration_initial_schema(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS import_jobs (
            id TEXT PRIMARY KEY,
            schedule_id TEXT NULL,
            source_query_json TEXT NOT NULL,
            status TEXT NOT NULL,
            total_chunks INTEGER NULL,
            completed_chunks INTEGER NOT NULL DEFAULT 0,
            failed_chunks INTEGER NOT NULL DEFAULT 0,
            total_items INTEGER NULL,
            imported_items INTEGER NOT NULL DEFAULT 0,
            failed_items INTEGER NOT NULL DEFAULT 0,
            chunk_plan_json TEXT NULL,
            split_stats_json TEXT NULL,
            message TEXT NULL,
            error_message TEXT NULL,
            created_at TEXT NOT NULL,
            started_at TEXT NULL,
            finished_at TEXT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_import_jobs_status ON import_jobs(status, created_at)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS import_chunk_results (
            import_id TEXT NOT NULL,
            chunk_index INTEGER NOT NULL,
            status TEXT NOT NULL,
            succeeded_count INTEGER NOT NULL DEFAULT 0,
            failed_count INTEGER NOT NULL DEFAULT 0,
            fast_mode INTEGER NOT NULL DEFAULT 0,
            error TEXT NULL,
            finished_at TEXT NOT NULL,
            PRIMARY KEY (import_id, chunk_index)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schedules (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            query_json TEXT NOT NULL,
            status TEXT NOT NULL,
            import_job_id TEXT NULL,
            discovery_completed INTEGER NOT NULL DEFAULT 0,
            details_completed INTEGER NOT NULL DEFAULT 0,
            error_message TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            started_at TEXT NULL,
            finished_at TEXT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_schedules_status ON schedules(status, created_at)"
    )


def _migration_jobs_table(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            job_type TEXT NOT NULL,
            parent_id TEXT NULL,
            status TEXT NOT NULL,
            payload_json TEXT NULL,
            result_json TEXT NULL,
            requested_at TEXT NOT NULL,
            started_at TEXT NULL,
            finished_at TEXT NULL,
            locked_by TEXT NULL,
            locked_at TEXT NULL,
            error TEXT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_status_requested ON jobs(status, requested_at)"
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_parent ON jobs(parent_id, status)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_locked ON jobs(locked_by, locked_at)"
    )


def _migration_listings(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS listings (
            item_id TEXT PRIMARY KEY,
            url TEXT NOT NULL,
            price INTEGER NULL,
            detail_json TEXT NOT NULL,
            history_json TEXT NULL,
            import_job_id TEXT NULL,
            fetched_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_listings_import ON listings(import_job_id)")


def _migration_planning_lease(conn) -> None:
    conn.execute("ALTER TABLE import_jobs ADD COLUMN planning_lease_token TEXT NULL")
    conn.execute("ALTER TABLE import_jobs ADD COLUMN planning_lease_at TEXT NULL")


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_initial_schema", _migration_initial_schema),
        ("002_jobs_table", _migration_jobs_table),
        ("003_listings", _migration_listings),
        ("004_planning_lease", _migration_planning_lease),
    ]
