from __future__ import annotations

import os
import re
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterator

from .migrations import apply_migrations

DEFAULT_DATA_DIR = "/data"

_MIGRATED: set[str] = set()
_MIGRATED_LOCK = threading.Lock()

# Quoted literals and identifiers; placeholders inside them are left alone.
_QUOTED = re.compile(r"('(?:[^']|'')*'|\"[^\"]*\")")
_INSERT_OR_IGNORE = re.compile(r"\bINSERT\s+OR\s+IGNORE\b", re.IGNORECASE)


def get_db_url() -> str | None:
    url = os.environ.get("PS_DB_URL", "").strip()
    return url or None


def is_postgres_url(url: str | None) -> bool:
    return bool(url) and url.split("://", 1)[0] in {"postgres", "postgresql"}


def get_state_db_path() -> str:
    data_dir = os.environ.get("PS_DATA_DIR", DEFAULT_DATA_DIR)
    return os.path.join(data_dir, "state.sqlite3")


class DBConn:
    """Connection facade; SQL is written for SQLite and rewritten for PostgreSQL."""

    def __init__(self, conn: Any, backend: str) -> None:
        self._conn = conn
        self.backend = backend

    def execute(self, sql: str, params: tuple | list | None = None):
        if self.backend == "postgres":
            sql = to_postgres_sql(sql)
        cursor = self._conn.cursor()
        cursor.execute(sql, params or ())
        return cursor

    @contextmanager
    def transaction(self) -> Iterator["DBConn"]:
        """Run a block atomically; commits on success, rolls back on error."""
        self._conn.commit()
        if self.backend == "postgres":
            with self._conn.transaction():
                yield self
            return
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            yield self
        except Exception:
            self._conn.rollback()
            raise
        self._conn.commit()

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    def close(self) -> None:
        self._conn.close()


def connect_db(path: str | None = None) -> DBConn:
    url = get_db_url()
    if is_postgres_url(url):
        try:
            import psycopg
        except ImportError as exc:  # pragma: no cover - depends on env
            raise RuntimeError("psycopg is required for PostgreSQL support") from exc
        conn = DBConn(psycopg.connect(url), "postgres")
        _migrate_once(conn, url)
        return conn

    path = os.path.abspath(path or get_state_db_path())
    os.makedirs(os.path.dirname(path), exist_ok=True)
    raw = sqlite3.connect(path, timeout=30)
    for pragma in ("journal_mode=WAL", "synchronous=NORMAL", "busy_timeout=5000"):
        raw.execute(f"PRAGMA {pragma}")
    conn = DBConn(raw, "sqlite")
    _migrate_once(conn, path)
    return conn


def _migrate_once(conn: DBConn, key: str) -> None:
    with _MIGRATED_LOCK:
        if key in _MIGRATED:
            return
        apply_migrations(conn)
        _MIGRATED.add(key)


def to_postgres_sql(sql: str) -> str:
    if _INSERT_OR_IGNORE.search(sql):
        sql = _INSERT_OR_IGNORE.sub("INSERT", sql, count=1)
        if "ON CONFLICT" not in sql.upper():
            sql = sql.rstrip().rstrip(";") + " ON CONFLICT DO NOTHING"
    sql = sql.replace("BEGIN IMMEDIATE", "BEGIN")
    parts = _QUOTED.split(sql)
    return "".join(part if index % 2 else part.replace("?", "%s") for index, part in enumerate(parts))
