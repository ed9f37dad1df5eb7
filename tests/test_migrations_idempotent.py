import sqlite3

from pricesweep.migrations import _get_migrations, apply_migrations


def test_apply_migrations_idempotent(tmp_path):
    conn = sqlite3.connect(str(tmp_path / "state.sqlite3"))
    apply_migrations(conn)
    apply_migrations(conn)

    versions = [row[0] for row in conn.execute("SELECT version FROM schema_migrations").fetchall()]
    expected = [version for version, _ in _get_migrations()]
    assert sorted(versions) == sorted(expected)
    assert len(versions) == len(set(versions))

    tables = {
        row[0]
        for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    }
    assert {"import_jobs", "import_chunk_results", "schedules", "jobs", "listings"} <= tables
    conn.close()
