from pricesweep.db import connect_db, is_postgres_url, to_postgres_sql


def test_postgres_sql_rewrites_placeholders_outside_literals():
    sql = "SELECT id FROM jobs WHERE status = 'queued?' AND id = ? AND parent_id = ?"
    assert to_postgres_sql(sql) == (
        "SELECT id FROM jobs WHERE status = 'queued?' AND id = %s AND parent_id = %s"
    )


def test_postgres_sql_rewrites_insert_or_ignore():
    sql = "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)"
    assert to_postgres_sql(sql) == (
        "INSERT INTO schema_migrations (version, applied_at) VALUES (%s, %s) ON CONFLICT DO NOTHING"
    )


def test_is_postgres_url():
    assert is_postgres_url("postgresql://user@localhost/db")
    assert is_postgres_url("postgres://localhost/db")
    assert not is_postgres_url("sqlite:///tmp/state.sqlite3")
    assert not is_postgres_url(None)


def test_transaction_rolls_back_on_error(db_path):
    conn = connect_db(db_path)
    try:
        with conn.transaction():
            conn.execute(
                "INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)",
                ("probe", "1", "2025-01-01T00:00:00+00:00"),
            )
            raise RuntimeError("abort")
    except RuntimeError:
        pass
    assert conn.execute("SELECT COUNT(*) FROM settings WHERE key = 'probe'").fetchone()[0] == 0
    conn.close()
