from pricesweep.storage import (
    CHUNK_JOB_TYPE,
    cancel_job,
    claim_next_job,
    complete_job,
    count_jobs,
    enqueue_job,
    fail_job,
    get_job,
    init_db,
    list_jobs,
)
from pricesweep.utils import utc_now_iso_offset


def test_enqueue_and_claim_job(db_path):
    conn = init_db(db_path)
    conn2 = init_db(db_path)

    job_id = enqueue_job(conn, CHUNK_JOB_TYPE, {"import_id": "imp_a", "chunk_index": 0})
    claimed = claim_next_job(conn, "worker-1")

    assert claimed is not None
    assert claimed.id == job_id
    assert claimed.status == "running"
    assert claimed.locked_by == "worker-1"
    assert claimed.payload == {"import_id": "imp_a", "chunk_index": 0}

    second = claim_next_job(conn2, "worker-2")
    assert second is None
    conn.close()
    conn2.close()


def test_claims_are_fifo(conn):
    first = enqueue_job(conn, CHUNK_JOB_TYPE, {"chunk_index": 0})
    second = enqueue_job(conn, CHUNK_JOB_TYPE, {"chunk_index": 1})

    job = claim_next_job(conn, "worker-1")
    assert job is not None
    assert job.id == first

    remaining = [item.id for item in list_jobs(conn, limit=10) if item.status == "queued"]
    assert remaining == [second]


def test_claim_filters_by_type_and_parent(conn):
    enqueue_job(conn, "other", None)
    wanted = enqueue_job(conn, CHUNK_JOB_TYPE, {"chunk_index": 0}, parent_id="imp_b")
    enqueue_job(conn, CHUNK_JOB_TYPE, {"chunk_index": 0}, parent_id="imp_a")

    job = claim_next_job(conn, "worker-1", allowed_types=[CHUNK_JOB_TYPE], parent_id="imp_b")

    assert job is not None
    assert job.id == wanted
    assert claim_next_job(conn, "worker-1", allowed_types=["missing"]) is None
    assert count_jobs(conn, "imp_a", "queued") == 1


def test_job_lifecycle_records_result(conn):
    job_id = enqueue_job(conn, CHUNK_JOB_TYPE, {"import_id": "imp_a", "chunk_index": 3})
    assert claim_next_job(conn, "worker-1").id == job_id

    result = {"chunk_index": 3, "succeeded": 20}
    assert complete_job(conn, job_id, result=result) is True
    assert complete_job(conn, job_id, result=result) is False

    job = list_jobs(conn, limit=1)[0]
    assert job.status == "succeeded"
    assert job.result == result


def test_failed_and_canceled_jobs(conn):
    failing = enqueue_job(conn, CHUNK_JOB_TYPE, None, parent_id="imp_a")
    queued = enqueue_job(conn, CHUNK_JOB_TYPE, None, parent_id="imp_a")
    claim_next_job(conn, "worker-1")

    assert fail_job(conn, failing, "boom") is True
    assert cancel_job(conn, queued) is True
    assert cancel_job(conn, queued) is False

    assert get_job(conn, failing).status == "failed"
    assert get_job(conn, failing).error == "boom"
    assert get_job(conn, queued).status == "canceled"
    assert count_jobs(conn, "imp_a") == 2
    assert count_jobs(conn, "imp_a", "queued") == 0
    assert {job.id for job in list_jobs(conn, parent_id="imp_a")} == {failing, queued}


def test_stale_lock_requeues_job(conn):
    job_id = enqueue_job(conn, CHUNK_JOB_TYPE, None)
    assert claim_next_job(conn, "worker-1") is not None

    conn.execute(
        "UPDATE jobs SET locked_at = ?, status = 'running' WHERE id = ?",
        (utc_now_iso_offset(seconds=-3600), job_id),
    )
    conn.commit()

    assert claim_next_job(conn, "worker-2") is None
    reclaimed = claim_next_job(conn, "worker-2", lock_timeout_seconds=10)
    assert reclaimed is not None
    assert reclaimed.id == job_id
    assert reclaimed.locked_by == "worker-2"
