import logging

from conftest import FakeSource, FlakySource, make_config, make_refs, no_sleep
from pricesweep.chunks import ChunkWorker
from pricesweep.models import ItemRef
from pricesweep.source import ParseError, SourceError
from pricesweep.storage import count_listings, get_listing

LOGGER = logging.getLogger("pricesweep.tests")


def _worker(conn, source, overrides=None, sleep=no_sleep):
    return ChunkWorker(conn, source, make_config(overrides).chunks, logger=LOGGER, sleep=sleep)


def test_scenario_c_large_batch_uses_fast_mode_and_bounded_waves(conn):
    source = FakeSource()
    result = _worker(conn, source).fetch_batch(make_refs(250))

    assert result.fast_mode is True
    assert result.sub_batches == 13
    assert result.waves == 3
    assert result.pool_size == 120
    assert source.max_in_flight <= 120
    assert len(result.succeeded) == 250
    assert result.failed == []
    assert source.history_calls == 0
    assert count_listings(conn) == 250


def test_small_batch_fetches_history(conn):
    source = FakeSource()
    result = _worker(conn, source).fetch_batch(make_refs(30))

    assert result.fast_mode is False
    assert result.sub_batches == 2
    assert result.waves == 1
    assert source.history_calls == 30
    assert all(record.history for record in result.succeeded)


def test_concurrency_argument_limits_sub_batches_per_wave(conn):
    result = _worker(conn, FakeSource()).fetch_batch(make_refs(100), concurrency=2)

    assert result.sub_batches == 5
    assert result.waves == 3
    assert result.pool_size == 40


def test_item_failure_is_isolated(conn):
    refs = make_refs(10)
    source = FakeSource()
    source.fail_details[refs[3].url] = SourceError("gone", status_code=404)
    result = _worker(conn, source).fetch_batch(refs)

    assert len(result.succeeded) == 9
    assert [ref.id for ref, _ in result.failed] == ["r3"]
    assert "gone" in result.failed[0][1]
    assert source.detail_calls[refs[3].url] == 3
    assert get_listing(conn, "r3") is None


def test_non_object_detail_fails_only_that_item(conn):
    refs = make_refs(5)

    class OddDetailSource(FakeSource):
        def fetch_detail(self, ref):
            detail = super().fetch_detail(ref)
            return None if ref.id == "r1" else detail

    source = OddDetailSource()
    result = _worker(conn, source).fetch_batch(refs)

    assert len(result.succeeded) == 4
    assert [ref.id for ref, _ in result.failed] == ["r1"]
    assert "NoneType" in result.failed[0][1]
    assert source.detail_calls[refs[1].url] == 1
    assert get_listing(conn, "r1") is None


def test_parse_error_is_not_retried(conn):
    refs = make_refs(2)
    source = FakeSource()
    source.fail_details[refs[0].url] = ParseError("no propertyData")
    result = _worker(conn, source).fetch_batch(refs)

    assert len(result.failed) == 1
    assert source.detail_calls[refs[0].url] == 1


def test_rate_limited_retries_back_off_exponentially_and_double(conn):
    delays = []
    source = FlakySource(failures=2, status_code=429)
    result = _worker(
        conn, source, {"chunks": {"item_backoff_seconds": 1.0}}, sleep=delays.append
    ).fetch_batch(make_refs(1))

    assert len(result.succeeded) == 1
    assert delays == [2.0, 4.0]


def test_plain_transient_errors_back_off_without_doubling(conn):
    delays = []
    source = FlakySource(failures=2, status_code=503)
    _worker(conn, source, {"chunks": {"item_backoff_seconds": 1.0}}, sleep=delays.append).fetch_batch(
        make_refs(1)
    )

    assert delays == [1.0, 2.0]


def test_history_failure_keeps_record_without_history(conn):
    source = FakeSource()
    source.fail_history = True
    result = _worker(conn, source).fetch_batch(make_refs(3))

    assert len(result.succeeded) == 3
    assert result.history_failures == 3
    assert all(record.history is None for record in result.succeeded)


def test_returned_records_are_read_back_from_storage(conn):
    ref = ItemRef(
        id=None,
        url="https://example.test/listing/abc",
        price=275000,
        address="3 Mill Lane",
        bedrooms=2,
    )
    result = _worker(conn, FakeSource(with_history=False)).fetch_batch([ref])

    record = result.succeeded[0]
    assert record.item_id.startswith("url:")
    assert record == get_listing(conn, record.item_id)
    assert record.fields["address"] == "3 Mill Lane"
    assert record.price == 275000


def test_sub_batch_delay_between_waves(conn):
    delays = []
    _worker(
        conn, FakeSource(with_history=False), {"chunks": {"sub_batch_delay_seconds": 0.5}}, sleep=delays.append
    ).fetch_batch(make_refs(250))

    assert delays == [0.5, 0.5]
