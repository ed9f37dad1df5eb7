import copy

import pytest

from pricesweep.config import (
    DEFAULT_CONFIG,
    ConfigError,
    bootstrap_runtime_config,
    build_config,
    get_runtime_config,
    load_runtime_config,
    merge_config,
    set_runtime_config,
    validate_runtime_config,
)
from pricesweep.storage import init_db


def test_bootstrap_creates_runtime_config():
    conn = init_db()
    cfg = bootstrap_runtime_config(conn)
    assert cfg == DEFAULT_CONFIG
    conn.close()


def test_get_runtime_config_after_set(conn):
    custom = copy.deepcopy(DEFAULT_CONFIG)
    custom["crawl"]["ceiling"] = 500
    set_runtime_config(conn, custom)

    assert get_runtime_config(conn)["crawl"]["ceiling"] == 500
    assert load_runtime_config(conn).crawl.ceiling == 500


def test_set_runtime_config_rejects_invalid(conn):
    with pytest.raises(ConfigError) as excinfo:
        set_runtime_config(conn, {"app": {"name": "Bad"}})
    assert "Invalid config.runtime" in str(excinfo.value)
    assert "missing config.runtime.crawl" in str(excinfo.value)


def test_validation_reports_types_and_unknown_keys():
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    cfg["chunks"]["max_concurrent"] = "six"
    cfg["jobs"]["inline_chunks"] = 1
    cfg["crawl"]["extra"] = True

    errors = validate_runtime_config(cfg)

    assert "config.runtime.chunks.max_concurrent must be an integer" in errors
    assert "config.runtime.jobs.inline_chunks must be a boolean" in errors
    assert "unknown config.runtime.crawl.extra" in errors


@pytest.mark.parametrize(
    "section, key, value",
    [
        ("crawl", "split_ratio", 1.5),
        ("crawl", "ceiling", 0),
        ("crawl", "rounding_bands", [[100000]]),
        ("chunks", "chunk_size", 0),
        ("source", "page_size", 0),
    ],
)
def test_validation_rejects_out_of_range_values(section, key, value):
    cfg = merge_config({section: {key: value}})
    errors = validate_runtime_config(cfg)
    assert any(f"{section}." in error for error in errors)


def test_merge_config_overrides_single_keys():
    merged = merge_config({"crawl": {"ceiling": 50}, "jobs": {"inline_chunks": True}})

    assert merged["crawl"]["ceiling"] == 50
    assert merged["crawl"]["max_depth"] == DEFAULT_CONFIG["crawl"]["max_depth"]
    assert merged["jobs"]["inline_chunks"] is True
    assert DEFAULT_CONFIG["crawl"]["ceiling"] == 1000


def test_build_config_exposes_typed_sections():
    config = build_config(copy.deepcopy(DEFAULT_CONFIG))

    assert config.crawl.split_ratio == 0.4
    assert config.crawl.rounding_bands == [[100000, 5000], [1000000, 10000]]
    assert config.chunks.fast_mode_threshold == 200
    assert config.source.index_param == "index"
    assert config.jobs.inline_chunks is False
    with pytest.raises(AttributeError):
        config.crawl.ceiling = 1
