from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from .db import get_state_db_path
from .storage import get_setting, set_setting

__all__ = [
    "CONFIG_KEY",
    "DEFAULT_CONFIG",
    "Config",
    "ConfigError",
    "bootstrap_runtime_config",
    "build_config",
    "get_runtime_config",
    "get_state_db_path",
    "load_runtime_config",
    "merge_config",
    "set_runtime_config",
    "validate_runtime_config",
]


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: int
    user_agent: str


@dataclass(frozen=True)
class SourceConfig:
    page_size: int
    index_param: str
    default_max_price: int


@dataclass(frozen=True)
class CrawlConfig:
    ceiling: int
    max_depth: int
    min_split_width: int
    split_ratio: float
    rounding_bands: list[list[int]]
    rounding_step_above: int
    clamp_margin: int
    leaf_delay_seconds: float
    split_delay_seconds: float
    empty_page_limit: int
    max_pages_per_leaf: int
    page_retries: int
    page_retry_delay_seconds: float


@dataclass(frozen=True)
class ChunksConfig:
    chunk_size: int
    sub_batch_size: int
    max_concurrent: int
    fast_mode_threshold: int
    item_retries: int
    item_backoff_seconds: float
    sub_batch_delay_seconds: float


@dataclass(frozen=True)
class JobsConfig:
    lock_timeout_seconds: int
    inline_chunks: bool


@dataclass(frozen=True)
class Config:
    app: AppConfig
    http: HttpConfig
    source: SourceConfig
    crawl: CrawlConfig
    chunks: ChunksConfig
    jobs: JobsConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "PriceSweep",
    },
    "http": {
        "timeout_seconds": 20,
        "user_agent": "PriceSweep/0.1",
    },
    "source": {
        "page_size": 24,
        "index_param": "index",
        "default_max_price": 50000000,
    },
    "crawl": {
        "ceiling": 1000,
        "max_depth": 10,
        "min_split_width": 5000,
        "split_ratio": 0.4,
        "rounding_bands": [[100000, 5000], [1000000, 10000]],
        "rounding_step_above": 50000,
        "clamp_margin": 1000,
        "leaf_delay_seconds": 0.5,
        "split_delay_seconds": 1.0,
        "empty_page_limit": 3,
        "max_pages_per_leaf": 42,
        "page_retries": 3,
        "page_retry_delay_seconds": 2.0,
    },
    "chunks": {
        "chunk_size": 20,
        "sub_batch_size": 20,
        "max_concurrent": 6,
        "fast_mode_threshold": 200,
        "item_retries": 3,
        "item_backoff_seconds": 1.0,
        "sub_batch_delay_seconds": 0.5,
    },
    "jobs": {
        "lock_timeout_seconds": 600,
        "inline_chunks": False,
    },
}

CONFIG_KEY = "config.runtime"


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, _deep_copy(DEFAULT_CONFIG))
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    return build_config(cfg)


def merge_config(overrides: dict[str, Any], base: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return a copy of ``base`` (defaults when omitted) with section overrides applied."""
    merged = _deep_copy(base or DEFAULT_CONFIG)
    for section, values in overrides.items():
        if isinstance(values, dict) and isinstance(merged.get(section), dict):
            merged[section].update(values)
        else:
            merged[section] = values
    return merged


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    if not errors:
        _validate_ranges(cfg, errors)
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        if default:
            sample = default[0]
            for item in value:
                if not isinstance(item, type(sample)):
                    errors.append(f"{path} must be a list of {type(sample).__name__}")
                    break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _validate_ranges(cfg: dict[str, Any], errors: list[str]) -> None:
    crawl = cfg["crawl"]
    chunks = cfg["chunks"]
    if not 0 < crawl["split_ratio"] < 1:
        errors.append("config.runtime.crawl.split_ratio must be between 0 and 1")
    for key in ("ceiling", "min_split_width", "empty_page_limit", "page_retries"):
        if crawl[key] < 1:
            errors.append(f"config.runtime.crawl.{key} must be >= 1")
    if crawl["max_depth"] < 0:
        errors.append("config.runtime.crawl.max_depth must be >= 0")
    for band in crawl["rounding_bands"]:
        if len(band) != 2 or not all(isinstance(part, int) and part > 0 for part in band):
            errors.append("config.runtime.crawl.rounding_bands entries must be [limit, step]")
            break
    for key in ("chunk_size", "sub_batch_size", "max_concurrent", "item_retries"):
        if chunks[key] < 1:
            errors.append(f"config.runtime.chunks.{key} must be >= 1")
    if cfg["source"]["page_size"] < 1:
        errors.append("config.runtime.source.page_size must be >= 1")


def build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg.get("app") or {}
    http_cfg = cfg.get("http") or {}
    source_cfg = cfg.get("source") or {}
    crawl_cfg = cfg.get("crawl") or {}
    chunks_cfg = cfg.get("chunks") or {}
    jobs_cfg = cfg.get("jobs") or {}

    app = AppConfig(name=str(app_cfg.get("name")))

    http = HttpConfig(
        timeout_seconds=int(http_cfg.get("timeout_seconds")),
        user_agent=str(http_cfg.get("user_agent")),
    )

    source = SourceConfig(
        page_size=int(source_cfg.get("page_size")),
        index_param=str(source_cfg.get("index_param")),
        default_max_price=int(source_cfg.get("default_max_price")),
    )

    crawl = CrawlConfig(
        ceiling=int(crawl_cfg.get("ceiling")),
        max_depth=int(crawl_cfg.get("max_depth")),
        min_split_width=int(crawl_cfg.get("min_split_width")),
        split_ratio=float(crawl_cfg.get("split_ratio")),
        rounding_bands=[[int(limit), int(step)] for limit, step in crawl_cfg.get("rounding_bands")],
        rounding_step_above=int(crawl_cfg.get("rounding_step_above")),
        clamp_margin=int(crawl_cfg.get("clamp_margin")),
        leaf_delay_seconds=float(crawl_cfg.get("leaf_delay_seconds")),
        split_delay_seconds=float(crawl_cfg.get("split_delay_seconds")),
        empty_page_limit=int(crawl_cfg.get("empty_page_limit")),
        max_pages_per_leaf=int(crawl_cfg.get("max_pages_per_leaf")),
        page_retries=int(crawl_cfg.get("page_retries")),
        page_retry_delay_seconds=float(crawl_cfg.get("page_retry_delay_seconds")),
    )

    chunks = ChunksConfig(
        chunk_size=int(chunks_cfg.get("chunk_size")),
        sub_batch_size=int(chunks_cfg.get("sub_batch_size")),
        max_concurrent=int(chunks_cfg.get("max_concurrent")),
        fast_mode_threshold=int(chunks_cfg.get("fast_mode_threshold")),
        item_retries=int(chunks_cfg.get("item_retries")),
        item_backoff_seconds=float(chunks_cfg.get("item_backoff_seconds")),
        sub_batch_delay_seconds=float(chunks_cfg.get("sub_batch_delay_seconds")),
    )

    jobs = JobsConfig(
        lock_timeout_seconds=int(jobs_cfg.get("lock_timeout_seconds")),
        inline_chunks=bool(jobs_cfg.get("inline_chunks")),
    )

    return Config(app=app, http=http, source=source, crawl=crawl, chunks=chunks, jobs=jobs)


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
