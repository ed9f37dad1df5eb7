from __future__ import annotations

import dataclasses
import hashlib
import json
import logging
import os
import sys
from datetime import date, datetime, timezone, timedelta
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit
from uuid import UUID


_LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    message = " ".join([f"event={event}", *(f"{key}={value}" for key, value in fields.items())])
    logger.log(level, message)


class _StdoutHandler(logging.StreamHandler):
    """Writes to whatever ``sys.stdout`` is when a record is emitted."""

    @property
    def stream(self):
        return sys.stdout

    @stream.setter
    def stream(self, value) -> None:
        pass


def configure_logging(logger_name: str, default_level: str = "INFO") -> logging.Logger:
    """Set up root handlers once; safe to call from every entry point."""
    level = _level(os.environ.get("PS_LOG_LEVEL", default_level))
    root = logging.getLogger()
    root.setLevel(level)

    stdout = next((h for h in root.handlers if isinstance(h, _StdoutHandler)), None)
    if stdout is None:
        stdout = _StdoutHandler()
        stdout.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(stdout)
    stdout.setLevel(level)

    log_path = os.environ.get("PS_LOG_FILE")
    if log_path:
        log_path = os.path.abspath(log_path)
        if not any(
            isinstance(h, logging.FileHandler) and h.baseFilename == log_path for h in root.handlers
        ):
            os.makedirs(os.path.dirname(log_path), exist_ok=True)
            handler = logging.FileHandler(log_path)
            handler.setLevel(level)
            handler.setFormatter(logging.Formatter(_LOG_FORMAT))
            root.addHandler(handler)

    # PS_LOG_LEVELS="pricesweep.crawler=DEBUG,pricesweep.chunks=WARNING"
    for item in os.environ.get("PS_LOG_LEVELS", "").split(","):
        name, sep, value = item.partition("=")
        if sep and name.strip():
            logging.getLogger(name.strip()).setLevel(_level(value))
    return logging.getLogger(logger_name)


def _level(name: str) -> int:
    return getattr(logging, name.strip().upper(), logging.INFO)


def json_dumps(value: Any) -> str:
    return json.dumps(value, default=_json_default, sort_keys=True)


def json_loads(value: str | None, default: Any = None) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def _json_default(value: Any) -> Any:
    if dataclasses.is_dataclass(value):
        return dataclasses.asdict(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, UUID):
        return str(value)
    if hasattr(value, "model_dump"):
        try:
            return value.model_dump()
        except TypeError:
            return value.model_dump(mode="json")
    if isinstance(value, (set, tuple)):
        return list(value)
    return str(value)


def normalize_url(url: str) -> str:
    if not url:
        return url
    split = urlsplit(url.strip())
    scheme = split.scheme.lower() if split.scheme else "https"
    netloc = split.netloc.lower()
    path = split.path.rstrip("/") or "/"
    query_params = parse_qsl(split.query, keep_blank_values=True)
    query = urlencode(sorted(query_params)) if query_params else ""
    return urlunsplit((scheme, netloc, path, query, ""))


def stable_id_from_url(url: str) -> str:
    return hashlib.sha256(normalize_url(url).encode("utf-8")).hexdigest()


def format_price(value: int | float | None) -> str:
    if value is None:
        return "-"
    return f"{int(value):,}"


def parse_iso(value: str) -> datetime:
    if value.endswith("Z"):
        value = value.replace("Z", "+00:00")
    return datetime.fromisoformat(value).astimezone(timezone.utc)


def utc_now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def utc_now_iso_offset(*, seconds: int) -> str:
    return (datetime.now(tz=timezone.utc) + timedelta(seconds=seconds)).isoformat()
