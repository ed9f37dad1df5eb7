from __future__ import annotations

import argparse
import json
import logging
import os
from typing import Any

import yaml

from .config import ConfigError, get_runtime_config, load_runtime_config
from .crawler import CrawlError, RangeSplitCrawler, initial_range
from .orchestrator import ImportNotFoundError, ImportOrchestrator, InvalidTransitionError
from .source import HttpSearchSource, QueryDefinition, SearchSource, SourceError
from .storage import init_db
from .utils import configure_logging, log_event


def _setup_logging() -> logging.Logger:
    return configure_logging("pricesweep")


def load_schedules_file(path: str) -> list[dict[str, Any]]:
    """Read schedules from YAML: a list, or a mapping with a ``schedules`` list."""
    if not os.path.exists(path):
        raise ConfigError(f"schedules file not found: {path}")
    with open(path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or []
    if isinstance(data, dict):
        data = data.get("schedules") or []
    if not isinstance(data, list):
        raise ConfigError("schedules file must contain a list of schedules")
    schedules = []
    for index, entry in enumerate(data):
        if not isinstance(entry, dict):
            raise ConfigError(f"schedule #{index} must be a mapping")
        name = entry.get("name")
        query = entry.get("query") or ({"url": entry["url"]} if entry.get("url") else None)
        if not name or not query:
            raise ConfigError(f"schedule #{index} requires name and url or query")
        schedules.append({"name": str(name), "query": query})
    return schedules


def _open_orchestrator(
    args: argparse.Namespace, logger: logging.Logger, source: SearchSource | None = None
) -> ImportOrchestrator:
    conn = init_db(args.db)
    return ImportOrchestrator.from_runtime(conn, source=source, logger=logger)


def _query_from_args(args: argparse.Namespace) -> QueryDefinition:
    if args.query_json:
        return QueryDefinition.from_dict(json.loads(args.query_json))
    return QueryDefinition.from_url(args.url)


def _print_json(value: Any) -> None:
    print(json.dumps(value, indent=2, sort_keys=True, default=str))


def _cmd_import_submit(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        query = _query_from_args(args)
    except ValueError as exc:
        log_event(logger, logging.ERROR, "invalid_query", error=str(exc))
        return 1
    orchestrator = _open_orchestrator(args, logger)
    import_id = orchestrator.create_import(query)
    if args.advance:
        _print_json(orchestrator.advance(import_id))
    else:
        _print_json({"id": import_id})
    return 0


def _cmd_import_status(args: argparse.Namespace, logger: logging.Logger) -> int:
    orchestrator = _open_orchestrator(args, logger)
    _print_json(orchestrator.status(args.import_id, include_chunks=args.chunks))
    return 0


def _cmd_import_advance(args: argparse.Namespace, logger: logging.Logger) -> int:
    orchestrator = _open_orchestrator(args, logger)
    _print_json(orchestrator.advance(args.import_id))
    return 0


def _cmd_import_cancel(args: argparse.Namespace, logger: logging.Logger) -> int:
    orchestrator = _open_orchestrator(args, logger)
    _print_json(orchestrator.cancel(args.import_id))
    return 0


def _cmd_import_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    orchestrator = _open_orchestrator(args, logger)
    for summary in orchestrator.list_imports(limit=args.limit):
        log_event(
            logger,
            logging.INFO,
            "import",
            import_id=summary["id"],
            status=summary["status"],
            percent=summary["percent"],
            processed=summary["processed"],
            total=summary["total"],
            error=summary["error_message"],
        )
    return 0


def _cmd_crawl(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        query = _query_from_args(args)
    except ValueError as exc:
        log_event(logger, logging.ERROR, "invalid_query", error=str(exc))
        return 1
    conn = init_db(args.db)
    config = load_runtime_config(conn)
    crawler = RangeSplitCrawler(HttpSearchSource.from_config(config), config.crawl, logger=logger)
    try:
        result = crawler.crawl(query, initial_range(query, config.source.default_max_price))
    except (CrawlError, SourceError) as exc:
        log_event(logger, logging.ERROR, "crawl_failed", error=str(exc))
        return 1
    output = result.stats_dict()
    output["items"] = len(result.items)
    _print_json(output)
    return 0


def _cmd_schedules_add(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        query = _query_from_args(args)
    except ValueError as exc:
        log_event(logger, logging.ERROR, "invalid_query", error=str(exc))
        return 1
    orchestrator = _open_orchestrator(args, logger)
    schedule = orchestrator.create_schedule(args.name, query)
    _print_json({"id": schedule.id, "status": schedule.status})
    return 0


def _cmd_schedules_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    orchestrator = _open_orchestrator(args, logger)
    for schedule in orchestrator.list_schedules():
        log_event(
            logger,
            logging.INFO,
            "schedule",
            schedule_id=schedule.id,
            name=schedule.name,
            status=schedule.status,
            import_job_id=schedule.import_job_id,
            error=schedule.error_message,
        )
    return 0


def _cmd_schedules_retry(args: argparse.Namespace, logger: logging.Logger) -> int:
    orchestrator = _open_orchestrator(args, logger)
    schedule = orchestrator.retry_schedule(args.schedule_id)
    _print_json({"id": schedule.id, "status": schedule.status, "import_job_id": schedule.import_job_id})
    return 0


def _cmd_schedules_process(args: argparse.Namespace, logger: logging.Logger) -> int:
    orchestrator = _open_orchestrator(args, logger)
    result = orchestrator.process_schedules()
    while args.drain and result["continue_polling"]:
        result = orchestrator.process_schedules()
    _print_json(result)
    return 0


def _cmd_schedules_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        entries = load_schedules_file(args.path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "schedules_import_error", error=str(exc))
        return 1
    orchestrator = _open_orchestrator(args, logger)
    existing = {schedule.name for schedule in orchestrator.list_schedules()}
    created = 0
    for entry in entries:
        if entry["name"] in existing:
            log_event(logger, logging.INFO, "schedule_exists", name=entry["name"])
            continue
        try:
            orchestrator.create_schedule(entry["name"], entry["query"])
        except ValueError as exc:
            log_event(
                logger, logging.ERROR, "schedules_import_error", name=entry["name"], error=str(exc)
            )
            continue
        created += 1
    log_event(logger, logging.INFO, "schedules_imported", created=created, total=len(entries))
    return 0


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    conn.close()
    log_event(logger, logging.INFO, "db_migrated")
    return 0


def _cmd_config_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    _print_json(get_runtime_config(conn))
    return 0


def _add_query_args(parser: argparse.ArgumentParser) -> None:
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--url", help="Full search URL")
    group.add_argument("--query-json", help="Query definition as JSON")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pricesweep", description="PriceSweep CLI")
    parser.add_argument(
        "--db",
        dest="db",
        default=None,
        help="Path to the state database (defaults to $PS_DATA_DIR/state.sqlite3)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    import_parser = subparsers.add_parser("import", help="Import job commands")
    import_subparsers = import_parser.add_subparsers(dest="import_command", required=True)

    import_submit = import_subparsers.add_parser("submit", help="Create a pending import")
    _add_query_args(import_submit)
    import_submit.add_argument("--advance", action="store_true", help="Plan immediately")
    import_submit.set_defaults(func=_cmd_import_submit)

    import_status = import_subparsers.add_parser("status", help="Show import progress")
    import_status.add_argument("import_id")
    import_status.add_argument("--chunks", action="store_true", help="Include chunk results")
    import_status.set_defaults(func=_cmd_import_status)

    import_advance = import_subparsers.add_parser("advance", help="Run one advance step")
    import_advance.add_argument("import_id")
    import_advance.set_defaults(func=_cmd_import_advance)

    import_cancel = import_subparsers.add_parser("cancel", help="Cancel an import")
    import_cancel.add_argument("import_id")
    import_cancel.set_defaults(func=_cmd_import_cancel)

    import_list = import_subparsers.add_parser("list", help="List recent imports")
    import_list.add_argument("--limit", type=int, default=20)
    import_list.set_defaults(func=_cmd_import_list)

    crawl_parser = subparsers.add_parser("crawl", help="Dry-run crawl and print split stats")
    _add_query_args(crawl_parser)
    crawl_parser.set_defaults(func=_cmd_crawl)

    schedules_parser = subparsers.add_parser("schedules", help="Manage schedules")
    schedules_subparsers = schedules_parser.add_subparsers(dest="schedules_command", required=True)

    schedules_add = schedules_subparsers.add_parser("add", help="Add a schedule")
    schedules_add.add_argument("--name", required=True)
    _add_query_args(schedules_add)
    schedules_add.set_defaults(func=_cmd_schedules_add)

    schedules_list = schedules_subparsers.add_parser("list", help="List schedules")
    schedules_list.set_defaults(func=_cmd_schedules_list)

    schedules_retry = schedules_subparsers.add_parser("retry", help="Reset a schedule to pending")
    schedules_retry.add_argument("schedule_id")
    schedules_retry.set_defaults(func=_cmd_schedules_retry)

    schedules_process = schedules_subparsers.add_parser(
        "process", help="Run one step of the schedule queue"
    )
    schedules_process.add_argument(
        "--drain", action="store_true", help="Keep stepping until nothing is left"
    )
    schedules_process.set_defaults(func=_cmd_schedules_process)

    schedules_import = schedules_subparsers.add_parser("import", help="Import schedules from YAML")
    schedules_import.add_argument("path", help="Path to schedules YAML file")
    schedules_import.set_defaults(func=_cmd_schedules_import)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)

    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    config_parser = subparsers.add_parser("config", help="Runtime configuration")
    config_subparsers = config_parser.add_subparsers(dest="config_command", required=True)

    config_show = config_subparsers.add_parser("show", help="Print the runtime config")
    config_show.set_defaults(func=_cmd_config_show)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    try:
        return args.func(args, logger)
    except (ConfigError, ImportNotFoundError, InvalidTransitionError) as exc:
        log_event(logger, logging.ERROR, "command_failed", command=args.command, error=str(exc))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
