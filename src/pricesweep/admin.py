from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .config import (
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    get_state_db_path,
    set_runtime_config,
)
from .orchestrator import ImportNotFoundError, ImportOrchestrator, InvalidTransitionError
from .source import SearchSource
from .storage import init_db
from .utils import configure_logging, log_event

app = FastAPI(title="PriceSweep Job API")
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

logger = logging.getLogger("pricesweep.admin")


class ImportRequest(BaseModel):
    query_definition: dict[str, Any]


class ScheduleRequest(BaseModel):
    name: str = Field(min_length=1)
    query_definition: dict[str, Any]


class RuntimeConfigRequest(BaseModel):
    config: dict


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("PS_ADMIN_TOKEN")
    if not token:
        return
    if request.headers.get("X-Admin-Token") != token:
        raise HTTPException(status_code=401, detail="unauthorized")


def get_source() -> SearchSource | None:
    """Source used by orchestrator endpoints; None builds the HTTP source from config."""
    return None


@app.exception_handler(ImportNotFoundError)
async def _not_found_handler(request: Request, exc: ImportNotFoundError) -> JSONResponse:
    return JSONResponse({"detail": f"not_found: {exc}"}, status_code=404)


@app.exception_handler(InvalidTransitionError)
async def _conflict_handler(request: Request, exc: InvalidTransitionError) -> JSONResponse:
    return JSONResponse({"detail": str(exc)}, status_code=409)


@app.exception_handler(ConfigError)
async def _config_error_handler(request: Request, exc: ConfigError) -> JSONResponse:
    return JSONResponse({"detail": str(exc)}, status_code=400)


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "PriceSweep Job API"}


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.get("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_get() -> dict[str, object]:
    conn = _get_conn()
    try:
        return {"config": get_runtime_config(conn)}
    finally:
        conn.close()


@app.put("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_set(payload: RuntimeConfigRequest) -> dict[str, object]:
    conn = _get_conn()
    try:
        set_runtime_config(conn, payload.config)
    finally:
        conn.close()
    log_event(logger, logging.INFO, "runtime_config_updated")
    return {"status": "ok"}


@app.post("/import", dependencies=[Depends(_require_admin_token)])
def import_create(
    payload: ImportRequest, source: SearchSource | None = Depends(get_source)
) -> dict[str, object]:
    orchestrator = _get_orchestrator(source)
    try:
        try:
            import_id = orchestrator.create_import(payload.query_definition)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"id": import_id, "status": orchestrator.status(import_id)["status"]}
    finally:
        orchestrator.conn.close()


@app.get("/import")
def import_list(
    limit: int = 50, source: SearchSource | None = Depends(get_source)
) -> list[dict[str, object]]:
    orchestrator = _get_orchestrator(source)
    try:
        return orchestrator.list_imports(limit=limit)
    finally:
        orchestrator.conn.close()


@app.get("/import/{import_id}")
def import_status(
    import_id: str,
    include_chunks: bool = False,
    source: SearchSource | None = Depends(get_source),
) -> dict[str, object]:
    orchestrator = _get_orchestrator(source)
    try:
        return orchestrator.status(import_id, include_chunks=include_chunks)
    finally:
        orchestrator.conn.close()


@app.post("/import/{import_id}/advance", dependencies=[Depends(_require_admin_token)])
def import_advance(
    import_id: str, source: SearchSource | None = Depends(get_source)
) -> dict[str, object]:
    orchestrator = _get_orchestrator(source)
    try:
        return orchestrator.advance(import_id)
    finally:
        orchestrator.conn.close()


@app.post("/import/{import_id}/cancel", dependencies=[Depends(_require_admin_token)])
def import_cancel(
    import_id: str, source: SearchSource | None = Depends(get_source)
) -> dict[str, object]:
    orchestrator = _get_orchestrator(source)
    try:
        return orchestrator.cancel(import_id)
    finally:
        orchestrator.conn.close()


@app.post("/schedules", dependencies=[Depends(_require_admin_token)])
def schedules_create(
    payload: ScheduleRequest, source: SearchSource | None = Depends(get_source)
) -> dict[str, object]:
    orchestrator = _get_orchestrator(source)
    try:
        try:
            schedule = orchestrator.create_schedule(payload.name, payload.query_definition)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _schedule_to_dict(schedule)
    finally:
        orchestrator.conn.close()


@app.get("/schedules")
def schedules_list(source: SearchSource | None = Depends(get_source)) -> list[dict[str, object]]:
    orchestrator = _get_orchestrator(source)
    try:
        return [_schedule_to_dict(schedule) for schedule in orchestrator.list_schedules()]
    finally:
        orchestrator.conn.close()


@app.post("/schedules/process", dependencies=[Depends(_require_admin_token)])
def schedules_process(source: SearchSource | None = Depends(get_source)) -> dict[str, object]:
    orchestrator = _get_orchestrator(source)
    try:
        return orchestrator.process_schedules()
    finally:
        orchestrator.conn.close()


@app.post("/schedules/{schedule_id}/retry", dependencies=[Depends(_require_admin_token)])
def schedules_retry(
    schedule_id: str, source: SearchSource | None = Depends(get_source)
) -> dict[str, object]:
    orchestrator = _get_orchestrator(source)
    try:
        return _schedule_to_dict(orchestrator.retry_schedule(schedule_id))
    finally:
        orchestrator.conn.close()


def _schedule_to_dict(schedule) -> dict[str, object]:
    return {
        "id": schedule.id,
        "name": schedule.name,
        "query_definition": schedule.query_definition,
        "status": schedule.status,
        "import_job_id": schedule.import_job_id,
        "discovery_completed": schedule.discovery_completed,
        "details_completed": schedule.details_completed,
        "error_message": schedule.error_message,
        "created_at": schedule.created_at,
        "updated_at": schedule.updated_at,
        "started_at": schedule.started_at,
        "finished_at": schedule.finished_at,
    }


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("pricesweep")
    except Exception:  # noqa: BLE001
        return "unknown"


def _get_conn():
    conn = init_db(get_state_db_path())
    bootstrap_runtime_config(conn)
    return conn


def _get_orchestrator(source: SearchSource | None) -> ImportOrchestrator:
    conn = _get_conn()
    try:
        return ImportOrchestrator.from_runtime(conn, source=source, logger=logger)
    except ConfigError:
        conn.close()
        raise


def main() -> int:
    configure_logging("pricesweep.admin")
    uvicorn.run(
        app,
        host=os.environ.get("PS_API_HOST", "0.0.0.0"),
        port=int(os.environ.get("PS_API_PORT", "8080")),
        proxy_headers=True,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
