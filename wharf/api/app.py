"""HTTP API — FastAPI + WebSocket control surface for the orchestrator.

`wharf serve` launches this at localhost:8430. Every route under
/api/workloads maps onto one orchestrator operation; /ws/events streams
log, status and port events live.
"""

from __future__ import annotations

import time
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from wharf import __version__
from wharf.events.bus import Event, EventBus
from wharf.exceptions import (
    CloneFailureError,
    ProcessNotFoundError,
    WharfError,
    WorkloadNotFoundError,
    WorkloadStateError,
)
from wharf.types import ConfigPatch, RegisterOptions, WorkloadStatus
from wharf.workloads.orchestrator import WorkloadOrchestrator

api_app = FastAPI(title="wharf", version=__version__)

_orchestrator: WorkloadOrchestrator | None = None
_event_bus: EventBus | None = None
_start_time = time.time()


def configure(orchestrator: WorkloadOrchestrator | None = None, event_bus: EventBus | None = None) -> None:
    global _orchestrator, _event_bus
    _orchestrator = orchestrator
    _event_bus = event_bus


def _not_ready() -> JSONResponse:
    return JSONResponse({"error": "wharf is not initialized"}, status_code=503)


def _error(e: WharfError) -> JSONResponse:
    if isinstance(e, (WorkloadNotFoundError, ProcessNotFoundError)):
        code = 404
    elif isinstance(e, WorkloadStateError):
        code = 409
    elif isinstance(e, CloneFailureError):
        code = 502
    else:
        code = 400
    return JSONResponse({"error": str(e), "type": type(e).__name__}, status_code=code)


@api_app.exception_handler(WharfError)
async def _wharf_error_handler(request, exc: WharfError) -> JSONResponse:
    return _error(exc)


# ── Payloads ─────────────────────────────────────────────────────

class RegisterPayload(RegisterOptions):
    source_url: str


class StatusPayload(BaseModel):
    status: WorkloadStatus


# ── Status ───────────────────────────────────────────────────────

@api_app.get("/api/status")
async def system_status() -> dict:
    workloads = _orchestrator.list_workloads() if _orchestrator else []
    return {
        "version": __version__,
        "workloads_total": len(workloads),
        "workloads_running": sum(1 for w in workloads if w.status == WorkloadStatus.RUNNING),
        "event_subscribers": _event_bus.subscriber_count if _event_bus else 0,
        "ws_connections": _event_bus.ws_connection_count if _event_bus else 0,
        "uptime_s": int(time.time() - _start_time),
    }


@api_app.get("/api/events")
async def list_events(topic: str = "*", limit: int = 50, workload_id: str | None = None) -> list[dict]:
    if _event_bus is None:
        return []
    events = _event_bus.history(topic_filter=topic, limit=limit, workload_id=workload_id)
    return [e.model_dump(mode="json") for e in events]


# ── Workloads ────────────────────────────────────────────────────

@api_app.get("/api/workloads")
async def list_workloads() -> Any:
    if _orchestrator is None:
        return _not_ready()
    return [w.model_dump(mode="json") for w in _orchestrator.list_workloads()]


@api_app.post("/api/workloads", status_code=201)
async def register_workload(payload: RegisterPayload) -> Any:
    if _orchestrator is None:
        return _not_ready()
    options = RegisterOptions(**payload.model_dump(exclude={"source_url"}))
    workload = await _orchestrator.register(payload.source_url, options)
    return workload.model_dump(mode="json")


@api_app.get("/api/workloads/{workload_id}")
async def get_workload(workload_id: str) -> Any:
    if _orchestrator is None:
        return _not_ready()
    workload = _orchestrator.get_workload(workload_id)
    data = workload.model_dump(mode="json")
    data["port"] = _orchestrator.get_port(workload_id)
    return data


@api_app.patch("/api/workloads/{workload_id}")
async def update_workload(workload_id: str, patch: ConfigPatch) -> Any:
    if _orchestrator is None:
        return _not_ready()
    workload = await _orchestrator.update_config(workload_id, patch)
    return workload.model_dump(mode="json")


@api_app.delete("/api/workloads/{workload_id}")
async def delete_workload(workload_id: str) -> Any:
    if _orchestrator is None:
        return _not_ready()
    await _orchestrator.delete(workload_id)
    return {"ok": True, "workload_id": workload_id}


@api_app.post("/api/workloads/{workload_id}/start")
async def start_workload(workload_id: str) -> Any:
    if _orchestrator is None:
        return _not_ready()
    workload = await _orchestrator.start(workload_id)
    return workload.model_dump(mode="json")


@api_app.post("/api/workloads/{workload_id}/stop")
async def stop_workload(workload_id: str) -> Any:
    if _orchestrator is None:
        return _not_ready()
    workload = await _orchestrator.stop(workload_id)
    return workload.model_dump(mode="json")


@api_app.post("/api/workloads/{workload_id}/rebuild")
async def rebuild_workload(workload_id: str) -> Any:
    if _orchestrator is None:
        return _not_ready()
    workload = await _orchestrator.rebuild(workload_id)
    return workload.model_dump(mode="json")


@api_app.post("/api/workloads/{workload_id}/status")
async def set_workload_status(workload_id: str, payload: StatusPayload) -> Any:
    if _orchestrator is None:
        return _not_ready()
    workload = await _orchestrator.set_status(workload_id, payload.status)
    return workload.model_dump(mode="json")


@api_app.get("/api/workloads/{workload_id}/logs")
async def workload_logs(workload_id: str, limit: int = 1000) -> Any:
    if _orchestrator is None:
        return _not_ready()
    entries = await _orchestrator.get_logs(workload_id, limit=max(1, limit))
    return [e.model_dump(mode="json") for e in entries]


@api_app.get("/api/workloads/{workload_id}/port")
async def workload_port(workload_id: str) -> Any:
    if _orchestrator is None:
        return _not_ready()
    return {"workload_id": workload_id, "port": _orchestrator.get_port(workload_id)}


# ── Batch ────────────────────────────────────────────────────────

@api_app.post("/api/actions/start-all")
async def start_all() -> Any:
    if _orchestrator is None:
        return _not_ready()
    results = await _orchestrator.start_all()
    return {wid: r.model_dump() for wid, r in results.items()}


@api_app.post("/api/actions/stop-all")
async def stop_all() -> Any:
    if _orchestrator is None:
        return _not_ready()
    results = await _orchestrator.stop_all()
    return {wid: r.model_dump() for wid, r in results.items()}


# ── Orphans ──────────────────────────────────────────────────────

@api_app.get("/api/orphans")
async def list_orphans() -> Any:
    if _orchestrator is None:
        return _not_ready()
    orphans = await _orchestrator.list_orphan_processes()
    return [asdict(o) for o in orphans]


@api_app.delete("/api/orphans/{pid}")
async def kill_orphan(pid: int) -> Any:
    if _orchestrator is None:
        return _not_ready()
    orphan = await _orchestrator.kill_orphan(pid)
    return {
        "ok": True,
        "pid": pid,
        "workload_id": orphan.workload_id if orphan else None,
    }


# ── WebSocket: live event stream ──────────────────────────────────

@api_app.websocket("/ws/events")
async def ws_events(websocket: WebSocket) -> None:
    await websocket.accept()

    async def send_event(event: Event) -> None:
        await websocket.send_json(event.model_dump(mode="json"))

    if _event_bus:
        _event_bus.add_ws_connection(send_event)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        if _event_bus:
            _event_bus.remove_ws_connection(send_event)
