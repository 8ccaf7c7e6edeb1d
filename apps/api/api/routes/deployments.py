from __future__ import annotations

import asyncio
import json
import queue
import time
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

from api.schemas.deployment_job import (
    AppDeployRequest,
    ApplyRequest,
    DeploymentCancelOut,
    DeploymentCreateOut,
    DestroyRequest,
    JobView,
)
from services.deploy_engine import DeploymentOrchestrator
from services.deploy_engine.errors import (
    DeployEngineError,
    JobNotFoundError,
    ValidationError,
)
from services.deploy_engine.types import TERMINAL_STATUSES
from services.deploy_engine.util import utc_iso

router = APIRouter(prefix="/deployments", tags=["deployments"])


@lru_cache(maxsize=1)
def _engine() -> DeploymentOrchestrator:
    """
    Lazy singleton to avoid side effects on import time (e.g. filesystem writes).
    """
    return DeploymentOrchestrator()


def _http_error(exc: DeployEngineError) -> HTTPException:
    if isinstance(exc, JobNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=409, detail=str(exc))


@router.post("/apply", response_model=DeploymentCreateOut)
async def create_apply(req: ApplyRequest) -> DeploymentCreateOut:
    """
    Create an infrastructure job and run init -> plan -> apply in the background.

    Connection secrets are only held in memory for the lifetime of the run.
    """
    engine = _engine()
    metadata = dict(req.metadata)
    metadata.update({"provider": req.provider, "action": "apply"})
    try:
        job_id = engine.create_job("infrastructure", req.workspace_id, metadata)
        engine.start_apply(
            job_id, req.provider, req.workspace_id, req.files, req.connection
        )
    except DeployEngineError as exc:
        raise _http_error(exc)
    return DeploymentCreateOut(job_id=job_id)


@router.post("/destroy", response_model=DeploymentCreateOut)
async def create_destroy(req: DestroyRequest) -> DeploymentCreateOut:
    engine = _engine()
    metadata = dict(req.metadata)
    metadata.update({"provider": req.provider, "action": "destroy"})
    try:
        job_id = engine.create_job("infrastructure", req.workspace_id, metadata)
        engine.start_destroy(job_id, req.provider, req.workspace_id, req.connection)
    except DeployEngineError as exc:
        raise _http_error(exc)
    return DeploymentCreateOut(job_id=job_id)


@router.post("/app", response_model=DeploymentCreateOut)
async def create_app_deploy(req: AppDeployRequest) -> DeploymentCreateOut:
    engine = _engine()
    try:
        job_id = engine.create_job(
            "application",
            req.workspace_id,
            {"source_type": req.source_type, "target": req.target, "branch": req.branch},
        )
        engine.start_app_deploy(job_id, req.source_type, req.target, req.branch)
    except DeployEngineError as exc:
        raise _http_error(exc)
    return DeploymentCreateOut(job_id=job_id)


@router.get("/workspace/{workspace_id}/latest", response_model=Optional[JobView])
def latest_deployment(workspace_id: str) -> Optional[JobView]:
    return _engine().latest_job(workspace_id)


@router.get("/{job_id}", response_model=JobView)
def get_deployment(job_id: str) -> JobView:
    try:
        return _engine().get_job(job_id)
    except DeployEngineError as exc:
        raise _http_error(exc)


@router.post("/{job_id}/cancel", response_model=DeploymentCancelOut)
def cancel_deployment(job_id: str) -> DeploymentCancelOut:
    try:
        ok = _engine().cancel(job_id)
    except DeployEngineError as exc:
        raise _http_error(exc)
    return DeploymentCancelOut(ok=ok)


def _sse_event(event: str, data: str) -> str:
    lines = data.splitlines() if data else [""]
    payload = [f"event: {event}"]
    payload.extend(f"data: {line}" for line in lines)
    return "\n".join(payload) + "\n\n"


def _status_payload(view: JobView) -> str:
    return json.dumps(
        {
            "job_id": view.job_id,
            "status": view.status,
            "stage": view.stage,
            "started_at": view.start_time,
            "finished_at": view.finished_at,
            "timestamp": utc_iso(),
        },
        ensure_ascii=False,
    )


@router.get("/{job_id}/logs")
async def stream_logs(job_id: str, request: Request) -> StreamingResponse:
    """
    Stream job logs via Server-Sent Events (SSE).

    Events:
      - log:    one JSON-encoded log entry (already redacted)
      - status: status or stage changes
      - done:   terminal status

    The full record is replayed first; live entries follow. Timestamps are
    strictly increasing per job, which is what de-duplicates the two.
    """
    engine = _engine()
    q, _backlog = engine.subscribe_logs(job_id)
    try:
        view = engine.get_job(job_id)
    except DeployEngineError as exc:
        engine.unsubscribe_logs(job_id, q)
        raise _http_error(exc)

    async def event_stream():
        last = (view.status, view.stage)
        last_ts = view.logs[-1].timestamp if view.logs else ""
        terminal_since: float | None = None
        last_heartbeat = time.monotonic()

        yield _sse_event("status", _status_payload(view))

        try:
            for entry in view.logs:
                yield _sse_event("log", json.dumps(entry.model_dump(), ensure_ascii=False))

            while True:
                if await request.is_disconnected():
                    break

                new_data = False
                while True:
                    try:
                        item = q.get_nowait()
                    except queue.Empty:
                        break
                    data = item.to_dict()
                    if data["timestamp"] <= last_ts:
                        continue
                    last_ts = data["timestamp"]
                    new_data = True
                    yield _sse_event("log", json.dumps(data, ensure_ascii=False))

                current = engine.get_job(job_id)
                if (current.status, current.stage) != last:
                    last = (current.status, current.stage)
                    yield _sse_event("status", _status_payload(current))

                if current.status in TERMINAL_STATUSES:
                    if terminal_since is None:
                        terminal_since = time.monotonic()
                    if not new_data and (time.monotonic() - terminal_since) >= 0.5:
                        yield _sse_event(
                            "done",
                            json.dumps(
                                {
                                    "job_id": job_id,
                                    "status": current.status,
                                    "finished_at": current.finished_at,
                                    "timestamp": utc_iso(),
                                },
                                ensure_ascii=False,
                            ),
                        )
                        break
                else:
                    terminal_since = None

                if time.monotonic() - last_heartbeat >= 10:
                    last_heartbeat = time.monotonic()
                    yield ": keep-alive\n\n"

                await asyncio.sleep(0.2)
        finally:
            engine.unsubscribe_logs(job_id, q)

    headers = {
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
    }
    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers=headers,
    )
