#!/usr/bin/env python3
"""Local Endpoint Doctor Server (FastAPI).

Local service wrapping the evaluation/remediation engine.
- Stateless evaluate / plan / compare endpoints
- Plans are always rebuilt from the posted snapshot before they run
- Background run jobs with WebSocket progress events and bounded retention
- Execution requires explicit confirmation

Default host is 127.0.0.1 (localhost-only).
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import os
import threading
import time
import uuid
from collections import OrderedDict, deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Sequence

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from endpoint_doctor.comparator import compare, verify
from endpoint_doctor.config import (
    APP_VERSION,
    DEFAULT_LOG_FILE,
    env_float,
    env_str,
    load_execution_policy,
    now_utc_iso,
    setup_logger,
)
from endpoint_doctor.evaluator import evaluate, health_label
from endpoint_doctor.events import ACTION_FINISHED, RUN_COMPLETED, ActionEvent, EventBus, LoggingObserver
from endpoint_doctor.executor import AUTOMATED_KEYS, ActionExecutor
from endpoint_doctor.models import ExecutionResult, OptimizationAction, actions_from_list, sort_issues
from endpoint_doctor.planner import (
    DURATION_BY_KEY,
    build_plan,
    cleanup_roots,
    manual_actions,
    reconcile_plan,
    select_actions,
)
from endpoint_doctor.snapshot import Snapshot
from endpoint_doctor.system_control import LocalSystemControl, SystemControl


LOGGER = setup_logger(Path(env_str("LOG", str(DEFAULT_LOG_FILE))))
APP_LOOP: asyncio.AbstractEventLoop | None = None

LISTENER_QUEUE_SIZE = 100


def build_system_control() -> SystemControl:
    return LocalSystemControl(logger=LOGGER)


# ---------------------------- API Models ------------------------------------ #


class SnapshotRequest(BaseModel):
    snapshot: dict[str, Any] = Field(default_factory=dict)


class RunRequest(BaseModel):
    snapshot: dict[str, Any]
    # An edited plan from /plan; only its selections are applied.
    actions: list[dict[str, Any]] | None = None
    only: list[str] | None = None
    confirm: bool = False


class CompareRequest(BaseModel):
    before: dict[str, Any]
    after: dict[str, Any]
    result: list[dict[str, Any]] | None = None


# ---------------------------- Response Helpers ------------------------------ #


def api_ok(data: Any, *, meta: dict[str, Any] | None = None, warnings: list[str] | None = None) -> JSONResponse:
    body = {
        "status": "ok",
        "timestamp": now_utc_iso(),
        "meta": meta or {},
        "warnings": warnings or [],
        "data": data,
    }
    return JSONResponse(body)


def api_error(code: str, message: str, status_code: int = 400, details: dict[str, Any] | None = None) -> JSONResponse:
    body = {
        "status": "error",
        "timestamp": now_utc_iso(),
        "error": {
            "code": code,
            "message": message,
            "details": details or {},
        },
    }
    return JSONResponse(body, status_code=status_code)


# ------------------------------ Request Budget ------------------------------ #


class RequestBudget:
    """Per-client request budget over a sliding window.

    Clients without a request inside the window are forgotten, so the table
    only holds recently active addresses.
    """

    def __init__(self, limit: int = 120, window_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        if limit < 1 or window_seconds <= 0:
            raise ValueError("limit and window_seconds must be positive")
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()

    @property
    def tracked_clients(self) -> int:
        with self._lock:
            return len(self._hits)

    def allow(self, client: str) -> bool:
        now = self._clock()
        cutoff = now - self.window_seconds
        with self._lock:
            for idle in [key for key, hits in self._hits.items() if hits[-1] <= cutoff]:
                del self._hits[idle]
            hits = self._hits.get(client)
            if hits is None:
                self._hits[client] = deque([now])
                return True
            while hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= self.limit:
                return False
            hits.append(now)
            return True


RATE_LIMITER = RequestBudget()


# --------------------------------- Run Jobs --------------------------------- #

QUEUED = "queued"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
FINISHED = frozenset({COMPLETED, FAILED})


def progress_for(event: ActionEvent) -> dict[str, Any]:
    """Job progress after an executor event; a completed run reports 100%."""
    if event.event == RUN_COMPLETED:
        pct = 100.0
    elif event.total:
        done = event.index if event.event == ACTION_FINISHED else max(0, event.index - 1)
        pct = round(done * 100.0 / event.total, 1)
    else:
        pct = 0.0
    return {
        "phase": event.event,
        "pct": pct,
        "step": event.index,
        "total": event.total,
        "action_key": event.action_key,
    }


@dataclass
class RunJob:
    job_id: str
    automatable: int
    selected: list[str]
    status: str = QUEUED
    created_at: str = field(default_factory=now_utc_iso)
    updated_at: str = field(default_factory=now_utc_iso)
    progress: dict[str, Any] = field(default_factory=lambda: {"phase": QUEUED, "pct": 0.0, "step": 0})
    result: ExecutionResult | None = None
    error: str | None = None

    @property
    def finished(self) -> bool:
        return self.status in FINISHED

    def to_dict(self, with_result: bool = False) -> dict[str, Any]:
        data = {
            "job_id": self.job_id,
            "status": self.status,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "automatable": self.automatable,
            "selected": list(self.selected),
            "progress": dict(self.progress),
            "error": self.error,
        }
        if with_result:
            data["result"] = self.result.to_dict() if self.result else None
        return data


ExecutorFactory = Callable[[EventBus], ActionExecutor]


class RunJobRegistry:
    """Background plan runs and their WebSocket listeners.

    One worker thread runs one plan at a time since plans change shared
    machine state. Finished jobs beyond `retention` are dropped oldest first,
    together with their listener queues.
    """

    def __init__(self, retention: int = 50):
        if retention < 1:
            raise ValueError("retention must be at least 1")
        self.retention = retention
        self._worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix="endpoint-doctor-run")
        self._jobs: OrderedDict[str, RunJob] = OrderedDict()
        self._listeners: dict[str, set[asyncio.Queue]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def describe(self, job_id: str, with_result: bool = False) -> dict[str, Any] | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.to_dict(with_result) if job else None

    def list_jobs(self) -> list[dict[str, Any]]:
        with self._lock:
            return [job.to_dict() for job in self._jobs.values()]

    def listener_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._listeners.get(job_id, ()))

    def start(self, plan: Sequence[OptimizationAction], build_executor: ExecutorFactory) -> RunJob:
        plan = list(plan)
        job = RunJob(
            job_id=uuid.uuid4().hex,
            automatable=sum(1 for a in plan if a.is_automatable),
            selected=[a.action_key for a in plan if a.is_automatable and a.selected],
        )
        with self._lock:
            self._jobs[job.job_id] = job
        LOGGER.info("run_job_queued job=%s selected=%s", job.job_id, ",".join(job.selected) or "-")
        self._worker.submit(self._run, job, plan, build_executor)
        return job

    def _run(self, job: RunJob, plan: list[OptimizationAction], build_executor: ExecutorFactory) -> None:
        with self._lock:
            job.status = RUNNING
            job.updated_at = now_utc_iso()
        self._broadcast(job.job_id, {"event": RUNNING, "job_id": job.job_id})

        bus = EventBus(LOGGER)
        bus.subscribe(LoggingObserver(LOGGER))
        bus.subscribe(lambda event: self._on_event(job, event))
        try:
            result = build_executor(bus).run(plan)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.exception("run_job_failed job=%s error=%s", job.job_id, exc)
            self._finish(job, error=str(exc) or exc.__class__.__name__)
            return
        LOGGER.info(
            "run_job_completed job=%s run=%s freed_mb=%s failures=%s",
            job.job_id, result.run_id, result.summary.total_freed_mb, result.summary.failure_count,
        )
        self._finish(job, result=result)

    def _on_event(self, job: RunJob, event: ActionEvent) -> None:
        progress = progress_for(event)
        with self._lock:
            job.progress = progress
            job.updated_at = now_utc_iso()
        self._broadcast(job.job_id, {"event": event.event, "job_id": job.job_id, "progress": progress,
                                     "action": event.to_dict()})

    def _finish(self, job: RunJob, result: ExecutionResult | None = None, error: str | None = None) -> None:
        with self._lock:
            job.result = result
            job.error = error
            job.status = FAILED if error is not None else COMPLETED
            job.updated_at = now_utc_iso()
            payload = {"event": job.status, "job_id": job.job_id, "job": job.to_dict(with_result=True)}
            listeners = list(self._listeners.get(job.job_id, ()))
            self._drop_expired_locked()
        self._deliver(listeners, payload)

    def _drop_expired_locked(self) -> None:
        finished = [job_id for job_id, job in self._jobs.items() if job.finished]
        for job_id in finished[: max(0, len(finished) - self.retention)]:
            del self._jobs[job_id]
            self._listeners.pop(job_id, None)
            LOGGER.info("run_job_expired job=%s", job_id)

    def listen(self, job_id: str) -> asyncio.Queue | None:
        queue: asyncio.Queue = asyncio.Queue(maxsize=LISTENER_QUEUE_SIZE)
        with self._lock:
            if job_id not in self._jobs:
                return None
            self._listeners.setdefault(job_id, set()).add(queue)
        return queue

    def stop_listening(self, job_id: str, queue: asyncio.Queue) -> None:
        with self._lock:
            queues = self._listeners.get(job_id)
            if queues is None:
                return
            queues.discard(queue)
            if not queues:
                del self._listeners[job_id]

    def _broadcast(self, job_id: str, payload: dict[str, Any]) -> None:
        with self._lock:
            listeners = list(self._listeners.get(job_id, ()))
        self._deliver(listeners, payload)

    @staticmethod
    def _deliver(listeners: list[asyncio.Queue], payload: dict[str, Any]) -> None:
        loop = APP_LOOP
        for queue in listeners:
            if loop is None or not loop.is_running():
                _offer(queue, payload)
                continue
            try:
                loop.call_soon_threadsafe(_offer, queue, payload)
            except RuntimeError as exc:
                LOGGER.warning("run_job_listener_unreachable error=%s", exc)


def _offer(queue: asyncio.Queue, payload: dict[str, Any]) -> None:
    """Enqueue for one listener; a full queue loses its oldest message."""
    if queue.full():
        queue.get_nowait()
    queue.put_nowait(payload)


RUNS = RunJobRegistry(retention=int(env_float("JOB_RETENTION", 50)))


# --------------------------------- App -------------------------------------- #


app = FastAPI(
    title="Endpoint Doctor Server",
    version=APP_VERSION,
    description="Local workstation health evaluation and remediation API.",
)


@app.on_event("startup")
async def _on_startup():
    global APP_LOOP
    APP_LOOP = asyncio.get_running_loop()


app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost",
        "http://127.0.0.1",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    client = request.client.host if request.client else "unknown"
    if not RATE_LIMITER.allow(client):
        return api_error("RATE_LIMITED", "Too many requests; slow down.", status_code=429)
    return await call_next(request)


@app.exception_handler(ValueError)
async def invalid_input_handler(_: Request, exc: ValueError):
    return api_error("INVALID_INPUT", str(exc), status_code=400)


@app.exception_handler(Exception)
async def unhandled_exception_handler(_: Request, exc: Exception):
    LOGGER.exception("Unhandled server error: %s", exc)
    return api_error("INTERNAL_SERVER_ERROR", str(exc), status_code=500)


# ---------------------------- Job Endpoints --------------------------------- #


@app.get("/api/v1/jobs", summary="List retained run jobs")
async def list_jobs():
    jobs = RUNS.list_jobs()
    return api_ok({"jobs": jobs}, meta={"retention": RUNS.retention, "count": len(jobs)})


@app.get("/api/v1/jobs/{job_id}", summary="Get run job status/progress")
async def get_job(job_id: str):
    job = RUNS.describe(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return api_ok(job)


@app.get("/api/v1/jobs/{job_id}/result", summary="Get run job result")
async def get_job_result(job_id: str):
    job = RUNS.describe(job_id, with_result=True)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    if job["status"] not in FINISHED:
        return api_ok({"job_id": job_id, "status": job["status"], "progress": job["progress"]})
    return api_ok(job)


@app.websocket("/api/v1/ws/jobs/{job_id}")
async def stream_run_job(websocket: WebSocket, job_id: str):
    await websocket.accept()
    queue = RUNS.listen(job_id)
    job = RUNS.describe(job_id, with_result=True) if queue is not None else None
    if queue is None or job is None:
        await websocket.send_json({"status": "error", "message": "job not found"})
        await websocket.close()
        return

    try:
        await websocket.send_json({"event": "connected", "job_id": job_id, "status": job["status"]})
        if job["status"] in FINISHED:
            await websocket.send_json({"event": job["status"], "job_id": job_id, "job": job})
            return
        while True:
            message = await queue.get()
            await websocket.send_json(message)
            if message["event"] in FINISHED:
                break
    except WebSocketDisconnect:
        LOGGER.info("run_job_listener_left job=%s", job_id)
    finally:
        RUNS.stop_listening(job_id, queue)
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await websocket.close()


# ---------------------------- Engine Endpoints ------------------------------ #


@app.post("/api/v1/evaluate", summary="Flag issues and compute the health score")
async def evaluate_snapshot(req: SnapshotRequest):
    snapshot = Snapshot.from_dict(req.snapshot)
    issues, score = evaluate(snapshot)
    return api_ok(
        {
            "health_score": score,
            "health_label": health_label(score),
            "issues": [i.to_dict() for i in sort_issues(issues)],
        }
    )


@app.post("/api/v1/plan", summary="Build a risk-classified remediation plan")
async def plan_snapshot(req: SnapshotRequest):
    snapshot = Snapshot.from_dict(req.snapshot)
    issues, score = evaluate(snapshot)
    plan = build_plan(snapshot, issues)
    manual = manual_actions(plan)
    return api_ok(
        {
            "health_score": score,
            "actions": [a.to_dict() for a in plan],
            "manual": [a.action_key for a in manual],
        },
        meta={"automatable": len(plan) - len(manual), "manual": len(manual)},
    )


@app.post("/api/v1/optimize/run", summary="Execute the snapshot's plan in the background (requires confirm)")
async def run_optimization(req: RunRequest):
    if not req.confirm:
        return api_error("CONFIRMATION_REQUIRED", "Set confirm=true to apply changes to this machine.")
    snapshot = Snapshot.from_dict(req.snapshot)
    issues, _ = evaluate(snapshot)
    plan = build_plan(snapshot, issues)
    if req.actions is not None:
        plan = reconcile_plan(plan, actions_from_list(req.actions))
    plan = select_actions(plan, req.only)
    roots = cleanup_roots(snapshot)

    def build_executor(bus: EventBus) -> ActionExecutor:
        return ActionExecutor(
            build_system_control(),
            policy=load_execution_policy(),
            bus=bus,
            logger=LOGGER,
            allowed_roots=roots,
        )

    job = RUNS.start(plan, build_executor)
    return api_ok({"job_id": job.job_id, "status": job.status, "selected": job.selected}, meta={"type": "optimize"})


@app.post("/api/v1/compare", summary="Compare before/after snapshots, optionally verifying a run")
async def compare_snapshots(req: CompareRequest):
    after = Snapshot.from_dict(req.after)
    comparison = compare(Snapshot.from_dict(req.before), after)
    data = comparison.to_dict()
    data["summary_lines"] = comparison.summary_lines()
    if req.result is not None:
        data["verification"] = [v.to_dict() for v in verify(actions_from_list(req.result), after)]
    return api_ok(data)


@app.get("/api/v1/actions", summary="List known action keys")
async def list_actions():
    return api_ok(
        {
            "actions": [
                {
                    "key": key,
                    "automated": key in AUTOMATED_KEYS,
                    "estimated_duration": duration,
                }
                for key, duration in DURATION_BY_KEY.items()
            ]
        }
    )


@app.get("/healthz", summary="Liveness endpoint")
async def healthz():
    return api_ok({"service": "endpoint-doctor-server", "healthy": True, "version": APP_VERSION})


# --------------------------------- Runner ---------------------------------- #


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run Endpoint Doctor FastAPI server")
    parser.add_argument("--host", default=os.getenv("ENDPOINT_DOCTOR_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("ENDPOINT_DOCTOR_PORT", "8002")))
    parser.add_argument("--reload", action="store_true")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    import uvicorn

    args = parse_args(argv)
    LOGGER.info("Starting Endpoint Doctor Server host=%s port=%s", args.host, args.port)
    uvicorn.run(
        "endpoint_doctor.server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
    )


if __name__ == "__main__":
    main()
