#!/usr/bin/env python3
"""Local DriveSage server (FastAPI).

Exposes the analysis and organization engines to a local UI:
- Synchronous analyze / duplicates / organize / delete endpoints
- Background scan jobs for long trees
- In-memory settings, passed to the engines on every request

Default host is 127.0.0.1 (localhost-only).
"""

from __future__ import annotations

import argparse
import logging
import os
import tempfile
import threading
import traceback
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from drive_sage.drive_analysis_engine import (
    APP_NAME,
    DEFAULT_LOG_FILE,
    AnalysisReport,
    AppSettings,
    DriveAnalysisService,
    PathNotFoundError,
    ScanReadError,
    load_settings,
    now_utc_iso,
    to_json_dict,
)
from drive_sage.file_organization_engine import (
    FileOrganizationService,
    OrganizationPlanner,
    operation_to_dict,
)


# ------------------------------- Logging ------------------------------------ #


def configure_logging(log_file: Path) -> logging.Logger:
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        log_file = Path(tempfile.gettempdir()) / APP_NAME / "server.log"
        log_file.parent.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger(APP_NAME)
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")

    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setFormatter(formatter)
    logger.addHandler(fh)

    sh = logging.StreamHandler()
    sh.setFormatter(formatter)
    logger.addHandler(sh)
    return logger


LOGGER = logging.getLogger(APP_NAME)


# ---------------------------- API Models ------------------------------------ #


class AnalyzeRequest(BaseModel):
    drive_path: str


class PlanRequest(BaseModel):
    drive_path: str | None = None


class OperationIn(BaseModel):
    type: str
    source: str | None = None
    destination: str | None = None
    path: str | None = None
    old_path: str | None = None
    new_path: str | None = None


class OrganizeRequest(BaseModel):
    operations: list[OperationIn] = Field(default_factory=list)
    dry_run: bool | None = None


class DeleteRequest(BaseModel):
    path: str


class SettingsUpdate(BaseModel):
    protected_patterns: list[str] | None = None
    large_file_threshold: int | str | None = None
    dry_run: bool | None = None
    follow_symlinks: bool | None = None
    organize_rules: str | None = None


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


# ------------------------------- Job Manager -------------------------------- #


@dataclass
class JobState:
    job_id: str
    job_type: str
    status: str = "queued"
    created_at: str = field(default_factory=now_utc_iso)
    updated_at: str = field(default_factory=now_utc_iso)
    result: dict[str, Any] | None = None
    error: dict[str, Any] | None = None


class JobManager:
    """Runs whole scans on worker threads; a job is never cancelled once started."""

    def __init__(self, max_workers: int = 2):
        self.executor = ThreadPoolExecutor(max_workers=max_workers)
        self._jobs: dict[str, JobState] = {}
        self._lock = threading.Lock()

    def create_job(self, job_type: str) -> JobState:
        job = JobState(job_id=uuid.uuid4().hex, job_type=job_type)
        with self._lock:
            self._jobs[job.job_id] = job
        return job

    def get(self, job_id: str) -> JobState | None:
        with self._lock:
            return self._jobs.get(job_id)

    def _update(self, job_id: str, **changes: Any) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return
            for key, value in changes.items():
                setattr(job, key, value)
            job.updated_at = now_utc_iso()

    def submit(self, job: JobState, func: Callable[[], dict[str, Any]]) -> None:
        self._update(job.job_id, status="running")

        def runner() -> None:
            try:
                result = func()
                self._update(job.job_id, result=result, status="completed")
            except Exception as exc:  # pylint: disable=broad-except
                LOGGER.error("job_failed job=%s err=%s", job.job_id, exc)
                self._update(
                    job.job_id,
                    status="failed",
                    error={"code": "JOB_EXECUTION_ERROR", "message": str(exc), "traceback": traceback.format_exc()},
                )

        self.executor.submit(runner)

    def shutdown(self) -> None:
        self.executor.shutdown(wait=True)


# ------------------------------- App State ---------------------------------- #


@dataclass
class AppState:
    """Everything a request handler may read or change, passed in explicitly."""

    settings: AppSettings
    jobs: JobManager = field(default_factory=JobManager)
    current_drive: str | None = None
    last_analysis: AnalysisReport | None = None
    organize_lock: threading.Lock = field(default_factory=threading.Lock)
    state_lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def is_organizing(self) -> bool:
        return self.organize_lock.locked()

    def remember(self, report: AnalysisReport) -> None:
        with self.state_lock:
            self.current_drive = report.drive_path
            self.last_analysis = report


def get_state(request: Request) -> AppState:
    return request.app.state.drive_sage


def run_analysis(state: AppState, drive_path: str) -> AnalysisReport:
    report = DriveAnalysisService(state.settings, logger=LOGGER).analyze(drive_path)
    state.remember(report)
    return report


def run_organize(state: AppState, records: list[dict[str, Any]], dry_run: bool) -> JSONResponse:
    if not state.organize_lock.acquire(blocking=False):
        return api_error("ORGANIZE_IN_PROGRESS", "Another organize run is in progress.", status_code=409)
    try:
        result = FileOrganizationService(logger=LOGGER).organize(records, dry_run=dry_run)
    finally:
        state.organize_lock.release()
    return api_ok(result.to_dict(), meta={"dry_run": dry_run})


# ------------------------------- App Factory -------------------------------- #


def create_app(settings: AppSettings | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        LOGGER.info("server_start settings=%s", app.state.drive_sage.settings.to_dict())
        yield
        app.state.drive_sage.jobs.shutdown()
        LOGGER.info("server_stop")

    app = FastAPI(
        title="DriveSage Server",
        version="1.0.0",
        description="Local drive analysis and organization API (dry-run by default).",
        lifespan=lifespan,
    )
    app.state.drive_sage = AppState(settings=settings or load_settings())

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost", "http://127.0.0.1"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PathNotFoundError)
    async def path_not_found_handler(_: Request, exc: PathNotFoundError):
        return api_error("PATH_NOT_FOUND", str(exc), status_code=404)

    @app.exception_handler(ScanReadError)
    async def read_error_handler(_: Request, exc: ScanReadError):
        return api_error("READ_ERROR", str(exc), status_code=400)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(_: Request, exc: Exception):
        LOGGER.exception("Unhandled server error: %s", exc)
        return api_error("INTERNAL_SERVER_ERROR", str(exc), status_code=500)

    # ------------------------------ Service --------------------------------- #

    @app.get("/healthz", summary="Liveness endpoint")
    async def healthz():
        return api_ok({"service": "drive-sage-server", "healthy": True})

    @app.get("/api/v1/settings", summary="Current in-memory settings")
    async def get_settings(state: AppState = Depends(get_state)):
        return api_ok(state.settings.to_dict())

    @app.put("/api/v1/settings", summary="Update in-memory settings")
    async def update_settings(req: SettingsUpdate, state: AppState = Depends(get_state)):
        overrides = req.model_dump(exclude_none=True)
        try:
            new_settings = state.settings.merged(overrides)
        except ValueError as exc:
            return api_error("INVALID_SETTINGS", str(exc))
        with state.state_lock:
            state.settings = new_settings
        LOGGER.info("settings_updated keys=%s", sorted(overrides))
        return api_ok(new_settings.to_dict())

    # ------------------------------ Analysis -------------------------------- #

    @app.post("/api/v1/analysis/run", summary="Analyze a drive folder")
    def analyze_drive(req: AnalyzeRequest, state: AppState = Depends(get_state)):
        report = run_analysis(state, req.drive_path)
        return api_ok(report.to_dict(), meta={"errors": len(report.errors)})

    @app.post("/api/v1/analysis/duplicates", summary="Name+size duplicates of a drive folder")
    def find_duplicates(req: AnalyzeRequest, state: AppState = Depends(get_state)):
        report = run_analysis(state, req.drive_path)
        return api_ok([to_json_dict(d) for d in report.duplicates], meta={"count": len(report.duplicates)})

    @app.post("/api/v1/analysis/scans/start", summary="Start a background analysis")
    async def start_scan(req: AnalyzeRequest, state: AppState = Depends(get_state)):
        if not os.path.exists(os.path.expanduser(req.drive_path)):
            raise PathNotFoundError(f"Drive path does not exist: {req.drive_path}")
        job = state.jobs.create_job("analysis")

        def runner() -> dict[str, Any]:
            report = run_analysis(state, req.drive_path)
            LOGGER.info("scan_job_complete job=%s files=%s", job.job_id, report.file_count)
            return report.to_dict()

        state.jobs.submit(job, runner)
        return api_ok({"job_id": job.job_id, "status": job.status}, meta={"type": "analysis"})

    @app.get("/api/v1/jobs/{job_id}", summary="Get job status")
    async def get_job(job_id: str, state: AppState = Depends(get_state)):
        job = state.jobs.get(job_id)
        if not job:
            raise HTTPException(status_code=404, detail="Job not found")
        data = asdict(job)
        data.pop("result", None)
        return api_ok(data)

    @app.get("/api/v1/jobs/{job_id}/result", summary="Get job result")
    async def get_job_result(job_id: str, state: AppState = Depends(get_state)):
        job = state.jobs.get(job_id)
        if not job:
            raise HTTPException(status_code=404, detail="Job not found")
        if job.status not in {"completed", "failed"}:
            return api_ok({"job_id": job_id, "status": job.status})
        return api_ok({"job_id": job_id, "status": job.status, "result": job.result, "error": job.error})

    # ---------------------------- Organization ------------------------------ #

    @app.post("/api/v1/organize/plan", summary="Build organize operations from an analysis")
    def plan_organization(req: PlanRequest, state: AppState = Depends(get_state)):
        if req.drive_path:
            report = run_analysis(state, req.drive_path)
        elif state.last_analysis is not None:
            report = state.last_analysis
        else:
            return api_error("NO_ANALYSIS", "Analyze a drive first or pass drive_path.")
        operations = OrganizationPlanner(state.settings.organize_rules).plan(report)
        return api_ok(
            {"drive_path": report.drive_path, "operations": [operation_to_dict(op) for op in operations]},
            meta={"count": len(operations)},
        )

    @app.post("/api/v1/organize/run", summary="Apply or preview operations")
    def organize_files(req: OrganizeRequest, state: AppState = Depends(get_state)):
        dry_run = state.settings.dry_run if req.dry_run is None else req.dry_run
        records = [op.model_dump(exclude_none=True) for op in req.operations]
        return run_organize(state, records, dry_run)

    @app.post("/api/v1/files/delete", summary="Delete one file (not a dry run)")
    def delete_file(req: DeleteRequest, state: AppState = Depends(get_state)):
        return run_organize(state, [{"type": "delete", "path": req.path}], dry_run=False)

    return app


# --------------------------------- Runner ---------------------------------- #


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the DriveSage FastAPI server")
    parser.add_argument("--host", default=os.getenv("DRIVE_SAGE_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("DRIVE_SAGE_PORT", "8002")))
    parser.add_argument("--settings", default=None, help="JSON settings file")
    parser.add_argument("--log-file", default=os.getenv("DRIVE_SAGE_LOG", str(DEFAULT_LOG_FILE)))
    return parser.parse_args()


def main() -> None:
    import uvicorn

    args = parse_args()
    configure_logging(Path(args.log_file))
    LOGGER.info("Starting DriveSage server host=%s port=%s", args.host, args.port)
    app = create_app(load_settings(args.settings))
    uvicorn.run(app, host=args.host, port=args.port, log_level="info")


if __name__ == "__main__":
    main()
