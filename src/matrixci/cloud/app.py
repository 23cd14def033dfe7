from __future__ import annotations

import os
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, List, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException
from pydantic import BaseModel, Field

from matrixci.errors import ConfigurationError, EventPayloadError
from matrixci.executor import ExecutionContext
from matrixci.model import Event, Job, PipelineRun
from matrixci.orchestrator import CellRunner, load_workflow, run_pipeline
from matrixci.settings import Settings
from matrixci.trigger import EventPayload, describe_event, evaluate

# -------------------- Schemas --------------------

class CellSummary(BaseModel):
    cell: dict[str, str]
    state: str
    error: str | None = None


class JobSummary(BaseModel):
    state: str
    exit_code: int
    skip_reason: str | None = None
    cells: list[CellSummary] = Field(default_factory=list)


class AcceptedResponse(BaseModel):
    run_id: str
    eligible: bool
    status: str


class RunResponse(BaseModel):
    run_id: str
    event: str
    status: str          # queued|running|finished
    verdict: str | None  # success|failure|not_run|error
    error: str | None = None
    jobs: dict[str, JobSummary] = Field(default_factory=dict)
    created_at: datetime


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class _RunRecord:
    def __init__(self, event: Event):
        self.id = str(uuid.uuid4())
        self.event = event
        self.status = "queued"
        self.verdict: str | None = None
        self.error: str | None = None
        self.result: PipelineRun | None = None
        self.created_at = now_utc()

    def to_response(self) -> RunResponse:
        jobs: dict[str, JobSummary] = {}
        if self.result is not None:
            for name, jr in self.result.jobs.items():
                jobs[name] = JobSummary(
                    state=jr.state.value,
                    exit_code=jr.exit_code,
                    skip_reason=jr.skip_reason,
                    cells=[CellSummary(cell=c.cell.as_dict(), state=c.state.value, error=c.error) for c in jr.cells],
                )
        return RunResponse(
            run_id=self.id,
            event=describe_event(self.event),
            status=self.status,
            verdict=self.verdict,
            error=self.error,
            jobs=jobs,
            created_at=self.created_at,
        )


def _default_jobs() -> List[Job]:
    return load_workflow(os.environ.get("MATRIXCI_WORKFLOW", "matrixci_workflow.py"))


def create_app(
    *,
    load_jobs: Callable[[], List[Job]] = _default_jobs,
    settings: Optional[Settings] = None,
    context_factory: Optional[Callable[[Event], ExecutionContext]] = None,
    cell_runner: Optional[CellRunner] = None,
    max_runs: int = 500,
) -> FastAPI:
    """
    Webhook intake: every event is evaluated immediately; eligible events
    run the pipeline in a background task and are polled via GET /runs/{id}.
    At most `max_runs` records are kept; finished runs are evicted oldest first.
    """
    settings = settings or Settings.from_env()
    app = FastAPI(title="matrixci webhook intake")
    runs: dict[str, _RunRecord] = {}
    lock = threading.Lock()

    def _context(event: Event) -> ExecutionContext:
        if context_factory is not None:
            return context_factory(event)
        from matrixci.cache import CacheStore
        from matrixci.provision import LocalProvisioner

        return ExecutionContext(
            provisioner=LocalProvisioner(settings.work_dir),
            cache=CacheStore(settings.cache_dir),
            source=os.environ.get("MATRIXCI_SOURCE", str(Path(".").resolve())),
            ref=event.ref,
            cache_keep=settings.cache_keep,
        )

    def _fail(record: _RunRecord, message: str) -> None:
        with lock:
            record.status, record.verdict, record.error = "finished", "error", message

    def _remember(record: _RunRecord) -> None:
        with lock:
            runs[record.id] = record
            finished = [rid for rid, r in runs.items() if r.status == "finished"]
            # oldest finished runs go first; insertion order is arrival order
            for rid in finished[: max(0, len(runs) - max_runs)]:
                del runs[rid]

    def _execute(record: _RunRecord) -> None:
        with lock:
            record.status = "running"
        try:
            result = run_pipeline(
                record.event,
                load_jobs(),
                watched_branches=settings.watched_branches,
                context=None if cell_runner is not None else _context(record.event),
                cell_runner=cell_runner,
                max_workers=settings.max_workers,
            )
        except ConfigurationError as e:
            _fail(record, e.message)
            return
        except Exception as e:
            # a broken workflow file must not leave the run stuck in "running"
            _fail(record, f"{type(e).__name__}: {e}")
            return
        with lock:
            record.result = result
            record.status = "finished"
            record.verdict = result.verdict.value

    # -------------------- Endpoints --------------------

    @app.post("/events", response_model=AcceptedResponse, status_code=202)
    async def receive_event(payload: EventPayload, background: BackgroundTasks):
        try:
            event = payload.to_event()
        except EventPayloadError as e:
            raise HTTPException(status_code=422, detail=str(e))

        record = _RunRecord(event)
        _remember(record)

        if not evaluate(event, settings.watched_branches):
            with lock:
                record.status, record.verdict = "finished", "not_run"
            return AcceptedResponse(run_id=record.id, eligible=False, status=record.status)

        background.add_task(_execute, record)
        return AcceptedResponse(run_id=record.id, eligible=True, status=record.status)

    @app.get("/runs/{run_id}", response_model=RunResponse)
    async def get_run(run_id: str):
        with lock:
            record = runs.get(run_id)
            if record is None:
                raise HTTPException(status_code=404, detail="Run not found")
            return record.to_response()

    @app.get("/runs", response_model=list[RunResponse])
    async def list_runs() -> Any:
        with lock:
            return [r.to_response() for r in runs.values()]

    return app


app = create_app()
