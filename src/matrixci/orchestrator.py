# orchestrator.py
from __future__ import annotations

import os
import runpy
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .dag import GateDecision, may_start, topo_order, unmet_reason
from .errors import ConfigurationError
from .executor import STEP_HANDLERS, ExecutionContext, run_cell
from .expansion import cell_display_name, expand
from .model import CellRun, CellState, Event, Job, JobRun, MatrixCell, PipelineRun
from .trigger import describe_event, evaluate
from .ui.console import Console, get_console

CellRunner = Callable[[Job, MatrixCell], CellRun]


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> List[Job]:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> List[Job]
      - JOBS = [Job, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"matrixci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    jobs = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        jobs = globals_dict["workflow"]()
    elif "JOBS" in globals_dict:
        jobs = globals_dict["JOBS"]

    if not isinstance(jobs, list) or not all(isinstance(j, Job) for j in jobs):
        raise TypeError(
            "Workflow must return/define a List[Job]. "
            "Define workflow() -> List[Job] or JOBS = [Job, ...]."
        )

    return jobs


# ----------------------------------------------------------------------
# Pre-dispatch validation
# ----------------------------------------------------------------------

def _validate_steps(job: Job) -> None:
    dims = set(job.matrix or {})
    for step in job.steps:
        if step.kind not in STEP_HANDLERS:
            raise ConfigurationError(
                f"Job '{job.name}' step '{step.name}' has unknown kind '{step.kind}'",
                job=job.name,
                known=sorted(STEP_HANDLERS),
            )
        for dim in step.when or {}:
            if dim not in dims:
                raise ConfigurationError(
                    f"Job '{job.name}' step '{step.name}' is conditioned on undeclared matrix dimension '{dim}'",
                    job=job.name,
                )


def validate_pipeline(jobs: Iterable[Job]) -> Tuple[List[str], Dict[str, List[MatrixCell]]]:
    """
    Check the whole job graph before anything runs.

    Returns (topological job order, cells per job). Raises ConfigurationError
    for duplicate names, unknown or cyclic dependencies, empty matrix
    dimensions, jobs without steps, and malformed steps.
    """
    jobs = list(jobs)
    order = topo_order(jobs)
    cells: Dict[str, List[MatrixCell]] = {}
    for job in jobs:
        if not job.steps:
            raise ConfigurationError(f"Job '{job.name}' has no steps", job=job.name)
        _validate_steps(job)
        cells[job.name] = expand(job)
    return order, cells


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def run_pipeline(
    event: Event,
    jobs: List[Job],
    *,
    watched_branches: Iterable[str] = ("master",),
    context: Optional[ExecutionContext] = None,
    cell_runner: Optional[CellRunner] = None,
    max_workers: int | None = None,
    console: Optional[Console] = None,
) -> PipelineRun:
    """
    Evaluate the trigger, then schedule the job graph with a worklist.

    - Ineligible events return a `not_run` PipelineRun; nothing is validated or run.
    - The graph is validated up front; ConfigurationError escapes before dispatch.
    - Every cell of a released job is its own future; failures are collected
      per job and never cancel other cells.
    - After each completion, the gate is re-evaluated for every waiting job
      against an explicit snapshot of job states.
    """
    out = console or get_console()
    run = PipelineRun(event=event)

    if not evaluate(event, watched_branches):
        run.eligible = False
        out.print_not_run(describe_event(event))
        return run

    order, cells = validate_pipeline(jobs)
    by_name = {j.name: j for j in jobs}
    run.jobs = {name: JobRun(name=name) for name in order}

    if cell_runner is None:
        ctx = context or ExecutionContext(console=out)
        if ctx.ref is None:
            # per-run copy; the caller's context stays reusable
            ctx = replace(ctx, ref=event.ref)

        def cell_runner(job: Job, cell: MatrixCell) -> CellRun:
            return run_cell(job, cell, ctx)

    if max_workers is None:
        c = os.cpu_count() or 2
        max_workers = max(1, c - 1)

    waiting: List[str] = list(order)
    in_flight: Dict[Future, Tuple[str, int]] = {}
    stage = 0

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        while True:
            released: List[str] = []
            still_waiting: List[str] = []

            # topological order, so a skip propagates within one pass
            for name in waiting:
                job = by_name[name]
                states = run.states()
                decision = may_start(job, states)
                job_run = run.jobs[name]

                if decision == GateDecision.SKIP:
                    job_run.skip_reason = unmet_reason(job, states)
                    out.print_job_skipped(name, job_run.skip_reason)
                elif decision == GateDecision.START:
                    job_run.cells = [CellRun(job=name, cell=c) for c in cells[name]]
                    for idx, cell_run in enumerate(job_run.cells):
                        cell_run.start()
                        fut = pool.submit(cell_runner, job, cell_run.cell)
                        in_flight[fut] = (name, idx)
                    released.append(name)
                else:
                    still_waiting.append(name)

            waiting = still_waiting
            if released:
                stage += 1
                out.print_stage(stage, released)

            if not in_flight:
                break

            done, _pending = wait(list(in_flight), return_when=FIRST_COMPLETED)
            for fut in done:
                name, idx = in_flight.pop(fut)
                _collect(run.jobs[name], idx, fut, by_name[name], out)

    for name in waiting:
        # unreachable for a validated DAG; never leave a job non-terminal
        run.jobs[name].skip_reason = "dependency unmet: unresolved"

    return run


def _collect(job_run: JobRun, idx: int, fut: Future, job: Job, out: Console) -> None:
    placeholder = job_run.cells[idx]
    try:
        result = fut.result()
    except Exception as e:
        # a crashing runner fails its own cell only
        placeholder.finish(CellState.FAILURE, f"{type(e).__name__}: {e}")
        out.print_failure(cell_display_name(job, placeholder.cell), str(e), is_job=True)
        return
    if result.started_at is None:
        result.started_at = placeholder.started_at
    job_run.cells[idx] = result
