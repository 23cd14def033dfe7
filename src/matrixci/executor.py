# executor.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .cache import CacheStore, cache_key, fingerprint_inputs, key_prefix
from .errors import CacheFailure, CIError, ProvisionFailure, StepFailure
from .git_facts.git import checkout
from .expansion import cell_display_name
from .model import CellRun, CellState, Job, MatrixCell, Step, StepResult
from .provision import Environment, LocalProvisioner, NativeDeps, Provisioner, ToolchainSpec
from .ui.console import Console, get_console


# ----------------------------------------------------------------------
# Activation predicates
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class PlannedStep:
    step: Step
    active: bool


def step_active(step: Step, cell: MatrixCell) -> bool:
    """A step is active when every dimension in its predicate matches the cell."""
    if not step.when:
        return True
    return all(cell.get(dim) in allowed for dim, allowed in step.when.items())


def plan_steps(job: Job, cell: MatrixCell) -> List[PlannedStep]:
    """Predicate table for one cell, evaluated once at dispatch time."""
    return [PlannedStep(step=s, active=step_active(s, cell)) for s in job.steps]


# ----------------------------------------------------------------------
# Execution context
# ----------------------------------------------------------------------

@dataclass
class ExecutionContext:
    """Collaborators shared by every cell of a run."""
    provisioner: Provisioner = field(default_factory=LocalProvisioner)
    cache: Optional[CacheStore] = None
    source: str | Path | None = None      # repository URL or local path to check out
    ref: str | None = None
    cache_keep: int = 3
    console: Optional[Console] = None

    def out(self) -> Console:
        return self.console or get_console()


@dataclass
class _CellScope:
    job: Job
    cell: MatrixCell
    env: Environment
    name: str
    ctx: ExecutionContext
    cache_key: str | None = None
    fingerprint: str | None = None
    note: str = ""


# ----------------------------------------------------------------------
# Step handlers
# ----------------------------------------------------------------------

def _run_sh(scope: _CellScope, step: Step) -> None:
    try:
        res = scope.ctx.provisioner.run_command(scope.env, step.run, cwd=step.cwd)
    except OSError as e:
        raise StepFailure(job=scope.job.name, step=step.name, cmd=step.run, exit_code=-1, stderr=str(e)) from e
    if res.stdout:
        scope.ctx.out().print_debug(res.stdout[-4000:])
    if res.exit_code != 0:
        raise StepFailure(
            job=scope.job.name,
            step=step.name,
            cmd=step.run,
            exit_code=res.exit_code,
            stdout=res.stdout[-4000:],
            stderr=res.stderr[-4000:],
        )


def _run_checkout(scope: _CellScope, step: Step) -> None:
    data = step.data or {}
    source = data.get("source") or scope.ctx.source
    ref = data.get("ref") or scope.ctx.ref
    if not source:
        raise CIError(kind="checkout_failure", job=scope.job.name, step=step.name, message="no source repository configured")
    try:
        checkout(source, ref, scope.env.workdir)
    except RuntimeError as e:
        raise CIError(
            kind="checkout_failure",
            job=scope.job.name,
            step=step.name,
            message=str(e),
            details={"source": str(source), "ref": ref},
        ) from e


def _run_native_deps(scope: _CellScope, step: Step) -> None:
    data = step.data or {}
    native = NativeDeps(packages=tuple(data.get("packages", ())), manager=data.get("manager", "apt"))
    try:
        scope.ctx.provisioner.install_native(scope.env, native)
    except ProvisionFailure as e:
        e.job, e.step = scope.job.name, step.name
        raise


def _toolchain_spec(scope: _CellScope, step: Step) -> ToolchainSpec:
    data = step.data or {}
    # channel=None means "take it from the cell's toolchain dimension"
    channel = data.get("channel") or scope.cell.get("toolchain") or "stable"
    return ToolchainSpec(
        channel=channel,
        components=tuple(data.get("components", ())),
        override=bool(data.get("override", True)),
        profile=data.get("profile", "minimal"),
    )


def _run_toolchain(scope: _CellScope, step: Step) -> None:
    spec = _toolchain_spec(scope, step)
    try:
        scope.ctx.provisioner.install_toolchain(scope.env, spec)
    except ProvisionFailure as e:
        e.job, e.step = scope.job.name, step.name
        raise


def _cache_warning(scope: _CellScope, err: CacheFailure) -> None:
    scope.note = err.message
    scope.ctx.out().print_warning(f"[{scope.name}] {err.message} (ignored)")


def _cache_enabled(scope: _CellScope) -> bool:
    if scope.ctx.cache is None or not scope.job.cache_enabled:
        scope.note = "cache disabled"
        return False
    return True


def _compute_key(scope: _CellScope) -> str:
    fingerprint, _bits = fingerprint_inputs(scope.env.workdir, scope.job.inputs)
    toolchain = scope.env.toolchain
    identity = toolchain.identity if toolchain else (scope.cell.get("toolchain") or "default")
    scope.fingerprint = fingerprint
    return cache_key(scope.job.name, scope.cell, identity, fingerprint)


def _run_cache_restore(scope: _CellScope, step: Step) -> None:
    if not _cache_enabled(scope):
        return
    out = scope.ctx.out()
    try:
        scope.cache_key = _compute_key(scope)
        hit = scope.ctx.cache.restore(scope.cache_key, into=scope.env.workdir)
    except Exception as e:  # a cache problem is only ever a warning
        _cache_warning(scope, CacheFailure(f"cache restore failed: {e}", key=scope.cache_key or ""))
        return
    scope.note = hit.reason
    if hit.hit:
        out.print_cache_hit(scope.name, hit.reason)
    else:
        out.print_cache_miss(scope.name, hit.reason)


def _run_cache_save(scope: _CellScope, step: Step) -> None:
    if not _cache_enabled(scope):
        return
    cache = scope.ctx.cache
    try:
        key = scope.cache_key or _compute_key(scope)
        res = cache.save(
            key,
            scope.env.workdir,
            scope.job.cache_dirs,
            manifest={"fingerprint": scope.fingerprint, "cell": scope.cell.as_dict()},
        )
    except Exception as e:
        _cache_warning(scope, CacheFailure(f"cache save failed: {e}", key=scope.cache_key or ""))
        return
    if not res.ok:
        _cache_warning(scope, CacheFailure(res.reason, key=key))
        return
    scope.note = res.reason
    scope.ctx.out().print_cache_saved(scope.name, key)
    try:
        cache.prune(key_prefix(scope.job.name, scope.cell), keep=scope.ctx.cache_keep)
    except Exception as e:
        _cache_warning(scope, CacheFailure(f"cache prune failed: {e}", key=key))


STEP_HANDLERS: Dict[str, Callable[[_CellScope, Step], None]] = {
    "sh": _run_sh,
    "checkout": _run_checkout,
    "native_deps": _run_native_deps,
    "toolchain": _run_toolchain,
    "cache_restore": _run_cache_restore,
    "cache_save": _run_cache_save,
}


# ----------------------------------------------------------------------
# Cell execution
# ----------------------------------------------------------------------

def run_cell(job: Job, cell: MatrixCell, context: ExecutionContext) -> CellRun:
    """
    Run the job's steps for one cell, strictly in order, in the cell's own
    environment. Stops at the first failing step. Never raises: every
    failure is captured into the returned CellRun.
    """
    out = context.out()
    name = cell_display_name(job, cell)
    plan = plan_steps(job, cell)
    cell_run = CellRun(job=job.name, cell=cell)
    cell_run.start()
    out.print_cell_start(name)

    try:
        env = context.provisioner.prepare(job, cell)
    except (OSError, CIError) as e:
        cell_run.steps = [StepResult(p.step.name, "not_run") for p in plan]
        cell_run.finish(CellState.FAILURE, f"environment setup failed: {e}")
        out.print_failure(name, str(e), is_job=True)
        out.print_cell_finished(name, CellState.FAILURE.value, cell_run.duration)
        return cell_run

    scope = _CellScope(job=job, cell=cell, env=env, name=name, ctx=context)
    state, error = CellState.SUCCESS, None

    for planned in plan:
        step = planned.step
        if state == CellState.FAILURE:
            cell_run.steps.append(StepResult(step.name, "not_run"))
            continue
        if not planned.active:
            cell_run.steps.append(StepResult(step.name, "skipped"))
            out.print_step_skipped(name, step.name)
            continue

        out.print_step(name, step.name)
        scope.note = ""
        t0 = time.monotonic()
        try:
            handler = STEP_HANDLERS.get(step.kind)
            if handler is None:
                raise CIError(kind="unknown_step_kind", job=job.name, step=step.name, message=f"no handler for step kind '{step.kind}'")
            handler(scope, step)
        except StepFailure as e:
            state, error = CellState.FAILURE, str(e)
            cell_run.steps.append(StepResult(step.name, "failure", e.exit_code, time.monotonic() - t0, e.stderr or e.stdout))
            out.print_failure(step.name, e.stderr or str(e), exit_code=e.exit_code)
        except CIError as e:
            state, error = CellState.FAILURE, str(e)
            cell_run.steps.append(StepResult(step.name, "failure", None, time.monotonic() - t0, e.message))
            out.print_failure(step.name, str(e), hint=e.details.get("hint"))
        except Exception as e:
            # captured into this cell's result only; siblings are unaffected
            state, error = CellState.FAILURE, f"{type(e).__name__}: {e}"
            cell_run.steps.append(StepResult(step.name, "failure", None, time.monotonic() - t0, str(e)))
            out.print_failure(step.name, str(e))
        else:
            cell_run.steps.append(StepResult(step.name, "success", 0, time.monotonic() - t0, scope.note))

    cell_run.finish(state, error)
    out.print_cell_finished(name, state.value, cell_run.duration)
    return cell_run
