"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from matrixci.model import CellRun, PipelineRun


class Console:
    """
    All user-facing output. Each call writes its lines under one lock;
    cells report from worker threads. `debug` adds tracebacks and full
    error text.
    """

    def __init__(self, debug: bool = False):
        self.debug = debug
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        repository: str,
        workflow: str,
        job_count: int,
        event: str = "",
    ) -> None:
        """Print run start information."""
        lines = ["\nRUN STARTED", f"Repository: {repository}", f"Workflow: {workflow}", f"Jobs: {job_count}"]
        if event:
            lines.append(f"Event: {event}")
        self._out(*lines, "")

    def print_not_run(self, event: str) -> None:
        """Print the no-op outcome of an ineligible trigger."""
        self._out(f"RUN NOT STARTED: event not eligible ({event})")

    def print_stage(self, index: int, jobs: list[str]) -> None:
        self._out(f"=== Stage {index}: {jobs} ===")

    def print_cell_start(self, name: str) -> None:
        """Print cell start message."""
        self._out(f"\nCELL STARTED: {name}")

    def print_step(self, cell: str, name: str) -> None:
        self._out(f"[{cell}] STEP: {name}")

    def print_step_skipped(self, cell: str, name: str) -> None:
        self._out(f"[{cell}] STEP SKIPPED: {name} (not active for this cell)")

    def print_cell_finished(self, name: str, state: str, duration: Optional[float] = None) -> None:
        line = f"CELL FINISHED: {name} -> {state}"
        if duration is not None:
            line += f" ({duration:.1f}s)"
        self._out(line)

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """`name` is a step, or a cell when is_job is set."""
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # first line only outside debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        self._out(*lines)

    def print_cache_hit(self, cell: str, reason: str) -> None:
        self._out(f"[{cell}] CACHE: hit ({reason})")

    def print_cache_miss(self, cell: str, reason: str = "miss") -> None:
        self._out(f"[{cell}] CACHE: {reason}")

    def print_cache_saved(self, cell: str, key: str) -> None:
        short_key = key[:12] + "..." if len(key) > 12 else key
        self._out(f"[{cell}] CACHE: saved ({short_key})")

    def print_job_skipped(self, name: str, reason: str) -> None:
        self._out(f"\nJOB SKIPPED: {name} ({reason})")

    def print_plan_job(self, name: str, cells: list[str], needs: list[str]) -> None:
        """Print one job of the plan with its cells."""
        suffix = f" needs={needs}" if needs else ""
        self._out(f"  {name}{suffix}", *[f"    - {c}" for c in cells])

    def print_results(self, run: PipelineRun) -> None:
        """Print final results summary, per job and per cell."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for name, job_run in run.jobs.items():
            lines.append(f"  {name}: {job_run.state.value.upper()}")
            if job_run.skip_reason:
                lines.append(f"    ({job_run.skip_reason})")
            for cell_run in job_run.cells:
                lines.append(f"    {cell_run.cell.label}: {cell_run.state.value.upper()}")
        lines.append(f"VERDICT: {run.verdict.value.upper()}")
        self._out(*lines)

    def print_cell_steps(self, cell_run: CellRun) -> None:
        for r in cell_run.steps:
            self._out(f"    {r.status:<8} {r.name}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """Title, message, indented details, then an optional suggestion; all to stderr."""
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_warning(self, message: str) -> None:
        self._out(f"WARNING: {message}", err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (initialized by the CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
