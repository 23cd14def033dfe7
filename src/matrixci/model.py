# model.py
from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


# ---------------------------------------------------------------------
# States
# ---------------------------------------------------------------------

class EventKind(str, Enum):
    PUSH = "push"
    CHANGE_REQUEST = "change_request"


class ChangeAction(str, Enum):
    OPENED = "opened"
    SYNCHRONIZED = "synchronized"
    REOPENED = "reopened"
    MARKED_READY = "marked_ready"


class CellState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class RunVerdict(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    NOT_RUN = "not_run"


TERMINAL_CELL_STATES = frozenset({CellState.SUCCESS, CellState.FAILURE})
TERMINAL_JOB_STATES = frozenset({JobState.SUCCESS, JobState.FAILURE, JobState.SKIPPED})


# ---------------------------------------------------------------------
# Static definitions
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Event:
    """The trigger that starts a run. Immutable once received."""
    kind: EventKind
    ref: str | None = None
    action: ChangeAction | str | None = None   # unknown actions are kept verbatim
    draft: bool = False

    @classmethod
    def push(cls, ref: str) -> Event:
        return cls(kind=EventKind.PUSH, ref=ref)

    @classmethod
    def change_request(cls, action: ChangeAction | str, *, draft: bool = False, ref: str | None = None) -> Event:
        return cls(kind=EventKind.CHANGE_REQUEST, ref=ref, action=coerce_action(action), draft=draft)


@dataclass(frozen=True)
class Step:
    """
    A single step inside a CI job.

    `kind` selects the handler in the step executor; plain shell steps use
    `run`, typed steps (checkout, toolchain, cache, ...) carry their
    parameters in `data`. `when` is the activation predicate:
    dimension -> allowed values.
    """
    name: str
    run: str = ""
    cwd: str | None = None
    kind: str = "sh"
    data: Optional[Dict[str, Any]] = None
    when: Optional[Dict[str, Tuple[str, ...]]] = None


@dataclass
class Job:
    """A CI job definition: steps + dependencies + matrix + cache metadata."""
    name: str
    steps: list[Step]

    needs: list[str] = field(default_factory=list)
    # dimension -> values, declaration order is expansion order
    matrix: Dict[str, List[str]] = field(default_factory=dict)

    env: Dict[str, str] = field(default_factory=dict)
    inputs: list[str] = field(default_factory=list)   # manifest globs for the cache fingerprint

    cache_enabled: bool = True
    cache_dirs: list[str] = field(default_factory=list)

    display_name: str | None = None                   # e.g. "Clippy ({toolchain}) on {platform}"


_SLUG_RE = re.compile(r"[^A-Za-z0-9_.-]+")


@dataclass(frozen=True)
class MatrixCell:
    """One concrete assignment of values to a job's matrix dimensions."""
    values: Tuple[Tuple[str, str], ...] = ()

    def get(self, dimension: str, default: str | None = None) -> str | None:
        for k, v in self.values:
            if k == dimension:
                return v
        return default

    def as_dict(self) -> Dict[str, str]:
        return dict(self.values)

    @property
    def label(self) -> str:
        if not self.values:
            return "default"
        return ", ".join(f"{k}={v}" for k, v in self.values)

    @property
    def slug(self) -> str:
        if not self.values:
            return "default"
        return "-".join(_SLUG_RE.sub("_", v) for _k, v in self.values)


# ---------------------------------------------------------------------
# Runtime records
# ---------------------------------------------------------------------

@dataclass
class StepResult:
    name: str
    status: str                    # success | failure | skipped | not_run
    exit_code: int | None = None
    duration: float = 0.0
    message: str = ""


@dataclass
class CellRun:
    job: str
    cell: MatrixCell
    state: CellState = CellState.PENDING
    steps: list[StepResult] = field(default_factory=list)
    error: str | None = None
    started_at: float | None = None
    finished_at: float | None = None

    def start(self) -> None:
        self.state = CellState.RUNNING
        self.started_at = time.time()

    def finish(self, state: CellState, error: str | None = None) -> None:
        self.state = state
        self.error = error
        self.finished_at = time.time()

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at


@dataclass
class JobRun:
    """Aggregation of all CellRuns of one job. State is derived."""
    name: str
    cells: list[CellRun] = field(default_factory=list)
    skip_reason: str | None = None

    @property
    def state(self) -> JobState:
        if self.skip_reason is not None:
            return JobState.SKIPPED
        if not self.cells:
            return JobState.PENDING
        states = [c.state for c in self.cells]
        if any(s == CellState.FAILURE for s in states):
            return JobState.FAILURE
        if all(s == CellState.SUCCESS for s in states):
            return JobState.SUCCESS
        if any(s != CellState.PENDING for s in states):
            return JobState.RUNNING
        return JobState.PENDING

    @property
    def finished(self) -> bool:
        if self.skip_reason is not None:
            return True
        return bool(self.cells) and all(c.state in TERMINAL_CELL_STATES for c in self.cells)

    @property
    def exit_code(self) -> int:
        return 1 if any(c.state == CellState.FAILURE for c in self.cells) else 0


@dataclass
class PipelineRun:
    event: Event
    jobs: Dict[str, JobRun] = field(default_factory=dict)
    eligible: bool = True

    @property
    def verdict(self) -> RunVerdict:
        if not self.eligible:
            return RunVerdict.NOT_RUN
        if all(j.state == JobState.SUCCESS for j in self.jobs.values()):
            return RunVerdict.SUCCESS
        return RunVerdict.FAILURE

    @property
    def exit_code(self) -> int:
        return 1 if self.verdict == RunVerdict.FAILURE else 0

    def states(self) -> Dict[str, JobState]:
        return {name: jr.state for name, jr in self.jobs.items()}

    def cell_states(self) -> Dict[Tuple[str, MatrixCell], CellState]:
        return {(c.job, c.cell): c.state for jr in self.jobs.values() for c in jr.cells}


def coerce_action(action: ChangeAction | str) -> ChangeAction | str:
    try:
        return ChangeAction(action)
    except ValueError:
        return action
