import threading
import time

import pytest

from matrixci.model import CellRun, CellState
from matrixci.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(debug=False)
    set_console(console)
    return console


class FakeRunner:
    """
    Stand-in for the step executor: records every dispatched cell and
    returns a terminal CellRun without running anything.
    """

    def __init__(self, failing=(), delays=None, crash=()):
        # failing / crash: {(job_name, platform_or_None)}
        self.failing = set(failing)
        self.crash = set(crash)
        self.delays = dict(delays or {})
        self.calls = []
        self.completed = []
        self.seen_completed_at_call = {}
        self._lock = threading.Lock()

    def __call__(self, job, cell):
        ident = (job.name, cell.get("platform"))
        with self._lock:
            self.calls.append(ident)
            self.seen_completed_at_call[ident] = list(self.completed)
        time.sleep(self.delays.get(ident, 0.0))
        if ident in self.crash:
            raise RuntimeError(f"runner crashed on {ident}")

        cell_run = CellRun(job=job.name, cell=cell)
        cell_run.start()
        state = CellState.FAILURE if ident in self.failing else CellState.SUCCESS
        cell_run.finish(state, "boom" if state == CellState.FAILURE else None)
        with self._lock:
            self.completed.append(ident)
        return cell_run

    def calls_for(self, job_name):
        return [c for c in self.calls if c[0] == job_name]


@pytest.fixture
def fake_runner():
    return FakeRunner
