# matrixci_workflow.py
# Pipeline for the Rust workspace: rustfmt and clippy on every platform,
# then build + test once every static check has passed.
from __future__ import annotations

from matrixci import wf
from matrixci.step_workflows.rust import build_and_test, format_check, lint_check


def workflow():
    return wf(
        format_check(),
        lint_check(),
        build_and_test(),
    )
