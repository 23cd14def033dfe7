import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from matrixci.cli import cli

ROOT = Path(__file__).resolve().parents[1]

WORKFLOW = """
from matrixci import wf, job, sh, matrix

def workflow():
    return wf(
        job("check", sh("check", '{check}'), matrix=matrix(platform=["a", "b"])),
        job("build", sh("build", "true"), needs=["{needs}"]),
    )
"""


@pytest.fixture
def runner():
    return CliRunner()


def _write_workflow(tmp_path, check="true", needs="check"):
    path = tmp_path / "demo_workflow.py"
    path.write_text(WORKFLOW.format(check=check, needs=needs), encoding="utf-8")
    return path


def _run_args(tmp_path, wf_path, *extra):
    return [
        "run",
        "--workflow", str(wf_path),
        "--source", str(tmp_path),
        "--work-dir", str(tmp_path / "work"),
        "--cache-dir", str(tmp_path / "cache"),
        *extra,
    ]


def test_plan_shows_stages_and_cells(runner):
    result = runner.invoke(cli, ["plan", "--workflow", str(ROOT / "matrixci_workflow.py")])
    assert result.exit_code == 0, result.output
    out = result.output
    assert out.index("Stage 1") < out.index("lint_check") < out.index("Stage 2") < out.index("build_and_test")
    assert "Clippy (stable) on macos-latest" in out
    assert "Rust (stable) on windows-latest" in out
    assert "Rustfmt" in out


def test_run_success(runner, tmp_path):
    wf_path = _write_workflow(tmp_path)
    result = runner.invoke(cli, _run_args(tmp_path, wf_path, "--ref", "master"))
    assert result.exit_code == 0, result.output
    assert "VERDICT: SUCCESS" in result.output


def test_run_failure_skips_dependents(runner, tmp_path):
    wf_path = _write_workflow(tmp_path, check='test "$MATRIX_PLATFORM" = a')
    result = runner.invoke(cli, _run_args(tmp_path, wf_path, "--ref", "master"))
    assert result.exit_code == 1
    assert "build: SKIPPED" in result.output
    assert "platform=a: SUCCESS" in result.output
    assert "platform=b: FAILURE" in result.output
    assert "VERDICT: FAILURE" in result.output


def test_run_ineligible_event_is_not_a_failure(runner, tmp_path):
    wf_path = _write_workflow(tmp_path)
    result = runner.invoke(cli, _run_args(tmp_path, wf_path, "--ref", "feature/x"))
    assert result.exit_code == 0
    assert "RUN NOT STARTED" in result.output
    assert not (tmp_path / "work").exists()


def test_run_watch_option_extends_eligibility(runner, tmp_path):
    wf_path = _write_workflow(tmp_path)
    result = runner.invoke(cli, _run_args(tmp_path, wf_path, "--ref", "release", "--watch", "release"))
    assert result.exit_code == 0
    assert "VERDICT: SUCCESS" in result.output


def test_run_invalid_graph_exits_with_configuration_code(runner, tmp_path):
    wf_path = _write_workflow(tmp_path, needs="nope")
    result = runner.invoke(cli, _run_args(tmp_path, wf_path, "--ref", "master"))
    assert result.exit_code == 2
    assert "Invalid pipeline configuration" in result.output


def test_run_from_event_file(runner, tmp_path):
    wf_path = _write_workflow(tmp_path)
    event = tmp_path / "event.json"
    event.write_text(json.dumps({"kind": "pull_request", "action": "ready_for_review", "draft": True}))
    result = runner.invoke(cli, _run_args(tmp_path, wf_path, "--event-file", str(event)))
    assert result.exit_code == 0, result.output
    assert "VERDICT: SUCCESS" in result.output


def test_invalid_event_exits_with_configuration_code(runner, tmp_path):
    wf_path = _write_workflow(tmp_path)
    result = runner.invoke(cli, _run_args(tmp_path, wf_path, "--event", "change_request"))
    assert result.exit_code == 2
    assert "Invalid event" in result.output


def test_missing_workflow_file(runner, tmp_path):
    result = runner.invoke(cli, ["plan", "--workflow", str(tmp_path / "absent.py")])
    assert result.exit_code == 1
    assert "Workflow file not found" in result.output


@pytest.mark.parametrize(
    "args, code",
    [
        (["--ref", "master"], 0),
        (["--ref", "refs/heads/master"], 0),
        (["--ref", "develop"], 1),
        (["--event", "change_request", "--action", "synchronized", "--draft"], 1),
        (["--event", "change_request", "--action", "synchronized", "--ready"], 0),
        (["--event", "change_request", "--action", "marked_ready", "--draft"], 0),
    ],
)
def test_evaluate(runner, args, code):
    result = runner.invoke(cli, ["evaluate", *args])
    assert result.exit_code == code, result.output


def test_dockerfile_to_stdout(runner):
    result = runner.invoke(cli, ["dockerfile", "--user", "dev", "--uid", "1500"])
    assert result.exit_code == 0
    assert 'ARG USER="dev"' in result.output
    assert 'ARG UID="1500"' in result.output


def test_dockerfile_to_file(runner, tmp_path):
    target = tmp_path / "Dockerfile"
    result = runner.invoke(cli, ["dockerfile", "-o", str(target)])
    assert result.exit_code == 0
    assert target.read_text().startswith('ARG VARIANT="edge"')
