import pytest
from fastapi.testclient import TestClient

from matrixci import job, sh
from matrixci.cloud.app import create_app
from matrixci.settings import Settings
from matrixci.step_workflows.rust import canonical_jobs


def _client(runner, jobs=None):
    app = create_app(
        load_jobs=lambda: jobs if jobs is not None else canonical_jobs(),
        settings=Settings(watched_branches=["master"], max_workers=2),
        cell_runner=runner,
    )
    return TestClient(app)


def test_eligible_push_runs_the_pipeline(fake_runner):
    runner = fake_runner()
    client = _client(runner)

    resp = client.post("/events", json={"kind": "push", "ref": "master"})
    assert resp.status_code == 202
    body = resp.json()
    assert body["eligible"] is True

    run = client.get(f"/runs/{body['run_id']}").json()
    assert run["status"] == "finished"
    assert run["verdict"] == "success"
    assert run["event"] == "push to master"
    assert set(run["jobs"]) == {"format_check", "lint_check", "build_and_test"}
    assert len(run["jobs"]["lint_check"]["cells"]) == 3
    assert len(runner.calls) == 7


def test_ineligible_event_is_recorded_as_not_run(fake_runner):
    runner = fake_runner()
    client = _client(runner)

    resp = client.post(
        "/events",
        json={"kind": "pull_request", "action": "synchronize", "draft": True},
    )
    assert resp.status_code == 202
    body = resp.json()
    assert body["eligible"] is False
    assert body["status"] == "finished"

    run = client.get(f"/runs/{body['run_id']}").json()
    assert run["verdict"] == "not_run"
    assert run["jobs"] == {}
    assert runner.calls == []


def test_failed_lint_cell_is_reported_per_cell(fake_runner):
    runner = fake_runner(failing={("lint_check", "windows-latest")})
    client = _client(runner)

    run_id = client.post("/events", json={"kind": "change_request", "action": "opened"}).json()["run_id"]
    run = client.get(f"/runs/{run_id}").json()

    assert run["verdict"] == "failure"
    lint_cells = {c["cell"]["platform"]: c["state"] for c in run["jobs"]["lint_check"]["cells"]}
    assert lint_cells == {"ubuntu-latest": "success", "windows-latest": "failure", "macos-latest": "success"}
    assert run["jobs"]["build_and_test"]["state"] == "skipped"
    assert run["jobs"]["build_and_test"]["skip_reason"].startswith("dependency unmet")


def test_configuration_error_is_reported(fake_runner):
    broken = [job("a", sh("x", "true"), needs=["missing"])]
    client = _client(fake_runner(), jobs=broken)

    run_id = client.post("/events", json={"kind": "push", "ref": "refs/heads/master"}).json()["run_id"]
    run = client.get(f"/runs/{run_id}").json()
    assert run["verdict"] == "error"
    assert "missing" in run["error"]


@pytest.mark.parametrize(
    "payload",
    [
        {"kind": "tag", "ref": "v1"},
        {"kind": "push"},
        {"kind": "change_request"},
    ],
)
def test_invalid_payload_is_rejected(fake_runner, payload):
    client = _client(fake_runner())
    assert client.post("/events", json=payload).status_code == 422


def test_unknown_run(fake_runner):
    client = _client(fake_runner())
    assert client.get("/runs/does-not-exist").status_code == 404


def test_runs_are_listed(fake_runner):
    client = _client(fake_runner())
    client.post("/events", json={"kind": "push", "ref": "develop"})
    client.post("/events", json={"kind": "push", "ref": "master"})
    runs = client.get("/runs").json()
    assert sorted(r["verdict"] for r in runs) == ["not_run", "success"]


def test_workflow_load_failure_finishes_the_run(fake_runner):
    def missing_workflow():
        raise FileNotFoundError("Workflow file not found: matrixci_workflow.py")

    app = create_app(
        load_jobs=missing_workflow,
        settings=Settings(watched_branches=["master"]),
        cell_runner=fake_runner(),
    )
    client = TestClient(app)

    run_id = client.post("/events", json={"kind": "push", "ref": "master"}).json()["run_id"]
    run = client.get(f"/runs/{run_id}").json()
    assert run["status"] == "finished"
    assert run["verdict"] == "error"
    assert "FileNotFoundError" in run["error"]


def test_finished_runs_are_evicted_beyond_the_limit(fake_runner):
    app = create_app(
        load_jobs=canonical_jobs,
        settings=Settings(watched_branches=["master"]),
        cell_runner=fake_runner(),
        max_runs=2,
    )
    client = TestClient(app)
    ids = [client.post("/events", json={"kind": "push", "ref": "develop"}).json()["run_id"] for _ in range(4)]

    assert len(client.get("/runs").json()) == 2
    assert client.get(f"/runs/{ids[0]}").status_code == 404
    assert client.get(f"/runs/{ids[-1]}").status_code == 200
