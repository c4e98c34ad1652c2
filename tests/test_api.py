import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from relayci.api import create_app
from relayci.archive import RunArchive
from relayci.dsl import job, sh
from relayci.model import JobState, Workflow, WorkflowRun

SIMPLE_DOCUMENT = """
jobs:
  lint:
    steps:
    - run: echo linting
  test:
    steps:
    - run:
        name: junit
        command: mkdir -p out && echo '<testsuite name="t"><testcase name="ok"/></testsuite>' > out/junit.xml
    - store_test_results:
        path: out/junit.xml
workflows:
  commit:
    jobs:
    - lint
    - test: { requires: [lint] }
"""


@pytest.fixture
def archive() -> RunArchive:
    return RunArchive("sqlite://")


@pytest.fixture
def client(scheduler, archive, tmp_path: Path) -> TestClient:
    return TestClient(create_app(scheduler, archive=archive, base_dir=tmp_path))


def _wait_done(client: TestClient, run_id: str) -> dict:
    deadline = time.monotonic() + 20
    while True:
        data = client.get(f"/runs/{run_id}").json()
        if data["status"] != "running":
            return data
        assert time.monotonic() < deadline, data
        time.sleep(0.05)


def test_create_and_follow_a_run(client: TestClient) -> None:
    resp = client.post("/runs", json={"document": SIMPLE_DOCUMENT})
    assert resp.status_code == 200
    created = resp.json()
    assert created["workflow"] == "commit"
    assert created["order"] == ["lint", "test"]

    data = _wait_done(client, created["run_id"])
    assert data["status"] == "succeeded"
    assert data["jobs"]["lint"]["steps"][0]["output"] == "linting\n"
    assert data["jobs"]["test"]["artifacts"] == ["out/junit.xml"]

    listed = client.get("/runs").json()
    assert {"id": created["run_id"], "workflow": "commit", "status": "succeeded"} in listed


def test_reports_and_junit_endpoints(client: TestClient) -> None:
    run_id = client.post("/runs", json={"document": SIMPLE_DOCUMENT}).json()["run_id"]
    _wait_done(client, run_id)

    reports = client.get(f"/runs/{run_id}/reports/test").json()
    assert [r["tests"] for r in reports] == [1]
    assert client.get(f"/runs/{run_id}/reports/nope").status_code == 404

    junit = client.get(f"/runs/{run_id}/junit")
    assert junit.status_code == 200
    assert junit.headers["content-type"].startswith("application/xml")
    assert b'name="test:out/junit.xml"' in junit.content


def test_cancel_endpoint(client: TestClient) -> None:
    doc = "jobs:\n  slow:\n    steps:\n    - run: sleep 30\n  after:\n    requires: [slow]\n    steps:\n    - run: 'true'\n"
    run_id = client.post("/runs", json={"document": doc}).json()["run_id"]

    deadline = time.monotonic() + 10
    while client.get(f"/runs/{run_id}").json()["jobs"]["slow"]["state"] != "running":
        assert time.monotonic() < deadline
        time.sleep(0.02)

    assert client.post(f"/runs/{run_id}/cancel").json() == {"ok": True}
    data = _wait_done(client, run_id)
    assert data["status"] == "cancelled"
    assert data["jobs"]["slow"]["reason"] == "Cancelled"
    assert data["jobs"]["after"]["state"] == "skipped"


def test_run_from_a_path_under_the_base_dir(client: TestClient, tmp_path: Path) -> None:
    (tmp_path / "pipeline.yml").write_text(SIMPLE_DOCUMENT)

    resp = client.post("/runs", json={"path": "pipeline.yml"})
    assert resp.status_code == 200
    assert _wait_done(client, resp.json()["run_id"])["status"] == "succeeded"

    escaped = client.post("/runs", json={"path": "../outside.yml"})
    assert escaped.status_code == 400


@pytest.mark.parametrize(
    "body",
    [
        {},
        {"document": SIMPLE_DOCUMENT, "path": "pipeline.yml"},
        {"document": "jobs:\n  a: {requires: [a], steps: [checkout]}\n"},
        {"document": SIMPLE_DOCUMENT, "workflow": "nightly"},
    ],
)
def test_bad_requests(client: TestClient, body: dict) -> None:
    assert client.post("/runs", json=body).status_code == 400


def test_unknown_run(client: TestClient) -> None:
    assert client.get("/runs/nope").status_code == 404
    assert client.post("/runs/nope/cancel").status_code == 404
    assert client.get("/runs/nope/junit").status_code == 404


def test_archived_runs_are_served_after_the_scheduler_forgets_them(client: TestClient, archive: RunArchive) -> None:
    workflow = Workflow(name="old", jobs=(job("a", sh("noop", "true")),))
    run = WorkflowRun(workflow=workflow, order=["a"])
    run.runs["a"].transition(JobState.READY)
    run.runs["a"].transition(JobState.RUNNING)
    run.runs["a"].transition(JobState.SUCCEEDED)
    archive.save(run.snapshot())

    data = client.get(f"/runs/{run.id}").json()
    assert data["workflow"] == "old"
    assert data["status"] == "succeeded"
