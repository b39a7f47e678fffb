"""
API Tests — Runs and Status Endpoints
=====================================
Drives the FastAPI app with TestClient. Containers run against the fake
Docker client, so no daemon is needed.
"""
import time

import pytest
from fastapi.testclient import TestClient

from isobuild.api.runs import store
from isobuild.executor.container_manager import ContainerManager, ContainerRegistry
from main import app


@pytest.fixture
def client(fake_docker, tmp_path):
    store.clear()
    store.manager_factory = lambda: ContainerManager(
        registry=ContainerRegistry(),
        client=fake_docker,
        artifact_root=str(tmp_path / "artifacts"),
        stop_timeout=1,
    )
    store.orchestrator_options = {
        "temp_dir": str(tmp_path / "shared"),
        "file_prefix": "api",
        "max_memory_per_container_mb": 1,
        "poll_interval": 0.02,
        "graceful_timeout": 1,
    }
    with TestClient(app) as c:
        yield c
    store.manager_factory = None
    store.orchestrator_options = {}
    store.clear()


def _step(project_root, name, command="make", **kwargs):
    return {
        "step_name": name,
        "docker_image": "rust:1.77-slim",
        "build_command": command,
        "project_root": project_root,
        **kwargs,
    }


def _wait_finished(client, run_id, timeout=10):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/runs/{run_id}").json()
        if body["status"] != "running":
            return body
        time.sleep(0.05)
    raise AssertionError(f"run {run_id} did not finish")


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "active_runs": 0}


def test_submit_and_finish(client, project_root):
    payload = {"build_steps": [
        _step(project_root, "build"),
        _step(project_root, "lint"),
        _step(project_root, "test", command="make test", dependencies=[0]),
    ]}

    response = client.post("/runs", json=payload)

    assert response.status_code == 202
    data = response.json()
    assert data["status"] == "running"
    assert data["execution_order"] == [0, 1, 2]
    assert data["parallel_groups"] == [[0, 1], [2]]

    body = _wait_finished(client, data["run_id"])
    assert body["status"] == "finished"
    assert body["exit_code"] == 0
    assert [s["status"] for s in body["steps"]] == ["succeeded"] * 3


def test_failed_step_reported(client, fake_docker, project_root):
    fake_docker.script("broken", exit_code=2)
    payload = {"build_steps": [
        _step(project_root, "build", command="broken"),
        _step(project_root, "test", dependencies=[0]),
    ]}
    run_id = client.post("/runs", json=payload).json()["run_id"]

    body = _wait_finished(client, run_id)

    assert body["exit_code"] == 1
    assert body["steps"][0]["status"] == "failed"
    assert body["steps"][0]["exit_code"] == 2
    assert body["steps"][1]["status"] == "aborted"


def test_cycle_rejected(client, project_root, fake_docker):
    payload = {"build_steps": [
        _step(project_root, "a", dependencies=[1]),
        _step(project_root, "b", dependencies=[0]),
    ]}
    response = client.post("/runs", json=payload)
    assert response.status_code == 400
    assert "cycle" in response.json()["detail"]
    assert fake_docker.launched == []


def test_missing_project_root_rejected(client, tmp_path):
    payload = {"build_steps": [_step(str(tmp_path / "gone"), "a")]}
    assert client.post("/runs", json=payload).status_code == 400


def test_blank_field_rejected(client, project_root):
    payload = {"build_steps": [_step(project_root, "  ")]}
    assert client.post("/runs", json=payload).status_code == 422


def test_unknown_run(client):
    assert client.get("/runs/nope").status_code == 404
    assert client.delete("/runs/nope").status_code == 404


def test_interrupt_run(client, fake_docker, project_root):
    fake_docker.script("long", delay=10)
    payload = {"build_steps": [
        _step(project_root, "slow", command="long"),
        _step(project_root, "after", dependencies=[0]),
    ]}
    run_id = client.post("/runs", json=payload).json()["run_id"]

    deadline = time.monotonic() + 5
    while "long" not in fake_docker.commands_run() and time.monotonic() < deadline:
        time.sleep(0.02)

    status = client.get("/status").json()
    assert status["active_runs"] == 1
    assert status["runs"][0]["run_id"] == run_id

    result = client.delete(f"/runs/{run_id}").json()
    assert result["graceful_termination"] == "initiated"

    body = _wait_finished(client, run_id)
    assert body["exit_code"] == 130
    assert body["interrupted"] is True
    assert body["steps"][1]["status"] == "aborted"


def test_status_without_runs(client):
    assert client.get("/status").json() == {"active_runs": 0, "runs": []}
