# tests/test_api.py
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import FakeExecutor, wait_for
from stageflow.api import create_app


@pytest.fixture
def app(tmp_path, static_site, site_executor):
    return create_app(
        static_site,
        executor_factory=lambda: site_executor,
        work_dir=str(tmp_path / "work"),
        artifact_dir=str(tmp_path / "artifacts"),
        max_workers=2,
    )


@pytest.fixture
def client(app):
    return TestClient(app)


def gate_open(client, run_id, job):
    def check():
        body = client.get(f"/runs/{run_id}").json()
        return body["jobs"][job]["gate"] == "awaiting-approval"

    return check


class TestCreateRun:
    def test_feature_push_creates_nothing(self, client):
        r = client.post("/runs", json={"event": "push", "branch": "feature-x"})
        assert r.status_code == 200
        assert r.json() == {"created": False, "run_id": None, "jobs": [], "excluded": []}

    def test_merge_request_runs_to_completion(self, client, app):
        r = client.post("/runs", json={"event": "merge_request_event", "branch": "feature-x"})
        body = r.json()
        assert body["created"]
        assert set(body["jobs"]) == {"build_website", "unit_tests", "deploy_preview"}
        assert body["excluded"] == ["deploy_prod"]

        run_id = body["run_id"]
        assert app.state.registry.join(run_id, timeout=10)

        status = client.get(f"/runs/{run_id}").json()
        assert status["status"] == "succeeded"
        preview = status["jobs"]["deploy_preview"]
        assert preview["environment"] == {
            "name": "preview/feature-x",
            "url": "https://feature-x.example.com",
            "action": "start",
        }
        assert status["jobs"]["build_website"]["artifacts"] == ["public/index.html"]
        assert status["variables"]["SITE_VERSION"] == "1.2.3"

    def test_inline_pipeline_document(self, client, app):
        doc = {"lint": {"script": "ruff check ."}}
        r = client.post("/runs", json={"branch": "main", "pipeline": doc})
        body = r.json()
        assert body["jobs"] == ["lint"]
        assert app.state.registry.join(body["run_id"], timeout=10)
        assert client.get(f"/runs/{body['run_id']}").json()["status"] == "succeeded"

    def test_invalid_inline_pipeline(self, client):
        r = client.post("/runs", json={"branch": "main", "pipeline": {"lint": {"stage": "test"}}})
        assert r.status_code == 422
        assert r.json()["detail"]["kind"] == "ConfigError"

    def test_no_workflow_configured(self, tmp_path):
        client = TestClient(create_app(executor_factory=FakeExecutor, work_dir=str(tmp_path)))
        r = client.post("/runs", json={"branch": "main"})
        assert r.status_code == 400

    def test_unknown_run(self, client):
        assert client.get("/runs/nope").status_code == 404


class TestGates:
    def test_approve_manual_deploy(self, client, app, site_executor):
        run_id = client.post("/runs", json={"branch": "main"}).json()["run_id"]
        assert wait_for(gate_open(client, run_id, "deploy_prod"))
        assert wait_for(lambda: client.get(f"/runs/{run_id}").json()["status"] == "manual")

        r = client.post(f"/runs/{run_id}/jobs/deploy_prod/approve", json={"actor": "alice"})
        assert r.status_code == 200
        assert r.json() == {"job": "deploy_prod", "state": "approved", "actor": "alice", "reason": None}

        assert app.state.registry.join(run_id, timeout=10)
        status = client.get(f"/runs/{run_id}").json()
        assert status["status"] == "succeeded"
        assert status["jobs"]["deploy_prod"]["environment"]["url"] == "https://www.example.com"
        assert site_executor.attempts("deploy_prod") == 1

    def test_approve_without_body(self, client, app):
        run_id = client.post("/runs", json={"branch": "main"}).json()["run_id"]
        assert wait_for(gate_open(client, run_id, "deploy_prod"))
        r = client.post(f"/runs/{run_id}/jobs/deploy_prod/approve")
        assert r.json()["actor"] == "api"
        assert app.state.registry.join(run_id, timeout=10)

    def test_reject_fails_run(self, client, app):
        run_id = client.post("/runs", json={"branch": "main"}).json()["run_id"]
        assert wait_for(gate_open(client, run_id, "deploy_prod"))
        r = client.post(f"/runs/{run_id}/jobs/deploy_prod/reject", json={"actor": "alice", "reason": "freeze"})
        assert r.json()["state"] == "rejected"
        assert app.state.registry.join(run_id, timeout=10)
        status = client.get(f"/runs/{run_id}").json()
        assert status["status"] == "failed"
        assert status["jobs"]["deploy_prod"]["state"] == "canceled"

    def test_approve_job_without_gate(self, client):
        run_id = client.post("/runs", json={"branch": "main"}).json()["run_id"]
        r = client.post(f"/runs/{run_id}/jobs/unit_tests/approve")
        assert r.status_code == 409
        assert r.json()["detail"]["kind"] == "UnknownGateError"
        client.post(f"/runs/{run_id}/cancel")

    def test_unknown_job(self, client):
        run_id = client.post("/runs", json={"branch": "main"}).json()["run_id"]
        assert client.post(f"/runs/{run_id}/jobs/nope/approve").status_code == 404
        client.post(f"/runs/{run_id}/cancel")


class TestCancel:
    def test_cancel_paused_run(self, client):
        run_id = client.post("/runs", json={"branch": "main"}).json()["run_id"]
        assert wait_for(gate_open(client, run_id, "deploy_prod"))
        r = client.post(f"/runs/{run_id}/cancel")
        body = r.json()
        assert body["status"] == "canceled"
        assert body["jobs"]["deploy_prod"]["state"] == "canceled"
