import os
import tempfile
import time
from pathlib import Path

import pytest

os.environ.setdefault("ENDPOINT_DOCTOR_LOG", str(Path(tempfile.gettempdir()) / "endpoint_doctor_tests" / "server.log"))

from fastapi.testclient import TestClient  # noqa: E402

from conftest import FakeSystemControl, snapshot_data  # noqa: E402
from endpoint_doctor import server  # noqa: E402


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("ENDPOINT_DOCTOR_SETTLE_SECONDS", "0")
    monkeypatch.setattr(server, "RATE_LIMITER", server.RequestBudget())
    fake = FakeSystemControl()
    monkeypatch.setattr(server, "build_system_control", lambda: fake)
    with TestClient(server.app) as c:
        c.fake = fake
        yield c


def _wait_for_job(client, job_id):
    for _ in range(100):
        body = client.get(f"/api/v1/jobs/{job_id}/result").json()
        if body["data"]["status"] in ("completed", "failed"):
            return body["data"]
        time.sleep(0.05)
    raise AssertionError(f"job {job_id} did not finish")


def test_healthz(client):
    body = client.get("/healthz").json()
    assert body["status"] == "ok"
    assert body["data"]["healthy"] is True


def test_evaluate_endpoint(client):
    data = snapshot_data(ram={"total_mb": 1000, "used_mb": 990})
    body = client.post("/api/v1/evaluate", json={"snapshot": data}).json()
    assert body["status"] == "ok"
    assert body["data"]["health_score"] == 80
    assert body["data"]["issues"][0]["severity"] == "Critical"


def test_evaluate_rejects_malformed_snapshot(client):
    resp = client.post("/api/v1/evaluate", json={"snapshot": {"ram": "lots"}})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "INVALID_INPUT"


def test_plan_endpoint(client):
    data = snapshot_data(network={"dns_response": "Failed"}, system={"uptime_hours": 24 * 30})
    body = client.post("/api/v1/plan", json={"snapshot": data}).json()
    keys = [a["action_key"] for a in body["data"]["actions"]]
    assert keys == ["FlushDns", "ScheduleRestart"]
    assert body["data"]["manual"] == ["ScheduleRestart"]
    assert body["meta"] == {"automatable": 1, "manual": 1}


def test_run_requires_confirmation(client):
    resp = client.post("/api/v1/optimize/run", json={"snapshot": snapshot_data(), "actions": []})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "CONFIRMATION_REQUIRED"


def test_run_executes_plan_in_background(client):
    data = snapshot_data(network={"dns_response": "Failed"}, system={"uptime_hours": 24 * 30}, disk={"recycle_bin_mb": 300})
    plan = client.post("/api/v1/plan", json={"snapshot": data}).json()["data"]["actions"]

    body = client.post("/api/v1/optimize/run", json={"snapshot": data, "actions": plan, "confirm": True}).json()
    result = _wait_for_job(client, body["data"]["job_id"])

    assert result["status"] == "completed"
    statuses = {a["action_key"]: a["status"] for a in result["result"]["actions"]}
    assert statuses == {"EmptyRecycleBin": "Success", "FlushDns": "Success", "ScheduleRestart": "Pending"}
    assert result["result"]["summary"]["total_freed_mb"] == 300
    assert client.fake.spawned == [["ipconfig", "/flushdns"]]

    job = client.get(f"/api/v1/jobs/{body['data']['job_id']}").json()["data"]
    assert job["progress"]["phase"] == "run_completed"
    assert job["progress"]["pct"] == 100.0


def test_run_only_selected_keys(client):
    data = snapshot_data(network={"dns_response": "Failed"}, disk={"recycle_bin_mb": 300})

    body = client.post("/api/v1/optimize/run", json={"snapshot": data, "only": ["FlushDns"], "confirm": True}).json()
    result = _wait_for_job(client, body["data"]["job_id"])

    statuses = {a["action_key"]: a["status"] for a in result["result"]["actions"]}
    assert statuses == {"EmptyRecycleBin": "Skipped", "FlushDns": "Success"}


def test_run_rejects_malformed_plan(client):
    resp = client.post("/api/v1/optimize/run", json={"snapshot": snapshot_data(), "actions": [{"title": "x"}], "confirm": True})
    assert resp.status_code == 400


def test_compare_endpoint(client):
    before = snapshot_data(ram={"total_mb": 16000, "used_mb": 15000})
    after = snapshot_data(ram={"total_mb": 16000, "used_mb": 8000})
    body = client.post("/api/v1/compare", json={"before": before, "after": after}).json()
    assert body["data"]["ram_freed_mb"] == 7000
    assert body["data"]["score_delta"] > 0


def test_actions_catalog(client):
    actions = client.get("/api/v1/actions").json()["data"]["actions"]
    by_key = {a["key"]: a for a in actions}
    assert by_key["ClearTempFiles"]["automated"] is True
    assert by_key["RemoveWindowsOld"]["automated"] is False


def test_unknown_job(client):
    assert client.get("/api/v1/jobs/nope").status_code == 404
    with client.websocket_connect("/api/v1/ws/jobs/nope") as ws:
        assert ws.receive_json()["status"] == "error"


def test_websocket_streams_job(client):
    data = snapshot_data(disk={"recycle_bin_mb": 300})
    plan = client.post("/api/v1/plan", json={"snapshot": data}).json()["data"]["actions"]
    job_id = client.post("/api/v1/optimize/run", json={"snapshot": data, "actions": plan, "confirm": True}).json()["data"]["job_id"]
    _wait_for_job(client, job_id)

    with client.websocket_connect(f"/api/v1/ws/jobs/{job_id}") as ws:
        assert ws.receive_json()["event"] == "connected"
        final = ws.receive_json()
        assert final["event"] == "completed"
        assert final["job"]["result"]["summary"]["total_freed_mb"] == 300


def test_run_refuses_plans_that_do_not_match_the_snapshot(client, tmp_path):
    temp = tmp_path / "home" / "alice" / "AppData" / "Local" / "Temp"
    documents = tmp_path / "home" / "alice" / "Documents"
    temp.mkdir(parents=True)
    documents.mkdir(parents=True)
    (documents / "thesis.docx").write_text("chapter one", encoding="utf-8")
    data = snapshot_data(disk={"temp_folders": [{"path": str(temp), "size_mb": 900}]})
    plan = client.post("/api/v1/plan", json={"snapshot": data}).json()["data"]["actions"]
    plan[0]["targets"] = [str(documents)]

    resp = client.post("/api/v1/optimize/run", json={"snapshot": data, "actions": plan, "confirm": True})
    assert resp.status_code == 400
    assert "targets differ" in resp.json()["error"]["message"]

    foreign = [{"action_key": "RestartShell:explorer", "is_automatable": True, "targets": ["cmd.exe", "/c", "rd", "/s", "/q", "C:\\"]}]
    resp = client.post("/api/v1/optimize/run", json={"snapshot": data, "actions": foreign, "confirm": True})
    assert resp.status_code == 400
    assert (documents / "thesis.docx").exists()


def test_run_cleans_only_snapshot_folders(client, tmp_path):
    temp = tmp_path / "Temp"
    temp.mkdir()
    (temp / "setup.tmp").write_bytes(b"x" * 1024)
    data = snapshot_data(disk={"temp_folders": [{"path": str(temp), "size_mb": 900}]})

    body = client.post("/api/v1/optimize/run", json={"snapshot": data, "only": ["ClearTempFiles"], "confirm": True}).json()
    assert body["data"]["selected"] == ["ClearTempFiles"]
    result = _wait_for_job(client, body["data"]["job_id"])
    assert result["result"]["actions"][0]["status"] == "Success"
    assert list(temp.iterdir()) == []


def test_compare_endpoint_verifies_run(client):
    before = snapshot_data(disk={"recycle_bin_mb": 400})
    after = snapshot_data(disk={"recycle_bin_mb": 50})
    executed = [{"action_key": "EmptyRecycleBin", "is_automatable": True, "status": "Success", "actual_freed_mb": 350}]
    body = client.post("/api/v1/compare", json={"before": before, "after": after, "result": executed}).json()
    assert body["data"]["verification"] == [{
        "action_key": "EmptyRecycleBin",
        "title": "",
        "status": "PartiallyVerified",
        "message": "Recycle bin still 50 MB",
    }]


def test_finished_jobs_are_dropped_beyond_retention(client, monkeypatch):
    monkeypatch.setattr(server, "RUNS", server.RunJobRegistry(retention=2))
    data = snapshot_data(network={"dns_response": "Failed"})
    job_ids = []
    for _ in range(3):
        job_id = client.post("/api/v1/optimize/run", json={"snapshot": data, "confirm": True}).json()["data"]["job_id"]
        _wait_for_job(client, job_id)
        job_ids.append(job_id)

    listed = client.get("/api/v1/jobs").json()["data"]["jobs"]
    assert [j["job_id"] for j in listed] == job_ids[1:]
    assert client.get(f"/api/v1/jobs/{job_ids[0]}").status_code == 404


# ------------------------------ Job internals ------------------------------- #


def test_progress_reaches_100_on_completion():
    from endpoint_doctor.events import ACTION_FINISHED, ACTION_STARTED, RUN_COMPLETED, ActionEvent

    assert server.progress_for(ActionEvent(ACTION_STARTED, "r", 1, 4))["pct"] == 0.0
    assert server.progress_for(ActionEvent(ACTION_FINISHED, "r", 1, 4))["pct"] == 25.0
    assert server.progress_for(ActionEvent(RUN_COMPLETED, "r", total=4))["pct"] == 100.0
    assert server.progress_for(ActionEvent(RUN_COMPLETED, "r", total=0))["pct"] == 100.0


def test_listener_entries_are_removed_with_last_listener():
    registry = server.RunJobRegistry()
    job = registry.start([], lambda bus: server.ActionExecutor(FakeSystemControl(), bus=bus))
    first, second = registry.listen(job.job_id), registry.listen(job.job_id)
    assert registry.listener_count(job.job_id) == 2
    registry.stop_listening(job.job_id, first)
    registry.stop_listening(job.job_id, second)
    assert registry.listener_count(job.job_id) == 0
    assert registry._listeners == {}
    assert registry.listen("missing") is None


def test_request_budget_limits_and_forgets_idle_clients():
    now = [0.0]
    budget = server.RequestBudget(limit=2, window_seconds=10, clock=lambda: now[0])
    assert budget.allow("a") and budget.allow("a")
    assert not budget.allow("a")
    assert budget.allow("b")
    assert budget.tracked_clients == 2

    now[0] = 11.0
    assert budget.allow("c")
    assert budget.tracked_clients == 1
    assert budget.allow("a")
