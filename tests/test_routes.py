# ============================================================================
# API ROUTE TESTS
# ============================================================================
# STATUS: Tests - HTTP surface
# PURPOSE: Drive the FastAPI routes against an in-memory engine
# CREATED: 19 OCT 2026
# ============================================================================
"""
API Route Tests

Requests go through fastapi.testclient.TestClient; queued work is
drained between requests with the consumer fixture.

Run with:
    pytest tests/test_routes.py -v
"""

import asyncio
import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api import health_router, router, set_services
from orchestrator import Scheduler


@pytest.fixture
def client(engine):
    app = FastAPI()
    app.include_router(health_router)
    app.include_router(router, prefix="/api/v1")
    set_services(engine)
    yield TestClient(app)
    set_services(None)


def _body(nodes, connections=None, params=None):
    return {
        "workflow_id": "wf-1",
        "graph": {"nodes": nodes, "connections": connections or []},
        "input_params": params or {},
    }


CHAIN = _body(
    {"a": {"node_type": "echo", "data": {"text": "hi"}}, "b": {"node_type": "echo"}},
    [{"from": {"nodeId": "a", "portId": "output"}, "to": {"nodeId": "b", "portId": "input"}}],
)


class TestExecutionRoutes:

    def test_start_and_follow(self, client, consumer):
        response = client.post("/api/v1/executions", json=CHAIN)
        assert response.status_code == 201
        execution_id = response.json()["id"]
        assert response.json()["status"] == "running"

        asyncio.run(consumer.drain())

        detail = client.get(f"/api/v1/executions/{execution_id}").json()
        assert detail["execution"]["status"] == "completed"
        assert detail["execution"]["progress"] == 100
        assert detail["task_summary"] == {"completed": 2}
        outputs = {t["node_id"]: t["output_data"] for t in detail["tasks"]}
        assert outputs["b"]["output"] == "hi"

        listed = client.get("/api/v1/executions", params={"status": "completed"}).json()
        assert [e["id"] for e in listed["executions"]] == [execution_id]

    def test_cyclic_graph_rejected(self, client):
        body = _body(
            {"a": {"node_type": "echo"}, "b": {"node_type": "echo"}},
            [{"from_node": "a", "to_node": "b"}, {"from_node": "b", "to_node": "a"}],
        )
        response = client.post("/api/v1/executions", json=body)
        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["error"] == "invalid_workflow"
        assert detail["errors"]

    def test_unknown_node_type_rejected(self, client):
        response = client.post("/api/v1/executions", json=_body({"a": {"node_type": "no-such-node"}}))
        assert response.status_code == 400
        assert "no-such-node" in " ".join(response.json()["detail"]["errors"])

    def test_unknown_execution_404(self, client):
        assert client.get("/api/v1/executions/missing").status_code == 404
        assert client.post("/api/v1/executions/missing/cancel").status_code == 404

    def test_cancel_then_conflict(self, client, consumer):
        started = client.post("/api/v1/executions", json=_body({"g": {"node_type": "fake-gen"}})).json()
        asyncio.run(consumer.drain())

        first = client.post(f"/api/v1/executions/{started['id']}/cancel")
        second = client.post(f"/api/v1/executions/{started['id']}/cancel")

        assert first.status_code == 200
        assert first.json()["status"] == "cancelled"
        assert second.status_code == 409

    def test_stop_node(self, client, consumer):
        started = client.post("/api/v1/executions", json=_body({"g": {"node_type": "fake-gen"}})).json()
        other = client.post("/api/v1/executions", json=_body({"g": {"node_type": "fake-gen"}})).json()
        asyncio.run(consumer.drain())
        task_id = client.get(f"/api/v1/executions/{started['id']}").json()["tasks"][0]["id"]

        wrong_run = client.post(f"/api/v1/executions/{other['id']}/tasks/{task_id}/stop")
        first = client.post(f"/api/v1/executions/{started['id']}/tasks/{task_id}/stop")
        second = client.post(f"/api/v1/executions/{started['id']}/tasks/{task_id}/stop")

        assert wrong_run.status_code == 404
        assert first.status_code == 200
        assert first.json()["status"] == "failed"
        assert first.json()["error_message"] == "Stopped by user"
        assert second.status_code == 409
        detail = client.get(f"/api/v1/executions/{started['id']}").json()
        assert detail["execution"]["status"] == "failed"
        assert client.post(f"/api/v1/executions/{started['id']}/tasks/missing/stop").status_code == 404


class TestWebhookRoutes:

    def test_invalid_json_400(self, client):
        response = client.post("/api/v1/webhooks/kapi", content=b"<html>")
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_callback_applied(self, client, consumer):
        started = client.post("/api/v1/executions", json=_body({"g": {"node_type": "fake-gen"}})).json()
        asyncio.run(consumer.drain())

        payload = {"data": {
            "taskId": "ext-1",
            "state": "success",
            "resultJson": json.dumps({"resultUrls": ["https://cdn/z.png"]}),
        }}
        response = client.post("/api/v1/webhooks/kapi", content=json.dumps(payload))
        assert response.status_code == 200
        assert response.json()["outcome"] == "applied"

        detail = client.get(f"/api/v1/executions/{started['id']}").json()
        assert detail["execution"]["status"] == "completed"
        assert detail["tasks"][0]["output_data"]["result_url"] == "https://cdn/z.png"

    def test_unknown_task_still_200(self, client):
        response = client.post("/api/v1/webhooks/jcut", json={"task_id": "ext-77", "status": "done"})
        assert response.status_code == 200
        assert response.json()["outcome"] == "not_found"

        events = client.get("/api/v1/admin/webhooks", params={"processed": False}).json()
        assert events["total"] == 1
        assert events["events"][0]["summary"]["external_id"] == "ext-77"
        assert events["events"][0]["summary"]["outcome"] == "success"


class TestAdminRoutes:

    def test_queue_view(self, client):
        client.post("/api/v1/executions", json=CHAIN)
        body = client.get("/api/v1/admin/queue").json()
        assert body["counts"]["pending"] == 1
        assert body["total"] == 1
        assert body["recent"][0]["payload"]["node_id"] == "a"

    def test_execution_tasks(self, client):
        started = client.post("/api/v1/executions", json=CHAIN).json()
        body = client.get(f"/api/v1/admin/executions/{started['id']}/tasks").json()
        assert {t["node_id"]: t["status"] for t in body["tasks"]} == {"a": "queued", "b": "pending"}

    def test_remediate_stuck_tasks(self, client, consumer):
        for _ in range(2):
            client.post("/api/v1/executions", json=_body({"g": {"node_type": "fake-gen"}}))
        asyncio.run(consumer.drain())

        response = client.post("/api/v1/admin/remediate/stuck-tasks", params={"node_type": "fake-gen"})
        assert response.status_code == 200
        assert response.json()["fixed"] == 2

        missing = client.post("/api/v1/admin/remediate/stuck-tasks")
        assert missing.status_code == 422

    def test_status_without_loops(self, client):
        assert client.get("/api/v1/admin/status").json() == {"scheduler": None, "consumer": None}


class TestHealth:

    def test_healthy_without_scheduler(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["storage_backend"] == "memory"

    def test_degraded_when_scheduler_stopped(self, client, engine):
        set_services(engine, scheduler=Scheduler())
        body = client.get("/health").json()
        assert body["status"] == "degraded"
        assert body["scheduler"]["running"] is False
