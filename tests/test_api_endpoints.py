"""Tests for the REST API using FastAPI's TestClient."""

import pytest
from fastapi.testclient import TestClient

from taskflow.config import get_testing_config
from taskflow.core.scheduling import InlineExecutor, ManualClock
from taskflow.factory import create_app, get_app_state

from conftest import build_workflow, linear_workflow


def workflow_json(definition):
    return definition.model_dump(mode="json")


def event_workflow():
    data = workflow_json(linear_workflow("orders"))
    data["triggers"] = [{"id": "on-order", "kind": "event", "config": {"event_name": "order.created"}}]
    return data


@pytest.fixture
def client(task_store):
    clock = ManualClock()
    app = create_app(get_testing_config(), task_store=task_store, clock=clock, executor=InlineExecutor())
    with TestClient(app) as test_client:
        yield test_client


def create_and_activate(client, data):
    response = client.post("/api/v1/workflows", json=data)
    assert response.status_code == 201
    flow_id = response.json()["flow_id"]
    response = client.post(f"/api/v1/workflows/{flow_id}/activate")
    assert response.status_code == 200
    return flow_id


class TestHealthEndpoints:
    """Test cases for service endpoints."""

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert "running" in response.json()["message"]

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"
        assert client.get("/health/live").json()["alive"] is True

    def test_detailed_health(self, client):
        response = client.get("/health/detailed")
        assert response.status_code == 200
        body = response.json()
        assert body["overall_status"] == "healthy"
        assert set(body["checks"]) == {"database", "execution_engine", "trigger_manager"}

    def test_readiness(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["ready"] is True


class TestWorkflowEndpoints:
    """Test cases for workflow definition endpoints."""

    def test_create_workflow(self, client):
        response = client.post("/api/v1/workflows", json=workflow_json(linear_workflow()))

        assert response.status_code == 201
        body = response.json()
        assert body["flow_id"] == "linear"
        assert body["version"] == 1
        assert body["validation"]["is_valid"] is True

    def test_create_invalid_draft_reports_violations(self, client):
        broken = build_workflow("Broken", nodes=[{"id": "end", "kind": "end"}], edges=[], id="broken")
        response = client.post("/api/v1/workflows", json=workflow_json(broken))

        assert response.status_code == 201
        codes = {v["code"] for v in response.json()["validation"]["violations"]}
        assert "missing_start" in codes

    def test_create_duplicate_conflicts(self, client):
        client.post("/api/v1/workflows", json=workflow_json(linear_workflow()))
        response = client.post("/api/v1/workflows", json=workflow_json(linear_workflow()))
        assert response.status_code == 409

    def test_malformed_definition(self, client):
        response = client.post("/api/v1/workflows", json={"name": "No nodes", "nodes": [{"id": "x", "kind": "teleport"}]})
        assert response.status_code == 422

    def test_validate_without_storing(self, client):
        response = client.post("/api/v1/workflows/validate", json=workflow_json(linear_workflow()))

        assert response.status_code == 200
        assert response.json()["is_valid"] is True
        assert client.get("/api/v1/workflows").json() == []

    def test_get_and_list(self, client):
        client.post("/api/v1/workflows", json=workflow_json(linear_workflow()))

        assert client.get("/api/v1/workflows/linear").json()["name"] == "Linear flow"
        summaries = client.get("/api/v1/workflows").json()
        assert [s["id"] for s in summaries] == ["linear"]
        assert summaries[0]["status"] == "draft"

    def test_get_missing_workflow(self, client):
        response = client.get("/api/v1/workflows/missing")

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "NotFoundError"

    def test_activate_invalid_workflow(self, client):
        broken = build_workflow("Broken", nodes=[{"id": "end", "kind": "end"}], edges=[], id="broken")
        client.post("/api/v1/workflows", json=workflow_json(broken))

        response = client.post("/api/v1/workflows/broken/activate")

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "GraphValidationError"

    def test_update_with_stale_version(self, client):
        client.post("/api/v1/workflows", json=workflow_json(linear_workflow()))
        body = {"workflow": workflow_json(linear_workflow()), "expected_version": 1}

        assert client.put("/api/v1/workflows/linear", json=body).json()["version"] == 2
        response = client.put("/api/v1/workflows/linear", json=body)

        assert response.status_code == 409
        assert response.json()["detail"]["details"]["actual_version"] == 2

    def test_pause_and_archive(self, client):
        create_and_activate(client, workflow_json(linear_workflow()))

        assert client.post("/api/v1/workflows/linear/pause").json()["status"] == "paused"
        assert client.post("/api/v1/workflows/linear/archive").json()["status"] == "archived"
        assert client.post("/api/v1/workflows/linear/activate").status_code == 409

    def test_delete_workflow(self, client):
        client.post("/api/v1/workflows", json=workflow_json(linear_workflow()))

        assert client.delete("/api/v1/workflows/linear").status_code == 200
        assert client.get("/api/v1/workflows/linear").status_code == 404


class TestExecutionEndpoints:
    """Test cases for execution endpoints."""

    def test_execute_draft_workflow(self, client):
        client.post("/api/v1/workflows", json=workflow_json(linear_workflow()))

        response = client.post("/api/v1/workflows/linear/execute")

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "WorkflowStateError"

    def test_execute_and_complete_tasks(self, client):
        create_and_activate(client, workflow_json(linear_workflow()))

        response = client.post("/api/v1/workflows/linear/execute", json={"context": {"customer": "acme"}})
        assert response.status_code == 202
        execution_id = response.json()["execution_id"]

        status = client.get(f"/api/v1/executions/{execution_id}").json()
        assert status["status"] == "running"
        assert status["flow_version"] == 2

        client.post("/api/v1/tasks/t1/complete", json={"output": {"approved": True}})
        client.post("/api/v1/tasks/t2/complete")

        status = client.get(f"/api/v1/executions/{execution_id}").json()
        assert status["status"] == "completed"
        assert status["context"] == {"customer": "acme", "approved": True}
        assert status["progress"] == 100.0

        logs = client.get(f"/api/v1/executions/{execution_id}/logs", params={"since_seq": 2}).json()
        assert [entry["seq"] for entry in logs] == [3, 4]
        assert logs[-1]["node_id"] == "end"

    def test_list_executions_by_workflow(self, client):
        create_and_activate(client, workflow_json(linear_workflow()))
        client.post("/api/v1/workflows/linear/execute")

        assert len(client.get("/api/v1/executions", params={"flow_id": "linear"}).json()) == 1
        assert client.get("/api/v1/executions", params={"flow_id": "other"}).json() == []

    def test_cancel_execution(self, client):
        create_and_activate(client, workflow_json(linear_workflow()))
        execution_id = client.post("/api/v1/workflows/linear/execute").json()["execution_id"]

        assert client.post(f"/api/v1/executions/{execution_id}/cancel").status_code == 202

        status = client.get(f"/api/v1/executions/{execution_id}").json()
        assert status["status"] == "cancelled"
        assert status["logs"][-1]["level"] == "warning"

    def test_pause_and_resume_execution(self, client):
        create_and_activate(client, workflow_json(linear_workflow()))
        execution_id = client.post("/api/v1/workflows/linear/execute").json()["execution_id"]

        client.post(f"/api/v1/executions/{execution_id}/pause")
        assert client.get(f"/api/v1/executions/{execution_id}").json()["status"] == "paused"

        client.post(f"/api/v1/executions/{execution_id}/resume")
        assert client.get(f"/api/v1/executions/{execution_id}").json()["status"] == "running"

    def test_unknown_execution(self, client):
        assert client.get("/api/v1/executions/nope").status_code == 404
        assert client.get("/api/v1/executions/nope/logs").status_code == 404
        assert client.post("/api/v1/executions/nope/cancel").status_code == 404

    def test_metrics(self, client):
        create_and_activate(client, workflow_json(linear_workflow()))
        client.post("/api/v1/workflows/linear/execute")

        metrics = client.get("/api/v1/metrics").json()
        assert metrics["active_executions"] == 1
        assert metrics["executions_by_status"] == {"running": 1}


class TestTriggerAndCollaboratorEndpoints:
    """Test cases for triggers, events and tasks."""

    def test_event_starts_execution(self, client):
        create_and_activate(client, event_workflow())

        response = client.post("/api/v1/events/order.created", json={"payload": {"order_id": 42}})

        assert response.json() == {"event_name": "order.created", "delivered": 1}
        executions = client.get("/api/v1/executions", params={"flow_id": "orders"}).json()
        assert len(executions) == 1
        status = client.get(f"/api/v1/executions/{executions[0]['id']}").json()
        assert status["context"] == {"order_id": 42}
        assert status["trigger_id"] == "on-order"

    def test_trigger_listing_and_toggling(self, client):
        create_and_activate(client, event_workflow())

        triggers = client.get("/api/v1/workflows/orders/triggers").json()
        assert [t["trigger_id"] for t in triggers] == ["on-order"]

        disabled = client.post("/api/v1/workflows/orders/triggers/on-order/disable").json()
        assert disabled["enabled"] is False
        assert client.post("/api/v1/events/order.created").json()["delivered"] == 0

        enabled = client.post("/api/v1/workflows/orders/triggers/on-order/enable").json()
        assert enabled["enabled"] is True

    def test_unknown_trigger(self, client):
        assert client.post("/api/v1/workflows/orders/triggers/nope/enable").status_code == 404

    def test_tasks(self, client):
        response = client.post("/api/v1/tasks", json={"title": "Check invoice", "assignee": "kim"})
        assert response.status_code == 201
        task_id = response.json()["id"]

        assert client.get(f"/api/v1/tasks/{task_id}").json()["assignee"] == "kim"
        completion = client.post(f"/api/v1/tasks/{task_id}/complete", json={"success": False, "error": "rejected"}).json()
        assert completion == {"task_id": task_id, "success": False, "output": {}, "error": "rejected"}
        assert client.get("/api/v1/tasks/missing").status_code == 404

    def test_components_are_exposed(self, client, task_store):
        assert get_app_state(client.app).task_store is task_store
