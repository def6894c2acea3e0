"""Tests for the in-memory and SQL workflow stores."""

import pytest

from taskflow.core.exceptions import ConcurrencyConflictError, NotFoundError
from taskflow.models.core import WorkflowStatus
from taskflow.storage.database import create_database_engine, create_session_factory, create_tables
from taskflow.storage.workflow_store import InMemoryWorkflowStore, SqlWorkflowStore

from conftest import build_workflow, linear_workflow


def every_kind_workflow():
    """A definition using every node kind, conditional edges, triggers and rules."""
    return build_workflow(
        "Order handling",
        description="Review, wait, hand off and notify",
        nodes=[
            {"id": "start", "kind": "start", "label": "Order received"},
            {"id": "review", "kind": "task", "task_id": "review", "max_retries": 2, "retry_backoff": 30,
             "metadata": {"team": "sales"}},
            {"id": "D", "kind": "decision", "branches": [
                {"condition": "amount > 1000", "edge_id": "big"},
                {"edge_id": "small"},
            ]},
            {"id": "cool_off", "kind": "wait", "duration": 3600},
            {"id": "fulfil", "kind": "subprocess", "flow_id": "fulfilment", "continue_on_error": True},
            {"id": "notify", "kind": "notification", "notification_type": "email",
             "recipients": ["ops@example.com"], "payload": {"subject": "Order {order_id} done"}},
            {"id": "end", "kind": "end"},
        ],
        edges=[
            ("e1", "start", "review"),
            ("e2", "review", "D"),
            {"id": "big", "source": "D", "target": "cool_off", "kind": "conditional",
             "condition": "amount > 1000", "label": "large order"},
            {"id": "small", "source": "D", "target": "fulfil"},
            ("e3", "cool_off", "fulfil"),
            ("e4", "fulfil", "notify"),
            ("e5", "notify", "end"),
        ],
        triggers=[
            {"id": "nightly", "kind": "schedule", "config": {"schedule": {"frequency": "weekly", "time": "02:30", "weekday": 4}}},
            {"id": "on-order", "kind": "event", "config": {"event_name": "order.created"}},
            {"id": "backlog", "kind": "condition", "enabled": False,
             "config": {"predicate": "backlog_high", "poll_interval": 15}},
        ],
        rules=[
            {"id": "escalate", "kind": "escalation", "condition": "level == 'error'", "priority": "high",
             "action": {"task_title": "Investigate", "assignee": "oncall"}},
            {"id": "guard", "kind": "validation", "condition": "amount < 0",
             "action": {"effect": "fail", "message": "Negative amount"}},
        ],
        id="orders",
        type="conditional",
        max_duration=86400
    )


@pytest.fixture(params=["memory", "sql"])
def store(request):
    if request.param == "memory":
        yield InMemoryWorkflowStore()
        return
    engine = create_database_engine("sqlite:///:memory:")
    create_tables(engine)
    yield SqlWorkflowStore(create_session_factory(engine))
    engine.dispose()


class TestWorkflowStore:
    """Test cases shared by every store implementation."""

    def test_create_and_get(self, store):
        store.create(linear_workflow())

        loaded = store.get("linear")
        assert loaded.name == "Linear flow"
        assert loaded.version == 1
        assert [n.id for n in loaded.nodes] == ["start", "A", "B", "end"]
        assert loaded.get_node("A").task_id == "t1"

    def test_round_trip_keeps_whole_definition(self, store):
        definition = every_kind_workflow()
        store.create(definition)

        loaded = store.get("orders")

        assert loaded.nodes == definition.nodes
        assert loaded.edges == definition.edges
        assert loaded.triggers == definition.triggers
        assert loaded.rules == definition.rules
        assert loaded.max_duration == 86400
        assert loaded.type == definition.type
        assert loaded.get_node("D").branches[0].condition == "amount > 1000"

    def test_create_duplicate_id(self, store):
        store.create(linear_workflow())
        with pytest.raises(ConcurrencyConflictError):
            store.create(linear_workflow())

    def test_get_missing(self, store):
        with pytest.raises(NotFoundError) as exc_info:
            store.get("missing")
        assert exc_info.value.context["resource_id"] == "missing"

    def test_list(self, store):
        store.create(linear_workflow("one"))
        store.create(linear_workflow("two"))
        assert {d.id for d in store.list()} == {"one", "two"}

    def test_update_bumps_version(self, store):
        created = store.create(linear_workflow())
        changed = created.model_copy(update={"description": "edited", "status": WorkflowStatus.ACTIVE})

        stored = store.update(changed, expected_version=1)

        assert stored.version == 2
        assert stored.created_at == created.created_at
        loaded = store.get("linear")
        assert loaded.version == 2
        assert loaded.description == "edited"
        assert loaded.status == WorkflowStatus.ACTIVE

    def test_stale_update_conflicts(self, store):
        created = store.create(linear_workflow())
        store.update(created, expected_version=1)

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            store.update(created.model_copy(update={"description": "late"}), expected_version=1)

        assert exc_info.value.details["expected_version"] == 1
        assert exc_info.value.details["actual_version"] == 2
        assert store.get("linear").description == ""

    def test_update_missing(self, store):
        with pytest.raises(NotFoundError):
            store.update(linear_workflow("ghost"), expected_version=1)

    def test_delete(self, store):
        store.create(linear_workflow())

        assert store.delete("linear")
        assert not store.delete("linear")
        with pytest.raises(NotFoundError):
            store.get("linear")

    def test_returned_copies_are_detached(self, store):
        store.create(linear_workflow())

        loaded = store.get("linear")
        loaded.nodes.pop()

        assert len(store.get("linear").nodes) == 4
