"""Pytest configuration and fixtures."""

from typing import Any, Dict, List

import pytest

from taskflow.core.collaborators import InMemoryEventBus, InMemoryNotificationSender, InMemoryTaskStore
from taskflow.core.execution_engine import ExecutionEngine
from taskflow.core.scheduling import InlineExecutor, ManualClock
from taskflow.core.trigger_manager import TriggerManager
from taskflow.models.core import WorkflowDefinition, WorkflowStatus
from taskflow.storage.workflow_store import InMemoryWorkflowStore


def build_workflow(name: str, nodes: List[Dict[str, Any]], edges: List[Dict[str, Any]], **fields) -> WorkflowDefinition:
    """Build a definition from plain dicts; edges may be given as (id, source, target) tuples."""
    edge_dicts = [
        {"id": edge[0], "source": edge[1], "target": edge[2]} if isinstance(edge, tuple) else edge
        for edge in edges
    ]
    return WorkflowDefinition.model_validate({"name": name, "nodes": nodes, "edges": edge_dicts, **fields})


def linear_workflow(flow_id: str = "linear") -> WorkflowDefinition:
    """start -> A (task t1) -> B (task t2) -> end"""
    return build_workflow(
        "Linear flow",
        nodes=[
            {"id": "start", "kind": "start"},
            {"id": "A", "kind": "task", "task_id": "t1"},
            {"id": "B", "kind": "task", "task_id": "t2"},
            {"id": "end", "kind": "end"},
        ],
        edges=[("e1", "start", "A"), ("e2", "A", "B"), ("e3", "B", "end")],
        id=flow_id
    )


@pytest.fixture
def clock():
    clock = ManualClock()
    yield clock
    clock.shutdown()


@pytest.fixture
def executor():
    return InlineExecutor()


@pytest.fixture
def workflow_store():
    return InMemoryWorkflowStore()


@pytest.fixture
def task_store():
    store = InMemoryTaskStore()
    for task_id in ("t1", "t2", "t3", "review", "revise"):
        store.add_task(task_id)
    return store


@pytest.fixture
def notifications():
    return InMemoryNotificationSender()


@pytest.fixture
def event_bus():
    return InMemoryEventBus()


@pytest.fixture
def engine(workflow_store, task_store, notifications, clock, executor):
    """Execution engine running every actor inline on the calling thread."""
    engine = ExecutionEngine(
        workflow_store,
        task_store,
        notifications,
        clock=clock,
        executor=executor,
        max_node_visits=50
    )
    yield engine
    engine.shutdown()


@pytest.fixture
def trigger_manager(engine, clock, event_bus):
    manager = TriggerManager(engine, clock, event_bus, failure_threshold=5, default_poll_interval=10.0)
    yield manager
    manager.shutdown()


@pytest.fixture
def store_active(workflow_store):
    """Store a definition directly as an active workflow."""
    def _store(definition: WorkflowDefinition) -> WorkflowDefinition:
        return workflow_store.create(definition.model_copy(update={"status": WorkflowStatus.ACTIVE}))
    return _store
