"""Tests for the execution engine: traversal, joins, loops, subprocesses and control."""

import pytest

from taskflow.core.exceptions import GraphValidationError, NotFoundError, WorkflowStateError
from taskflow.models.core import ExecutionLogLevel, ExecutionStatusEnum, Occurrence

from conftest import build_workflow, linear_workflow


def decision_workflow(flow_id="decide", else_branch=True):
    edges = [
        ("e1", "start", "D"),
        {"id": "e_hi", "source": "D", "target": "hi", "kind": "conditional", "condition": "x > 5"},
    ]
    if else_branch:
        edges.append({"id": "e_lo", "source": "D", "target": "lo"})
    else:
        edges.append({"id": "e_lo", "source": "D", "target": "lo", "kind": "conditional", "condition": "x < 0"})
    return build_workflow(
        "Decision flow",
        nodes=[
            {"id": "start", "kind": "start"},
            {"id": "D", "kind": "decision", "label": "Is it big"},
            {"id": "hi", "kind": "end"},
            {"id": "lo", "kind": "end"},
        ],
        edges=edges,
        id=flow_id
    )


def approval_workflow(flow_id="approval"):
    """start -> review -> D; D approved -> end, otherwise -> revise -> review"""
    return build_workflow(
        "Approval loop",
        nodes=[
            {"id": "start", "kind": "start"},
            {"id": "review", "kind": "task", "task_id": "review"},
            {"id": "D", "kind": "decision"},
            {"id": "revise", "kind": "task", "task_id": "revise"},
            {"id": "end", "kind": "end"},
        ],
        edges=[
            ("e1", "start", "review"),
            ("e2", "review", "D"),
            {"id": "approved", "source": "D", "target": "end", "condition": "approved"},
            {"id": "rejected", "source": "D", "target": "revise"},
            ("back", "revise", "review"),
        ],
        id=flow_id
    )


def node_ids(instance):
    return [entry.node_id for entry in instance.logs]


class TestLinearExecution:
    """Test cases for simple sequential flows."""

    def test_linear_flow_produces_ordered_log(self, engine, task_store, store_active):
        store_active(linear_workflow())
        execution_id = engine.execute("linear", {"customer": "acme"})

        running = engine.get_status(execution_id)
        assert running.status == ExecutionStatusEnum.RUNNING
        assert running.active_occurrences == [Occurrence(node_id="A", visit=1)]

        task_store.complete_task("t1", output={"x": 1})
        task_store.complete_task("t2")

        instance = engine.get_status(execution_id)
        assert instance.status == ExecutionStatusEnum.COMPLETED
        assert node_ids(instance) == ["start", "A", "B", "end"]
        assert [entry.seq for entry in instance.logs] == [1, 2, 3, 4]
        timestamps = [entry.timestamp for entry in instance.logs]
        assert all(a < b for a, b in zip(timestamps, timestamps[1:]))
        assert instance.context == {"customer": "acme", "x": 1}
        assert instance.progress == 100.0
        assert instance.ended_at is not None

    def test_execute_requires_active_workflow(self, engine, workflow_store):
        workflow_store.create(linear_workflow())
        with pytest.raises(WorkflowStateError):
            engine.execute("linear")

    def test_execute_unknown_workflow(self, engine):
        with pytest.raises(NotFoundError):
            engine.execute("missing")

    def test_invalid_definition_is_rejected(self, engine):
        definition = build_workflow("Broken", nodes=[{"id": "A", "kind": "task", "task_id": "t1"}], edges=[])
        with pytest.raises(GraphValidationError):
            engine.start_instance(definition)
        assert engine.list_executions() == []

    def test_missing_task_fails_occurrence(self, engine, store_active):
        definition = linear_workflow()
        definition.nodes[1] = definition.nodes[1].model_copy(update={"task_id": "nope"})
        store_active(definition)

        instance = engine.get_status(engine.execute("linear"))
        assert instance.status == ExecutionStatusEnum.FAILED
        assert instance.logs[-1].node_id == "A"
        assert instance.error["exception_type"] == "TaskFailure"

    def test_internal_error_names_the_running_node(self, engine, task_store, store_active, monkeypatch):
        def unavailable(task_id):
            raise RuntimeError("task service unreachable")

        monkeypatch.setattr(task_store, "get_task", unavailable)
        store_active(linear_workflow())

        instance = engine.get_status(engine.execute("linear"))

        assert instance.status == ExecutionStatusEnum.FAILED
        assert "task service unreachable" in instance.error["message"]
        assert instance.logs[-1].node_id == "A"
        assert instance.logs[-1].visit == 1

    def test_log_delta(self, engine, task_store, store_active):
        store_active(linear_workflow())
        execution_id = engine.execute("linear")
        task_store.complete_task("t1")
        task_store.complete_task("t2")

        delta = engine.get_log_delta(execution_id, since_seq=2)
        assert [entry.seq for entry in delta] == [3, 4]
        assert engine.get_log_delta(execution_id, since_seq=4) == []

    def test_notification_payload_is_rendered(self, engine, notifications, store_active):
        store_active(build_workflow(
            "Notify",
            nodes=[
                {"id": "start", "kind": "start"},
                {"id": "N", "kind": "notification", "notification_type": "email", "recipients": ["ops@example.com"],
                 "payload": {"subject": "Order {order_id} received", "missing": "{nope}"}},
                {"id": "end", "kind": "end"},
            ],
            edges=[("e1", "start", "N"), ("e2", "N", "end")],
            id="notify"
        ))
        instance = engine.get_status(engine.execute("notify", {"order_id": 42}))

        assert instance.status == ExecutionStatusEnum.COMPLETED
        assert notifications.sent == [{
            "kind": "email",
            "recipients": ["ops@example.com"],
            "payload": {"subject": "Order 42 received", "missing": "{nope}"},
        }]


class TestDecisions:
    """Test cases for decision nodes and dead-path elimination."""

    def test_takes_matching_branch(self, engine, store_active):
        store_active(decision_workflow())
        instance = engine.get_status(engine.execute("decide", {"x": 7}))

        assert instance.status == ExecutionStatusEnum.COMPLETED
        assert node_ids(instance) == ["start", "D", "hi"]
        assert instance.logs[1].data == {"edge_id": "e_hi", "target": "hi"}

    def test_falls_back_to_else_branch(self, engine, store_active):
        store_active(decision_workflow())
        instance = engine.get_status(engine.execute("decide", {"x": 3}))

        assert node_ids(instance) == ["start", "D", "lo"]
        assert instance.progress == 100.0

    def test_unmatched_decision_fails(self, engine, store_active):
        store_active(decision_workflow(else_branch=False))
        instance = engine.get_status(engine.execute("decide", {"x": 3}))

        assert instance.status == ExecutionStatusEnum.FAILED
        last = instance.logs[-1]
        assert last.level == ExecutionLogLevel.ERROR
        assert last.node_id == "D"
        assert last.data["error"]["exception_type"] == "UnmatchedDecisionError"
        assert last.data["error"]["details"]["conditions"] == ["x > 5", "x < 0"]


class TestJoinsAndLoops:
    """Test cases for parallel branches, joins and loop-backs."""

    def test_and_join_waits_for_both_branches(self, engine, task_store, notifications, store_active):
        store_active(build_workflow(
            "Fork and join",
            nodes=[
                {"id": "start", "kind": "start"},
                {"id": "A", "kind": "task", "task_id": "t1"},
                {"id": "B", "kind": "task", "task_id": "t2"},
                {"id": "J", "kind": "notification", "notification_type": "joined"},
                {"id": "end", "kind": "end"},
            ],
            edges=[("e1", "start", "A"), ("e2", "start", "B"), ("e3", "A", "J"), ("e4", "B", "J"), ("e5", "J", "end")],
            id="join",
            type="parallel"
        ))
        execution_id = engine.execute("join")

        task_store.complete_task("t1")
        partial = engine.get_status(execution_id)
        assert partial.status == ExecutionStatusEnum.RUNNING
        assert "J" not in node_ids(partial)
        assert partial.active_occurrences == [Occurrence(node_id="B", visit=1)]

        task_store.complete_task("t2")
        instance = engine.get_status(execution_id)
        assert instance.status == ExecutionStatusEnum.COMPLETED
        assert node_ids(instance) == ["start", "A", "B", "J", "end"]
        assert len(notifications.sent) == 1

    def test_branches_join_directly_on_end(self, engine, task_store, store_active):
        store_active(build_workflow(
            "Fork into end",
            nodes=[
                {"id": "start", "kind": "start"},
                {"id": "A", "kind": "task", "task_id": "t1"},
                {"id": "B", "kind": "task", "task_id": "t2"},
                {"id": "end", "kind": "end"},
            ],
            edges=[("e1", "start", "A"), ("e2", "start", "B"), ("e3", "A", "end"), ("e4", "B", "end")],
            id="fork-end",
            type="parallel"
        ))
        execution_id = engine.execute("fork-end")

        task_store.complete_task("t2")
        partial = engine.get_status(execution_id)
        assert partial.status == ExecutionStatusEnum.RUNNING
        assert "end" not in node_ids(partial)

        task_store.complete_task("t1")
        instance = engine.get_status(execution_id)
        assert instance.status == ExecutionStatusEnum.COMPLETED
        assert node_ids(instance) == ["start", "B", "A", "end"]
        assert [e.visit for e in instance.logs if e.node_id == "end"] == [1]

    def test_join_that_can_never_fire_fails_at_the_join(self, engine, task_store, store_active):
        # The loop feeds J a second time after its first firing, without the start branch
        store_active(build_workflow(
            "Loop into join",
            nodes=[
                {"id": "start", "kind": "start"},
                {"id": "review", "kind": "task", "task_id": "review"},
                {"id": "D", "kind": "decision"},
                {"id": "J", "kind": "notification"},
                {"id": "end", "kind": "end"},
            ],
            edges=[
                ("e1", "start", "review"),
                ("e2", "start", "J"),
                ("e3", "review", "D"),
                {"id": "again", "source": "D", "target": "review", "condition": "again"},
                {"id": "out", "source": "D", "target": "J"},
                ("e4", "J", "end"),
            ],
            id="loop-join"
        ))
        execution_id = engine.execute("loop-join")

        task_store.complete_task("review", output={"again": True})
        task_store.complete_task("review", output={"again": False})

        instance = engine.get_status(execution_id)
        assert instance.status == ExecutionStatusEnum.FAILED
        assert "Execution stalled" in instance.error["message"]
        assert instance.error["details"]["pending_joins"] == ["J"]
        assert instance.logs[-1].node_id == "J"

    def test_join_after_decision_runs_once(self, engine, store_active):
        store_active(build_workflow(
            "Decision then join",
            nodes=[
                {"id": "start", "kind": "start"},
                {"id": "D", "kind": "decision"},
                {"id": "W1", "kind": "wait", "duration": 1},
                {"id": "W2", "kind": "wait", "duration": 1},
                {"id": "J", "kind": "notification"},
                {"id": "end", "kind": "end"},
            ],
            edges=[
                ("e1", "start", "D"),
                {"id": "left", "source": "D", "target": "W1", "condition": "left"},
                {"id": "right", "source": "D", "target": "W2"},
                ("e2", "W1", "J"),
                ("e3", "W2", "J"),
                ("e4", "J", "end"),
            ],
            id="dpe"
        ))
        execution_id = engine.execute("dpe", {"left": True})
        engine.clock.advance(1)

        instance = engine.get_status(execution_id)
        assert instance.status == ExecutionStatusEnum.COMPLETED
        assert node_ids(instance) == ["start", "D", "W1", "J", "end"]

    def test_approval_loop_revisits_review(self, engine, task_store, store_active):
        store_active(approval_workflow())
        execution_id = engine.execute("approval")

        task_store.complete_task("review", output={"approved": False})
        task_store.complete_task("revise")
        task_store.complete_task("review", output={"approved": True})

        instance = engine.get_status(execution_id)
        assert instance.status == ExecutionStatusEnum.COMPLETED
        review_entries = [e for e in instance.logs if e.node_id == "review"]
        assert [e.visit for e in review_entries] == [1, 2]
        assert node_ids(instance) == ["start", "review", "D", "revise", "review", "D", "end"]

    def test_runaway_loop_is_stopped(self, engine, store_active):
        store_active(build_workflow(
            "Spin",
            nodes=[{"id": "start", "kind": "start"}, {"id": "D", "kind": "decision"}, {"id": "end", "kind": "end"}],
            edges=[
                ("e1", "start", "D"),
                {"id": "again", "source": "D", "target": "D", "condition": "true"},
                {"id": "out", "source": "D", "target": "end"},
            ],
            id="spin"
        ))
        instance = engine.get_status(engine.execute("spin"))

        assert instance.status == ExecutionStatusEnum.FAILED
        assert "exceeded 50 visits" in instance.error["message"]
        assert len([e for e in instance.logs if e.node_id == "D" and e.level != ExecutionLogLevel.ERROR]) == 50


class TestWaitsRetriesAndTimeouts:
    """Test cases for timer-driven behaviour."""

    def wait_workflow(self, **fields):
        return build_workflow(
            "Waiting",
            nodes=[{"id": "start", "kind": "start"}, {"id": "W", "kind": "wait", "duration": 60}, {"id": "end", "kind": "end"}],
            edges=[("e1", "start", "W"), ("e2", "W", "end")],
            id="wait",
            **fields
        )

    def test_wait_completes_after_duration(self, engine, clock, store_active):
        store_active(self.wait_workflow())
        execution_id = engine.execute("wait")

        clock.advance(59)
        assert engine.get_status(execution_id).status == ExecutionStatusEnum.RUNNING
        clock.advance(1)

        instance = engine.get_status(execution_id)
        assert instance.status == ExecutionStatusEnum.COMPLETED
        assert instance.logs[1].message == "Waited 60s at 'W'"

    def test_cancel_with_timer_in_flight(self, engine, clock, store_active):
        store_active(self.wait_workflow())
        execution_id = engine.execute("wait")
        assert clock.pending_timers == 1

        engine.cancel(execution_id)
        assert clock.pending_timers == 0
        clock.advance(120)

        instance = engine.get_status(execution_id)
        assert instance.status == ExecutionStatusEnum.CANCELLED
        assert node_ids(instance) == ["start", None]
        assert instance.logs[-1].level == ExecutionLogLevel.WARNING

    def test_cancel_unknown_execution(self, engine):
        with pytest.raises(NotFoundError):
            engine.cancel("does-not-exist")

    def test_cancel_after_completion_is_ignored(self, engine, clock, store_active):
        store_active(self.wait_workflow())
        execution_id = engine.execute("wait")
        clock.advance(60)

        engine.cancel(execution_id)
        instance = engine.get_status(execution_id)
        assert instance.status == ExecutionStatusEnum.COMPLETED
        assert len(instance.logs) == 3

    def test_execution_timeout(self, engine, clock, store_active):
        store_active(linear_workflow().model_copy(update={"max_duration": 30}))
        execution_id = engine.execute("linear")

        clock.advance(30)

        instance = engine.get_status(execution_id)
        assert instance.status == ExecutionStatusEnum.FAILED
        assert instance.error["exception_type"] == "ExecutionTimeoutError"
        assert instance.logs[-1].node_id == "A"
        assert instance.logs[-1].visit == 1

    def test_task_retry_then_success(self, engine, clock, task_store, store_active):
        definition = linear_workflow()
        definition.nodes[1] = definition.nodes[1].model_copy(update={"max_retries": 2, "retry_backoff": 5})
        store_active(definition)
        execution_id = engine.execute("linear")

        task_store.complete_task("t1", success=False, error="flaky")
        # Completions while the retry timer is pending are not for this occurrence
        task_store.complete_task("t1")
        assert "A" not in node_ids(engine.get_status(execution_id))

        clock.advance(5)
        task_store.complete_task("t1")
        task_store.complete_task("t2")

        instance = engine.get_status(execution_id)
        assert instance.status == ExecutionStatusEnum.COMPLETED
        assert node_ids(instance) == ["start", "A", "B", "end"]

    def test_task_retries_exhausted(self, engine, clock, task_store, store_active):
        definition = linear_workflow()
        definition.nodes[1] = definition.nodes[1].model_copy(update={"max_retries": 1, "retry_backoff": 5})
        store_active(definition)
        execution_id = engine.execute("linear")

        task_store.complete_task("t1", success=False, error="boom")
        clock.advance(5)
        task_store.complete_task("t1", success=False, error="boom again")

        instance = engine.get_status(execution_id)
        assert instance.status == ExecutionStatusEnum.FAILED
        assert instance.error["exception_type"] == "TaskFailure"
        assert instance.error["details"]["attempts"] == 2
        assert "boom again" in instance.error["message"]


class TestPauseResume:
    """Test cases for pausing and resuming executions."""

    def test_messages_are_deferred_while_paused(self, engine, task_store, store_active):
        store_active(linear_workflow())
        execution_id = engine.execute("linear")

        engine.pause(execution_id)
        task_store.complete_task("t1")
        paused = engine.get_status(execution_id)
        assert paused.status == ExecutionStatusEnum.PAUSED
        assert node_ids(paused) == ["start"]

        engine.resume(execution_id)
        task_store.complete_task("t2")
        instance = engine.get_status(execution_id)
        assert instance.status == ExecutionStatusEnum.COMPLETED
        assert node_ids(instance) == ["start", "A", "B", "end"]

    def test_cancel_applies_while_paused(self, engine, store_active):
        store_active(linear_workflow())
        execution_id = engine.execute("linear")

        engine.pause(execution_id)
        engine.cancel(execution_id)

        assert engine.get_status(execution_id).status == ExecutionStatusEnum.CANCELLED


class TestSubprocesses:
    """Test cases for subprocess nodes."""

    @pytest.fixture
    def child(self, workflow_store):
        return workflow_store.create(build_workflow(
            "Child",
            nodes=[{"id": "start", "kind": "start"}, {"id": "C", "kind": "task", "task_id": "t3"}, {"id": "end", "kind": "end"}],
            edges=[("c1", "start", "C"), ("c2", "C", "end")],
            id="child"
        ))

    def parent_workflow(self, continue_on_error=False):
        return build_workflow(
            "Parent",
            nodes=[
                {"id": "start", "kind": "start"},
                {"id": "S", "kind": "subprocess", "flow_id": "child", "continue_on_error": continue_on_error},
                {"id": "end", "kind": "end"},
            ],
            edges=[("p1", "start", "S"), ("p2", "S", "end")],
            id="parent"
        )

    def test_child_context_is_merged(self, engine, task_store, store_active, child):
        store_active(self.parent_workflow())
        parent_id = engine.execute("parent", {"a": 1})

        children = [s for s in engine.list_executions() if s.parent_execution_id == parent_id]
        assert len(children) == 1
        assert engine.get_status(children[0].id).context == {"a": 1}

        task_store.complete_task("t3", output={"c": 2})

        parent = engine.get_status(parent_id)
        assert parent.status == ExecutionStatusEnum.COMPLETED
        assert parent.context == {"a": 1, "c": 2}
        assert parent.logs[1].data["child_execution_id"] == children[0].id

    def test_child_failure_fails_parent(self, engine, task_store, store_active, child):
        store_active(self.parent_workflow())
        parent_id = engine.execute("parent")

        task_store.complete_task("t3", success=False, error="rejected")

        parent = engine.get_status(parent_id)
        assert parent.status == ExecutionStatusEnum.FAILED
        assert parent.error["exception_type"] == "SubprocessFailure"

    def test_continue_on_error(self, engine, task_store, store_active, child):
        store_active(self.parent_workflow(continue_on_error=True))
        parent_id = engine.execute("parent")

        task_store.complete_task("t3", success=False, error="rejected")

        parent = engine.get_status(parent_id)
        assert parent.status == ExecutionStatusEnum.COMPLETED
        assert parent.logs[1].level == ExecutionLogLevel.WARNING
        assert node_ids(parent) == ["start", "S", "end"]

    def test_cancelling_parent_cancels_child(self, engine, store_active, child):
        store_active(self.parent_workflow())
        parent_id = engine.execute("parent")
        child_id = next(s.id for s in engine.list_executions() if s.parent_execution_id == parent_id)

        engine.cancel(parent_id)

        assert engine.get_status(child_id).status == ExecutionStatusEnum.CANCELLED

    def test_missing_child_workflow(self, engine, store_active):
        store_active(self.parent_workflow())
        parent = engine.get_status(engine.execute("parent"))

        assert parent.status == ExecutionStatusEnum.FAILED
        assert "could not be started" in parent.error["message"]


class TestEngineMetrics:

    def test_metrics_count_by_status(self, engine, store_active):
        store_active(decision_workflow())
        store_active(linear_workflow())
        engine.execute("decide", {"x": 1})
        engine.execute("linear")

        metrics = engine.get_engine_metrics()
        assert metrics["total_executions"] == 2
        assert metrics["active_executions"] == 1
        assert metrics["executions_by_status"] == {"completed": 1, "running": 1}
        assert metrics["queued_messages"] == 0
