"""Execution Engine for task-flow instances."""

import threading
import uuid
from collections import defaultdict, deque
from concurrent.futures import Executor, ThreadPoolExecutor
from datetime import timedelta
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from ..models.core import (
    DecisionNode,
    EdgeDefinition,
    EdgeKind,
    EndNode,
    ExecutionInstance,
    ExecutionLogEntry,
    ExecutionLogLevel,
    ExecutionSnapshot,
    ExecutionStatusEnum,
    ExecutionSummary,
    NodeKind,
    NotificationNode,
    Occurrence,
    StartNode,
    SubprocessNode,
    TaskCompletion,
    TaskNode,
    WaitNode,
    WorkflowDefinition,
    WorkflowStatus,
)
from .actor import Actor
from .collaborators import NotificationSender, TaskStore
from .conditions import evaluate_condition, is_else
from .error_recovery import RetryConfig
from .exceptions import (
    ExecutionEngineError,
    ExecutionTimeoutError,
    NodeExecutionError,
    NotFoundError,
    SubprocessFailure,
    TaskFailure,
    UnmatchedDecisionError,
    WorkflowEngineError,
    WorkflowStateError,
)
from .execution_monitor import ExecutionMonitor
from .graph_validator import GraphValidator, decision_branches, find_back_edges
from .logging import ErrorRecoveryLogger, get_logger
from .messages import (
    CONTROL_MESSAGES,
    AppendLog,
    Cancel,
    ChildFinished,
    FailInstance,
    Pause,
    Resume,
    RetryTask,
    Start,
    TaskCompleted,
    TimerFired,
    Timeout,
)
from .rule_engine import RuleEngine, RuleEvaluation
from .scheduling import Clock, SystemClock, TimerHandle

logger = get_logger(__name__)


class InstanceActor(Actor):
    """
    Single owner of one execution's frontier, context and log.

    Every mutation arrives as a mailbox message or as an internal step that
    runs one ready occurrence; the two are interleaved so that control
    messages such as cancel are seen between occurrence transitions.
    """

    def __init__(
        self,
        engine: "ExecutionEngine",
        execution_id: str,
        definition: WorkflowDefinition,
        context: Dict[str, Any],
        parent_execution_id: Optional[str] = None,
        trigger_id: Optional[str] = None,
        depth: int = 0
    ):
        super().__init__(f"execution-{execution_id[:8]}", engine.executor)
        self.engine = engine
        self.execution_id = execution_id
        self.definition = definition
        self.parent_execution_id = parent_execution_id
        self.trigger_id = trigger_id
        self.depth = depth
        self.context: Dict[str, Any] = dict(context)
        self.status = ExecutionStatusEnum.RUNNING
        self.started_at = engine.clock.now()
        self.ended_at = None
        self.error: Optional[Dict[str, Any]] = None

        self._nodes = {node.id: node for node in definition.nodes}
        self._start_id = definition.nodes_of_kind(NodeKind.START)[0].id
        self._back_edges = find_back_edges(definition, self._start_id)
        self._forward_incoming: Dict[str, List[str]] = {
            node.id: [e.id for e in definition.incoming_edges(node.id) if e.id not in self._back_edges]
            for node in definition.nodes
        }

        self._started = False
        self._visits: Dict[str, int] = defaultdict(int)
        self._ready: Deque[Occurrence] = deque()
        self._active: Dict[Occurrence, None] = {}
        self._join_tokens: Dict[str, Dict[str, bool]] = {}
        self._resolved: Set[str] = set()
        self._waiting_tasks: Dict[str, List[Occurrence]] = {}
        self._early_completions: Dict[str, List[TaskCompletion]] = {}
        self._task_ids = {node.task_id for node in definition.nodes_of_kind(NodeKind.TASK)}
        self._task_attempts: Dict[Occurrence, int] = {}
        self._timers: Dict[Occurrence, TimerHandle] = {}
        self._children: Dict[str, Occurrence] = {}
        self._timeout_handle: Optional[TimerHandle] = None
        self._deferred: List[Any] = []
        self._current: Optional[Occurrence] = None

        self._seq = 0
        self._last_timestamp = None
        self._uncommitted: List[ExecutionLogEntry] = []
        self._finished_reported = False
        self._recovery_logger = ErrorRecoveryLogger("execution_engine")

        self._message_handlers: Dict[type, Callable[[Any], None]] = {
            Start: self._on_start,
            TaskCompleted: self._on_task_completed,
            TimerFired: self._on_timer_fired,
            RetryTask: self._on_retry_task,
            ChildFinished: self._on_child_finished,
            Cancel: self._on_cancel,
            Pause: self._on_pause,
            Resume: self._on_resume,
            Timeout: self._on_timeout,
            FailInstance: self._on_fail_instance,
            AppendLog: self._on_append_log,
        }
        self._node_handlers: Dict[type, Callable[[Occurrence, Any], None]] = {
            StartNode: self._run_start,
            TaskNode: self._run_task,
            DecisionNode: self._run_decision,
            WaitNode: self._run_wait,
            SubprocessNode: self._run_subprocess,
            NotificationNode: self._run_notification,
            EndNode: self._run_end,
        }

    @property
    def progress(self) -> float:
        if self.status == ExecutionStatusEnum.COMPLETED:
            return 100.0
        if not self._nodes:
            return 0.0
        return round(len(self._resolved) / len(self._nodes) * 100, 2)

    def snapshot(self) -> ExecutionSnapshot:
        return ExecutionSnapshot(
            status=self.status,
            progress=self.progress,
            active_occurrences=list(self._active),
            context=dict(self.context),
            started_at=self.started_at,
            ended_at=self.ended_at,
            error=self.error
        )

    # Actor hooks

    def receive(self, message: Any) -> None:
        self._current = getattr(message, "occurrence", None)
        if self.status.is_terminal:
            logger.debug(f"Execution {self.execution_id} is {self.status.value}; dropping {type(message).__name__}")
            return
        if self.status == ExecutionStatusEnum.PAUSED and not isinstance(message, CONTROL_MESSAGES):
            self._deferred.append(message)
            return

        handler = self._message_handlers.get(type(message))
        if handler is None:
            logger.warning(f"Execution {self.execution_id} received unknown message {type(message).__name__}")
            return
        try:
            handler(message)
        except WorkflowEngineError as e:
            self._fail(e)

    def _has_internal_work(self) -> bool:
        return self.status == ExecutionStatusEnum.RUNNING and bool(self._ready)

    def _run_internal_step(self) -> None:
        occurrence = self._ready.popleft()
        self._current = occurrence
        node = self._nodes[occurrence.node_id]
        logger.debug(f"Execution {self.execution_id} running {occurrence}")
        try:
            self._node_handlers[type(node)](occurrence, node)
        except WorkflowEngineError as e:
            self._fail(e, occurrence)

    def _on_error(self, error: Exception) -> None:
        occurrence = self._current or next(iter(self._active), None)
        self._fail(ExecutionEngineError(
            f"Internal error while running execution: {str(error)}",
            execution_id=self.execution_id,
            flow_id=self.definition.id
        ), occurrence)

    def _after_step(self) -> None:
        if self._started and not self._ready and self._early_completions:
            self._drop_early_completions()
        if self._started and self.status == ExecutionStatusEnum.RUNNING and not self._ready and not self._active:
            if self._join_tokens:
                pending = sorted(self._join_tokens)
                error = NodeExecutionError(
                    f"Execution stalled: join node(s) {', '.join(pending)} never received all incoming branches",
                    node_id=pending[0],
                    execution_id=self.execution_id
                )
                error.add_details(pending_joins=pending)
                self._fail(error)
            else:
                logger.info(f"Execution {self.execution_id} completed")
                self._finish(ExecutionStatusEnum.COMPLETED)
        self._commit()

    # Messages

    def _on_start(self, message: Start) -> None:
        self._started = True
        max_duration = self.definition.max_duration or self.engine.execution_timeout
        if max_duration:
            self._timeout_handle = self.engine.clock.call_later(max_duration, lambda: self.post(Timeout()))
        logger.info(f"Execution {self.execution_id} started for workflow '{self.definition.name}' "
                    f"(version {self.definition.version})")
        self._activate(self._start_id)

    def _on_task_completed(self, message: TaskCompleted) -> None:
        completion = message.completion
        waiting = self._waiting_tasks.get(completion.task_id)
        if not waiting:
            self._hold_early_completion(completion)
            return
        occurrence = waiting.pop(0)
        if not waiting:
            del self._waiting_tasks[completion.task_id]
        node = self._nodes[occurrence.node_id]

        if completion.success:
            self._task_attempts.pop(occurrence, None)
            self.context.update(completion.output)
            self._complete(
                occurrence, ExecutionLogLevel.SUCCESS, f"Task '{node.display_name}' completed",
                {"task_id": completion.task_id, "output": completion.output}
            )
            self._advance(occurrence)
            return

        attempts = self._task_attempts.get(occurrence, 0) + 1
        self._task_attempts[occurrence] = attempts
        reason = completion.error or "task reported failure"
        if attempts <= node.max_retries:
            retry = RetryConfig.for_task(node.max_retries, node.retry_backoff or self.engine.default_task_retry_backoff)
            delay = retry.get_delay(attempts)
            self._recovery_logger.log_recovery_attempt(
                f"task {completion.task_id}", TaskFailure(reason, task_id=completion.task_id), attempts, node.max_retries
            )
            self._timers[occurrence] = self.engine.clock.call_later(delay, lambda: self.post(RetryTask(occurrence)))
            return

        self._fail(TaskFailure(
            f"Task '{node.display_name}' failed after {attempts} attempt(s): {reason}",
            task_id=completion.task_id,
            attempts=attempts,
            node_id=node.id,
            execution_id=self.execution_id
        ), occurrence)

    def _on_retry_task(self, message: RetryTask) -> None:
        occurrence = message.occurrence
        if self._timers.pop(occurrence, None) is None:
            return
        node = self._nodes[occurrence.node_id]
        self.engine.task_store.retry_task(node.task_id)
        self._waiting_tasks.setdefault(node.task_id, []).append(occurrence)
        logger.info(f"Execution {self.execution_id} retrying task {node.task_id} "
                    f"(attempt {self._task_attempts.get(occurrence, 0) + 1})")

    def _on_timer_fired(self, message: TimerFired) -> None:
        occurrence = message.occurrence
        if self._timers.pop(occurrence, None) is None:
            return
        node = self._nodes[occurrence.node_id]
        self._complete(occurrence, ExecutionLogLevel.INFO, f"Waited {node.duration:g}s at '{node.display_name}'")
        self._advance(occurrence)

    def _on_child_finished(self, message: ChildFinished) -> None:
        occurrence = self._children.pop(message.child_execution_id, None)
        if occurrence is None:
            return
        node = self._nodes[occurrence.node_id]
        if message.status == ExecutionStatusEnum.COMPLETED.value:
            self.context.update(message.context)
            self._complete(
                occurrence, ExecutionLogLevel.SUCCESS, f"Subprocess '{node.display_name}' completed",
                {"child_execution_id": message.child_execution_id}
            )
            self._advance(occurrence)
            return

        failure = SubprocessFailure(
            f"Subprocess '{node.display_name}' ended with status {message.status}",
            child_execution_id=message.child_execution_id,
            node_id=node.id,
            execution_id=self.execution_id
        )
        if message.error:
            failure.add_details(child_error=message.error)
        self._subprocess_failed(occurrence, node, failure)

    def _on_cancel(self, message: Cancel) -> None:
        logger.info(f"Cancelling execution {self.execution_id}")
        self._append(ExecutionLogLevel.WARNING, message.reason)
        self._finish(ExecutionStatusEnum.CANCELLED)

    def _on_pause(self, message: Pause) -> None:
        if self.status == ExecutionStatusEnum.RUNNING:
            self.status = ExecutionStatusEnum.PAUSED
            logger.info(f"Execution {self.execution_id} paused")

    def _on_resume(self, message: Resume) -> None:
        if self.status != ExecutionStatusEnum.PAUSED:
            return
        self.status = ExecutionStatusEnum.RUNNING
        deferred, self._deferred = self._deferred, []
        logger.info(f"Execution {self.execution_id} resumed; replaying {len(deferred)} deferred message(s)")
        for pending in deferred:
            self.receive(pending)

    def _on_timeout(self, message: Timeout) -> None:
        max_duration = self.definition.max_duration or self.engine.execution_timeout
        current = next(iter(self._active), None)
        self._fail(ExecutionTimeoutError(
            f"Execution exceeded maximum duration of {max_duration:g}s",
            execution_id=self.execution_id,
            max_duration=max_duration
        ), current)

    def _on_fail_instance(self, message: FailInstance) -> None:
        error = NodeExecutionError(message.message, node_id=message.node_id, execution_id=self.execution_id)
        if message.rule_id:
            error.add_details(rule_id=message.rule_id)
        occurrence = Occurrence(node_id=message.node_id, visit=message.visit) if message.node_id and message.visit else None
        self._fail(error, occurrence, source="rule")

    def _on_append_log(self, message: AppendLog) -> None:
        self._append(message.level, message.message, message.node_id, message.visit, message.data, source="rule")

    # Node kinds

    def _run_start(self, occurrence: Occurrence, node: StartNode) -> None:
        self._complete(occurrence, ExecutionLogLevel.INFO, f"Started workflow '{self.definition.name}'")
        self._advance(occurrence)

    def _run_task(self, occurrence: Occurrence, node: TaskNode) -> None:
        try:
            self.engine.task_store.get_task(node.task_id)
        except NotFoundError as e:
            raise TaskFailure(
                f"Task '{node.task_id}' referenced by node '{node.id}' does not exist",
                task_id=node.task_id,
                attempts=0,
                node_id=node.id,
                execution_id=self.execution_id
            ) from e
        self._waiting_tasks.setdefault(node.task_id, []).append(occurrence)
        logger.debug(f"Execution {self.execution_id} waiting for task {node.task_id} at {occurrence}")
        early = self._early_completions.get(node.task_id)
        if early:
            completion = early.pop(0)
            if not early:
                del self._early_completions[node.task_id]
            logger.debug(f"Execution {self.execution_id} applying completion of task {node.task_id} received early")
            self._on_task_completed(TaskCompleted(completion))

    def _run_decision(self, occurrence: Occurrence, node: DecisionNode) -> None:
        chosen = None
        evaluated = []
        for condition, edge_id in decision_branches(self.definition, node):
            if is_else(condition):
                chosen = edge_id
                break
            evaluated.append(condition)
            if evaluate_condition(condition, self.context):
                chosen = edge_id
                break

        if chosen is None:
            raise UnmatchedDecisionError(
                f"No branch of decision '{node.display_name}' matched and it has no else branch",
                conditions=evaluated,
                node_id=node.id,
                execution_id=self.execution_id
            )

        target = self.definition.get_edge(chosen).target
        self._complete(
            occurrence, ExecutionLogLevel.INFO, f"Decision '{node.display_name}' took edge '{chosen}' to '{target}'",
            {"edge_id": chosen, "target": target}
        )
        for edge in self.definition.outgoing_edges(node.id):
            self._deliver(edge, live=edge.id == chosen)

    def _run_wait(self, occurrence: Occurrence, node: WaitNode) -> None:
        self._timers[occurrence] = self.engine.clock.call_later(node.duration, lambda: self.post(TimerFired(occurrence)))

    def _run_subprocess(self, occurrence: Occurrence, node: SubprocessNode) -> None:
        try:
            child_id = self.engine.start_child(self, node)
        except WorkflowEngineError as e:
            failure = SubprocessFailure(
                f"Subprocess '{node.display_name}' could not be started: {e.message}",
                node_id=node.id,
                execution_id=self.execution_id
            )
            self._subprocess_failed(occurrence, node, failure)
            return
        self._children[child_id] = occurrence

    def _run_notification(self, occurrence: Occurrence, node: NotificationNode) -> None:
        payload = self._render_payload(node.payload)
        self.engine.executor.submit(self.engine.send_notification, node.notification_type, list(node.recipients), payload)
        self._complete(
            occurrence, ExecutionLogLevel.INFO, f"Notification '{node.display_name}' queued",
            {"notification_type": node.notification_type, "recipients": list(node.recipients)}
        )
        self._advance(occurrence)

    def _run_end(self, occurrence: Occurrence, node: EndNode) -> None:
        self._complete(occurrence, ExecutionLogLevel.SUCCESS, f"Reached end '{node.display_name}'")

    def _hold_early_completion(self, completion: TaskCompletion) -> None:
        """Keep a completion that may belong to a task occurrence still queued to run."""
        if completion.task_id not in self._task_ids:
            return
        if not self._started or self._ready:
            self._early_completions.setdefault(completion.task_id, []).append(completion)
            logger.debug(f"Execution {self.execution_id} holding completion of task {completion.task_id}")
            return
        logger.warning(f"Execution {self.execution_id} ignored completion of task {completion.task_id}: "
                       f"no occurrence is waiting for it")

    def _drop_early_completions(self) -> None:
        for task_id, completions in self._early_completions.items():
            logger.warning(f"Execution {self.execution_id} ignored {len(completions)} completion(s) of task {task_id}: "
                           f"no occurrence reached it")
        self._early_completions.clear()

    def _subprocess_failed(self, occurrence: Occurrence, node: SubprocessNode, failure: SubprocessFailure) -> None:
        if node.continue_on_error:
            self._complete(
                occurrence, ExecutionLogLevel.WARNING, f"{failure.message}; continuing",
                {"error": failure.to_dict()}
            )
            self._advance(occurrence)
        else:
            self._fail(failure, occurrence)

    def _render_payload(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        rendered = {}
        for key, value in payload.items():
            if isinstance(value, str):
                try:
                    value = value.format(**self.context)
                except (KeyError, IndexError, ValueError, AttributeError):
                    logger.debug(f"Leaving notification field '{key}' unformatted")
            rendered[key] = value
        return rendered

    # Traversal

    def _activate(self, node_id: str) -> None:
        self._visits[node_id] += 1
        visit = self._visits[node_id]
        if visit > self.engine.max_node_visits:
            raise NodeExecutionError(
                f"Node '{node_id}' exceeded {self.engine.max_node_visits} visits, possible infinite loop",
                node_id=node_id,
                execution_id=self.execution_id
            )
        occurrence = Occurrence(node_id=node_id, visit=visit)
        self._active[occurrence] = None
        self._ready.append(occurrence)

    def _skip(self, node_id: str) -> None:
        logger.debug(f"Execution {self.execution_id} skipping dead node {node_id}")
        self._resolved.add(node_id)
        for edge in self.definition.outgoing_edges(node_id):
            if edge.id not in self._back_edges:
                self._deliver(edge, live=False)

    def _advance(self, occurrence: Occurrence) -> None:
        for edge in self.definition.outgoing_edges(occurrence.node_id):
            live = True
            if edge.kind == EdgeKind.CONDITIONAL and not is_else(edge.condition):
                live = evaluate_condition(edge.condition, self.context)
            self._deliver(edge, live)

    def _deliver(self, edge: EdgeDefinition, live: bool) -> None:
        """Hand a live or dead token to the edge's target, activating or skipping it once joined."""
        if edge.id in self._back_edges:
            if live:
                self._activate(edge.target)
            return

        required = self._forward_incoming[edge.target]
        if len(required) <= 1:
            if live:
                self._activate(edge.target)
            else:
                self._skip(edge.target)
            return

        tokens = self._join_tokens.setdefault(edge.target, {})
        tokens[edge.id] = tokens.get(edge.id, False) or live
        if len(tokens) < len(required):
            logger.debug(f"Join {edge.target} has {len(tokens)}/{len(required)} incoming branches")
            return

        del self._join_tokens[edge.target]
        if any(tokens.values()):
            self._activate(edge.target)
        else:
            self._skip(edge.target)

    # Log and lifecycle

    def _append(
        self,
        level: ExecutionLogLevel,
        message: str,
        node_id: Optional[str] = None,
        visit: Optional[int] = None,
        data: Optional[Dict[str, Any]] = None,
        source: str = "engine"
    ) -> Optional[ExecutionLogEntry]:
        if self.status.is_terminal:
            return None
        timestamp = self.engine.clock.now()
        if self._last_timestamp is not None and timestamp <= self._last_timestamp:
            timestamp = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = timestamp
        self._seq += 1
        entry = ExecutionLogEntry(
            seq=self._seq,
            timestamp=timestamp,
            level=level,
            message=message,
            node_id=node_id,
            visit=visit,
            data=data,
            source=source
        )
        self._uncommitted.append(entry)
        return entry

    def _complete(self, occurrence: Occurrence, level: ExecutionLogLevel, message: str,
                  data: Optional[Dict[str, Any]] = None) -> None:
        self._active.pop(occurrence, None)
        self._resolved.add(occurrence.node_id)
        self._append(level, message, occurrence.node_id, occurrence.visit, data)

    def _fail(self, error: WorkflowEngineError, occurrence: Optional[Occurrence] = None, source: str = "engine") -> None:
        if self.status.is_terminal:
            return
        node_id = getattr(error, "node_id", None) or (occurrence.node_id if occurrence else None)
        visit = occurrence.visit if occurrence and occurrence.node_id == node_id else None
        error.add_context(execution_id=self.execution_id)
        self._append(ExecutionLogLevel.ERROR, error.message, node_id, visit, {"error": error.to_dict()}, source=source)
        self.error = error.to_dict()
        logger.error(f"Execution {self.execution_id} failed at node {node_id}: {error.message}")
        self._finish(ExecutionStatusEnum.FAILED)

    def _finish(self, status: ExecutionStatusEnum) -> None:
        self.status = status
        self.ended_at = self.engine.clock.now()
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        for child_id in list(self._children):
            self.engine.cancel_quietly(child_id, "Execution cancelled by parent")
        self._children.clear()
        self._ready.clear()
        self._active.clear()
        self._waiting_tasks.clear()
        self._deferred.clear()
        self._early_completions.clear()

    def _commit(self) -> None:
        entries, self._uncommitted = self._uncommitted, []
        self.engine.monitor.publish(self.execution_id, self.snapshot(), entries)
        for entry in entries:
            if entry.source == "engine":
                self.engine.offer_to_rules(self, entry)
        if self.status.is_terminal and not self._finished_reported:
            self._finished_reported = True
            self.engine.instance_finished(self)


class ExecutionEngine:
    """Engine that runs workflow definitions as actor-owned execution instances."""

    def __init__(
        self,
        workflow_store,
        task_store: TaskStore,
        notification_sender: NotificationSender,
        clock: Optional[Clock] = None,
        executor: Optional[Executor] = None,
        monitor: Optional[ExecutionMonitor] = None,
        rule_engine: Optional[RuleEngine] = None,
        validator: Optional[GraphValidator] = None,
        max_concurrent_executions: int = 10,
        max_node_visits: int = 1000,
        execution_timeout: Optional[float] = None,
        default_task_retry_backoff: float = 1.0,
        max_subprocess_depth: int = 10
    ):
        """Initialize the execution engine.

        Args:
            workflow_store: Store the engine reads definitions from (execute, subprocesses)
            task_store: External task collaborator
            notification_sender: Collaborator for notification nodes and rules
            clock: Time and timer source, SystemClock when omitted
            executor: Worker pool draining actors; a ThreadPoolExecutor sized by
                max_concurrent_executions when omitted
            monitor: Execution Monitor receiving committed snapshots
            rule_engine: Rule Engine offered every engine log entry
            validator: Graph validator run before an instance is created
            max_concurrent_executions: Worker pool size
            max_node_visits: Visits of a single node after which an instance fails
            execution_timeout: Default max duration (seconds) for definitions without one
            default_task_retry_backoff: Base backoff for task nodes without retry_backoff
            max_subprocess_depth: Maximum nesting of subprocess instances
        """
        self.workflow_store = workflow_store
        self.task_store = task_store
        self.notification_sender = notification_sender
        self.clock = clock or SystemClock()
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(
            max_workers=max_concurrent_executions, thread_name_prefix="taskflow-worker"
        )
        self.monitor = monitor or ExecutionMonitor()
        self.rule_engine = rule_engine or RuleEngine(task_store, notification_sender, self.executor)
        self.validator = validator or GraphValidator()
        self.max_node_visits = max_node_visits
        self.execution_timeout = execution_timeout
        self.default_task_retry_backoff = default_task_retry_backoff
        self.max_subprocess_depth = max_subprocess_depth

        self._actors: Dict[str, InstanceActor] = {}
        self._finished_events: Dict[str, threading.Event] = {}
        self._lock = threading.RLock()
        self._unsubscribe_tasks = task_store.subscribe(self._on_task_completion)

        logger.info(f"ExecutionEngine initialized with max_concurrent_executions={max_concurrent_executions}, "
                    f"max_node_visits={max_node_visits}")

    def execute(self, flow_id: str, initial_context: Optional[Dict[str, Any]] = None,
                trigger_id: Optional[str] = None) -> str:
        """
        Start an instance of a stored workflow against its current version.

        Args:
            flow_id: ID of the workflow definition
            initial_context: Initial execution context
            trigger_id: Trigger that caused the execution, if any

        Returns:
            Execution ID for tracking the instance

        Raises:
            NotFoundError: If the workflow does not exist
            WorkflowStateError: If the workflow is not active
            GraphValidationError: If the definition is invalid
        """
        definition = self.workflow_store.get(flow_id)
        if definition.status != WorkflowStatus.ACTIVE:
            raise WorkflowStateError(
                f"Workflow {flow_id} is {definition.status.value}; only active workflows can be executed",
                current_status=definition.status.value
            )
        return self.start_instance(definition, initial_context, trigger_id=trigger_id)

    def start_instance(
        self,
        definition: WorkflowDefinition,
        initial_context: Optional[Dict[str, Any]] = None,
        trigger_id: Optional[str] = None,
        parent_execution_id: Optional[str] = None,
        depth: int = 0
    ) -> str:
        """Validate a definition, freeze a copy of it and start running it."""
        self.validator.validate_or_raise(definition)
        frozen = definition.model_copy(deep=True)
        execution_id = str(uuid.uuid4())
        actor = InstanceActor(self, execution_id, frozen, initial_context or {},
                              parent_execution_id=parent_execution_id, trigger_id=trigger_id, depth=depth)

        self.monitor.register(execution_id, frozen, actor.snapshot(),
                              parent_execution_id=parent_execution_id, trigger_id=trigger_id)
        with self._lock:
            self._actors[execution_id] = actor
            self._finished_events[execution_id] = threading.Event()

        logger.info(f"Created execution {execution_id} for workflow {frozen.id} (version {frozen.version})")
        actor.post(Start())
        return execution_id

    def start_child(self, parent: InstanceActor, node: SubprocessNode) -> str:
        """Start the child instance of a subprocess node; the child gets a copy of the parent context."""
        if parent.depth + 1 > self.max_subprocess_depth:
            raise ExecutionEngineError(
                f"Subprocess nesting exceeds {self.max_subprocess_depth} levels",
                execution_id=parent.execution_id,
                flow_id=parent.definition.id
            )
        definition = self.workflow_store.get(node.flow_id)
        return self.start_instance(
            definition,
            dict(parent.context),
            parent_execution_id=parent.execution_id,
            depth=parent.depth + 1
        )

    def cancel(self, execution_id: str) -> None:
        """
        Request cancellation; takes effect at the instance's next transition boundary.

        Raises:
            NotFoundError: If the execution is unknown
        """
        self._post_control(execution_id, Cancel())

    def cancel_quietly(self, execution_id: str, reason: str = "Execution cancelled") -> None:
        """Cancel a live execution, ignoring ids that are unknown or already finished."""
        self.post(execution_id, Cancel(reason=reason))

    def pause(self, execution_id: str) -> None:
        self._post_control(execution_id, Pause())

    def resume(self, execution_id: str) -> None:
        self._post_control(execution_id, Resume())

    def post(self, execution_id: str, message: Any) -> bool:
        """Deliver a message to a live instance; returns False if it has already finished."""
        with self._lock:
            actor = self._actors.get(execution_id)
        if actor is None:
            return False
        actor.post(message)
        return True

    def get_status(self, execution_id: str) -> ExecutionInstance:
        return self.monitor.get_status(execution_id)

    def get_log_delta(self, execution_id: str, since_seq: int = 0) -> List[ExecutionLogEntry]:
        return self.monitor.get_log_delta(execution_id, since_seq)

    def list_executions(self, flow_id: Optional[str] = None) -> List[ExecutionSummary]:
        return self.monitor.list_executions(flow_id)

    def wait(self, execution_id: str, timeout: Optional[float] = None) -> ExecutionInstance:
        """Block until the execution is terminal or the timeout elapses, then return its status."""
        with self._lock:
            event = self._finished_events.get(execution_id)
        if event is not None:
            event.wait(timeout)
        return self.monitor.get_status(execution_id)

    def get_active_executions(self) -> List[str]:
        with self._lock:
            return list(self._actors)

    def get_engine_metrics(self) -> Dict[str, Any]:
        with self._lock:
            actors = list(self._actors.values())
        summaries = self.monitor.list_executions()
        by_status: Dict[str, int] = defaultdict(int)
        for summary in summaries:
            by_status[summary.status.value] += 1
        return {
            "active_executions": len(actors),
            "queued_messages": sum(actor.pending_messages for actor in actors),
            "total_executions": len(summaries),
            "executions_by_status": dict(by_status),
        }

    def offer_to_rules(self, actor: InstanceActor, entry: ExecutionLogEntry) -> None:
        if not actor.definition.rules:
            return
        self.rule_engine.offer(RuleEvaluation(
            execution_id=actor.execution_id,
            entry=entry,
            context=dict(actor.context),
            rules=list(actor.definition.rules),
            reply=actor.post
        ))

    def instance_finished(self, actor: InstanceActor) -> None:
        with self._lock:
            self._actors.pop(actor.execution_id, None)
            event = self._finished_events.get(actor.execution_id)
            parent = self._actors.get(actor.parent_execution_id) if actor.parent_execution_id else None

        logger.info(f"Execution {actor.execution_id} finished with status {actor.status.value}")
        if parent is not None:
            parent.post(ChildFinished(
                child_execution_id=actor.execution_id,
                status=actor.status.value,
                context=dict(actor.context),
                error=actor.error
            ))
        if event is not None:
            event.set()

    def send_notification(self, kind: str, recipients: List[str], payload: Dict[str, Any]) -> None:
        try:
            self.notification_sender.send(kind, recipients, payload)
        except Exception as e:
            logger.error(f"Failed to send {kind} notification to {recipients}: {str(e)}", exc_info=True)

    def shutdown(self) -> None:
        """
        Shutdown the execution engine and clean up resources.
        """
        try:
            self._unsubscribe_tasks()
            for execution_id in self.get_active_executions():
                self.cancel_quietly(execution_id, "Execution cancelled by engine shutdown")
            if self._owns_executor:
                self.executor.shutdown(wait=True)
            logger.info("ExecutionEngine shutdown completed")
        except Exception as e:
            logger.error(f"Error during ExecutionEngine shutdown: {str(e)}")

    def _post_control(self, execution_id: str, message: Any) -> None:
        if not self.monitor.has_execution(execution_id):
            raise NotFoundError(f"Execution {execution_id} not found", resource="execution", resource_id=execution_id)
        if not self.post(execution_id, message):
            logger.debug(f"Execution {execution_id} already finished; ignoring {type(message).__name__}")

    def _on_task_completion(self, completion: TaskCompletion) -> None:
        with self._lock:
            actors = list(self._actors.values())
        for actor in actors:
            actor.post(TaskCompleted(completion))
