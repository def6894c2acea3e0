"""Contracts for the engine's external collaborators, with in-memory implementations.

The Task Store, Notification Sender and Event Bus live outside the engine. The
in-memory versions here back tests and single-process deployments.
"""

import abc
import threading
import uuid
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from ..models.core import TaskCompletion, TaskInfo, TaskStatus
from .exceptions import NotFoundError
from .logging import get_logger

logger = get_logger(__name__)

TaskCompletionHandler = Callable[[TaskCompletion], None]
EventHandler = Callable[[str, Dict[str, Any]], None]


class TaskStore(metaclass=abc.ABCMeta):
    """Source of external tasks referenced by task nodes."""

    @abc.abstractmethod
    def get_task(self, task_id: str) -> TaskInfo:
        """Resolve a task id; raises NotFoundError if unknown."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(self, handler: TaskCompletionHandler) -> Callable[[], None]:
        """Register a completion handler; returns a callable that unsubscribes it."""
        raise NotImplementedError

    @abc.abstractmethod
    def create_task(self, title: str, priority: str = "medium", assignee: Optional[str] = None,
                    metadata: Optional[Dict[str, Any]] = None) -> TaskInfo:
        raise NotImplementedError

    @abc.abstractmethod
    def update_task(self, task_id: str, priority: Optional[str] = None,
                    assignee: Optional[str] = None) -> TaskInfo:
        raise NotImplementedError

    def retry_task(self, task_id: str) -> None:
        """Ask for a failed task to be attempted again (no-op by default)."""
        pass


class NotificationSender(metaclass=abc.ABCMeta):
    """Fire-and-forget delivery of notifications."""

    @abc.abstractmethod
    def send(self, kind: str, recipients: List[str], payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class EventBus(metaclass=abc.ABCMeta):
    """Named event channels used by event triggers."""

    @abc.abstractmethod
    def subscribe(self, event_name: str, handler: EventHandler) -> Callable[[], None]:
        """Register a handler; returns a callable that unsubscribes it."""
        raise NotImplementedError

    @abc.abstractmethod
    def publish(self, event_name: str, payload: Optional[Dict[str, Any]] = None) -> int:
        """Deliver an event; returns the number of handlers invoked."""
        raise NotImplementedError


class InMemoryTaskStore(TaskStore):
    """Thread-safe dictionary of tasks with completion callbacks."""

    def __init__(self):
        self._tasks: Dict[str, TaskInfo] = {}
        self._handlers: List[TaskCompletionHandler] = []
        self._lock = threading.RLock()

    def add_task(self, task_id: str, title: str = "", **fields) -> TaskInfo:
        task = TaskInfo(id=task_id, title=title or task_id, **fields)
        with self._lock:
            self._tasks[task_id] = task
        return task

    def get_task(self, task_id: str) -> TaskInfo:
        with self._lock:
            task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError(f"Task '{task_id}' not found", resource="task", resource_id=task_id)
        return task

    def list_tasks(self) -> List[TaskInfo]:
        with self._lock:
            return list(self._tasks.values())

    def subscribe(self, handler: TaskCompletionHandler) -> Callable[[], None]:
        with self._lock:
            self._handlers.append(handler)

        def unsubscribe():
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)
        return unsubscribe

    def create_task(self, title: str, priority: str = "medium", assignee: Optional[str] = None,
                    metadata: Optional[Dict[str, Any]] = None) -> TaskInfo:
        task = TaskInfo(
            id=str(uuid.uuid4()),
            title=title,
            priority=priority,
            assignee=assignee,
            metadata=metadata or {}
        )
        with self._lock:
            self._tasks[task.id] = task
        logger.info(f"Created task '{title}' ({task.id})")
        return task

    def update_task(self, task_id: str, priority: Optional[str] = None,
                    assignee: Optional[str] = None) -> TaskInfo:
        with self._lock:
            task = self.get_task(task_id)
            updates = {}
            if priority is not None:
                updates["priority"] = priority
            if assignee is not None:
                updates["assignee"] = assignee
            task = task.model_copy(update=updates)
            self._tasks[task_id] = task
        logger.info(f"Updated task {task_id}: {updates}")
        return task

    def retry_task(self, task_id: str) -> None:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is not None:
                self._tasks[task_id] = task.model_copy(update={"status": TaskStatus.PENDING})

    def complete_task(self, task_id: str, success: bool = True, output: Optional[Dict[str, Any]] = None,
                      error: Optional[str] = None) -> TaskCompletion:
        """Record a task outcome and notify subscribers."""
        completion = TaskCompletion(task_id=task_id, success=success, output=output or {}, error=error)
        with self._lock:
            task = self._tasks.get(task_id) or TaskInfo(id=task_id, title=task_id)
            status = TaskStatus.COMPLETED if success else TaskStatus.FAILED
            self._tasks[task_id] = task.model_copy(update={"status": status})
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(completion)
            except Exception as e:
                logger.error(f"Task completion handler failed for {task_id}: {str(e)}", exc_info=True)
        return completion


class LoggingNotificationSender(NotificationSender):
    """Writes notifications to the application log."""

    def send(self, kind: str, recipients: List[str], payload: Dict[str, Any]) -> None:
        logger.info(f"Notification [{kind}] to {recipients or ['<default>']}: {payload}")


class InMemoryNotificationSender(NotificationSender):
    """Records every notification it is asked to send."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def send(self, kind: str, recipients: List[str], payload: Dict[str, Any]) -> None:
        with self._lock:
            self.sent.append({"kind": kind, "recipients": list(recipients), "payload": dict(payload)})


class InMemoryEventBus(EventBus):
    """Synchronous in-process event bus."""

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)
        self._lock = threading.RLock()

    def subscribe(self, event_name: str, handler: EventHandler) -> Callable[[], None]:
        with self._lock:
            self._handlers[event_name].append(handler)

        def unsubscribe():
            with self._lock:
                if handler in self._handlers.get(event_name, []):
                    self._handlers[event_name].remove(handler)
        return unsubscribe

    def publish(self, event_name: str, payload: Optional[Dict[str, Any]] = None) -> int:
        with self._lock:
            handlers = list(self._handlers.get(event_name, []))
        for handler in handlers:
            try:
                handler(event_name, dict(payload or {}))
            except Exception as e:
                logger.error(f"Event handler for '{event_name}' failed: {str(e)}", exc_info=True)
        logger.debug(f"Published event '{event_name}' to {len(handlers)} handler(s)")
        return len(handlers)

    def subscriber_count(self, event_name: str) -> int:
        with self._lock:
            return len(self._handlers.get(event_name, []))
