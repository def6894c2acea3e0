"""Messages delivered to instance actors."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..models.core import ExecutionLogLevel, Occurrence, TaskCompletion


@dataclass(frozen=True)
class Start:
    pass


@dataclass(frozen=True)
class TaskCompleted:
    completion: TaskCompletion


@dataclass(frozen=True)
class TimerFired:
    occurrence: Occurrence


@dataclass(frozen=True)
class RetryTask:
    occurrence: Occurrence


@dataclass(frozen=True)
class ChildFinished:
    child_execution_id: str
    status: str
    context: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class Cancel:
    reason: str = "Execution cancelled"


@dataclass(frozen=True)
class Pause:
    pass


@dataclass(frozen=True)
class Resume:
    pass


@dataclass(frozen=True)
class Timeout:
    pass


@dataclass(frozen=True)
class FailInstance:
    """Sent by validation rules with a ``fail`` effect."""
    message: str
    rule_id: Optional[str] = None
    node_id: Optional[str] = None
    visit: Optional[int] = None


@dataclass(frozen=True)
class AppendLog:
    """Sent by rule actions that record an entry on the instance log."""
    level: ExecutionLogLevel
    message: str
    node_id: Optional[str] = None
    visit: Optional[int] = None
    data: Optional[Dict[str, Any]] = None


# Messages still honoured while an instance is paused
CONTROL_MESSAGES = (Cancel, Pause, Resume, Timeout)
