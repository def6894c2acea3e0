"""Core task-flow engine components."""

from .exceptions import (
    WorkflowEngineError,
    GraphValidationError,
    NodeExecutionError,
    UnmatchedDecisionError,
    TaskFailure,
    SubprocessFailure,
    ExecutionTimeoutError,
    TriggerEvaluationError,
    ExecutionEngineError,
    NotFoundError,
    ConcurrencyConflictError,
    WorkflowStateError,
    StorageError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger
from .graph_validator import GraphValidator
from .execution_monitor import ExecutionMonitor
from .execution_engine import ExecutionEngine
from .rule_engine import RuleEngine
from .trigger_manager import TriggerManager
from .workflow_manager import WorkflowManager

__all__ = [
    "WorkflowEngineError",
    "GraphValidationError",
    "NodeExecutionError",
    "UnmatchedDecisionError",
    "TaskFailure",
    "SubprocessFailure",
    "ExecutionTimeoutError",
    "TriggerEvaluationError",
    "ExecutionEngineError",
    "NotFoundError",
    "ConcurrencyConflictError",
    "WorkflowStateError",
    "StorageError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
    "GraphValidator",
    "ExecutionMonitor",
    "ExecutionEngine",
    "RuleEngine",
    "TriggerManager",
    "WorkflowManager",
]
