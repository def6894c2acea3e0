"""Custom exceptions for the task-flow engine with detailed error information."""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better classification."""
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    CONFIGURATION = "configuration"
    CONCURRENCY = "concurrency"
    TRIGGER = "trigger"


class WorkflowEngineError(Exception):
    """Base exception for all task-flow engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class GraphValidationError(WorkflowEngineError):
    """Raised when a workflow definition violates one or more graph invariants."""

    def __init__(
        self,
        message: str,
        validation_errors: Optional[List[str]] = None,
        flow_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.validation_errors = validation_errors or []
        if flow_id:
            self.add_context(flow_id=flow_id)
        if validation_errors:
            self.add_details(validation_errors=validation_errors)


class NodeExecutionError(WorkflowEngineError):
    """Base class for failures raised while running a node occurrence."""

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.EXECUTION)
        super().__init__(message, **kwargs)
        self.node_id = node_id
        if node_id:
            self.add_context(node_id=node_id)
        if execution_id:
            self.add_context(execution_id=execution_id)


class UnmatchedDecisionError(NodeExecutionError):
    """Raised when no outgoing branch of a decision node matches and no else branch exists."""

    def __init__(self, message: str, conditions: Optional[List[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        if conditions:
            self.add_details(conditions=conditions)


class TaskFailure(NodeExecutionError):
    """Raised when an external task reports failure and retries are exhausted."""

    def __init__(self, message: str, task_id: Optional[str] = None, attempts: Optional[int] = None, **kwargs):
        super().__init__(message, recoverable=True, **kwargs)
        if task_id:
            self.add_context(task_id=task_id)
        if attempts is not None:
            self.add_details(attempts=attempts)


class SubprocessFailure(NodeExecutionError):
    """Raised when a child execution of a subprocess node does not complete."""

    def __init__(self, message: str, child_execution_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        if child_execution_id:
            self.add_context(child_execution_id=child_execution_id)


class ExecutionTimeoutError(WorkflowEngineError):
    """Raised when an execution exceeds its maximum duration."""

    def __init__(self, message: str, execution_id: Optional[str] = None, max_duration: Optional[float] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if execution_id:
            self.add_context(execution_id=execution_id)
        if max_duration is not None:
            self.add_details(max_duration=max_duration)


class TriggerEvaluationError(WorkflowEngineError):
    """Raised when a schedule or condition trigger cannot be evaluated."""

    def __init__(self, message: str, trigger_id: Optional[str] = None, consecutive_failures: int = 0, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.TRIGGER,
            recoverable=True,
            **kwargs
        )
        if trigger_id:
            self.add_context(trigger_id=trigger_id)
        self.add_details(consecutive_failures=consecutive_failures)


class ExecutionEngineError(WorkflowEngineError):
    """Raised when execution engine operations fail."""

    def __init__(
        self,
        message: str,
        execution_id: Optional[str] = None,
        flow_id: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        super().__init__(message, category=ErrorCategory.EXECUTION, **kwargs)
        if execution_id:
            self.add_context(execution_id=execution_id)
        if flow_id:
            self.add_context(flow_id=flow_id)


class NotFoundError(WorkflowEngineError):
    """Raised when a workflow, execution, trigger or task does not exist."""

    def __init__(self, message: str, resource: Optional[str] = None, resource_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.STORAGE,
            **kwargs
        )
        if resource:
            self.add_context(resource=resource)
        if resource_id:
            self.add_context(resource_id=resource_id)


class ConcurrencyConflictError(WorkflowEngineError):
    """Raised when an update is made against a stale workflow version."""

    def __init__(self, message: str, expected_version: Optional[int] = None, actual_version: Optional[int] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.CONCURRENCY,
            recoverable=True,
            **kwargs
        )
        self.add_details(expected_version=expected_version, actual_version=actual_version)


class WorkflowStateError(WorkflowEngineError):
    """Raised on a lifecycle transition that the current status does not allow."""

    def __init__(self, message: str, current_status: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        if current_status:
            self.add_context(current_status=current_status)


class StorageError(WorkflowEngineError):
    """Raised when storage operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            recoverable=True,
            **kwargs
        )
        if operation:
            self.add_context(operation=operation)
        if table:
            self.add_context(table=table)


class TransientError(WorkflowEngineError):
    """Raised for transient errors that should be retried."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            recoverable=True,
            **kwargs
        )


class ConfigurationError(WorkflowEngineError):
    """Raised when configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
