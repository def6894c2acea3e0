"""Data models for the task-flow engine."""

from .core import (
    WorkflowType,
    WorkflowStatus,
    NodeKind,
    EdgeKind,
    TriggerKind,
    ScheduleFrequency,
    RuleKind,
    RulePriority,
    ExecutionStatusEnum,
    ExecutionLogLevel,
    TaskStatus,
    StartNode,
    TaskNode,
    DecisionBranch,
    DecisionNode,
    WaitNode,
    SubprocessNode,
    NotificationNode,
    EndNode,
    Node,
    NODE_TYPES,
    EdgeDefinition,
    ScheduleSpec,
    TriggerConfig,
    TriggerDefinition,
    RuleAction,
    RuleDefinition,
    WorkflowDefinition,
    WorkflowSummary,
    GraphViolation,
    ValidationResult,
    Occurrence,
    ExecutionLogEntry,
    ExecutionSnapshot,
    ExecutionInstance,
    ExecutionSummary,
    TaskInfo,
    TaskCompletion,
)

__all__ = [
    "WorkflowType",
    "WorkflowStatus",
    "NodeKind",
    "EdgeKind",
    "TriggerKind",
    "ScheduleFrequency",
    "RuleKind",
    "RulePriority",
    "ExecutionStatusEnum",
    "ExecutionLogLevel",
    "TaskStatus",
    "StartNode",
    "TaskNode",
    "DecisionBranch",
    "DecisionNode",
    "WaitNode",
    "SubprocessNode",
    "NotificationNode",
    "EndNode",
    "Node",
    "NODE_TYPES",
    "EdgeDefinition",
    "ScheduleSpec",
    "TriggerConfig",
    "TriggerDefinition",
    "RuleAction",
    "RuleDefinition",
    "WorkflowDefinition",
    "WorkflowSummary",
    "GraphViolation",
    "ValidationResult",
    "Occurrence",
    "ExecutionLogEntry",
    "ExecutionSnapshot",
    "ExecutionInstance",
    "ExecutionSummary",
    "TaskInfo",
    "TaskCompletion",
]
