"""Core Pydantic models for the task-flow engine."""

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowType(str, Enum):
    """Informational shape of a workflow; the engine treats all of them alike."""
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    CONDITIONAL = "conditional"
    MIXED = "mixed"


class WorkflowStatus(str, Enum):
    """Lifecycle status of a workflow definition."""
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class NodeKind(str, Enum):
    START = "start"
    TASK = "task"
    DECISION = "decision"
    WAIT = "wait"
    SUBPROCESS = "subprocess"
    NOTIFICATION = "notification"
    END = "end"


class EdgeKind(str, Enum):
    DEFAULT = "default"
    CONDITIONAL = "conditional"
    PARALLEL = "parallel"


class TriggerKind(str, Enum):
    MANUAL = "manual"
    SCHEDULE = "schedule"
    EVENT = "event"
    CONDITION = "condition"


class ScheduleFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class RuleKind(str, Enum):
    AUTOMATION = "automation"
    VALIDATION = "validation"
    NOTIFICATION = "notification"
    ESCALATION = "escalation"


class RulePriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        """Evaluation rank; lower ranks are evaluated first."""
        return {"high": 0, "medium": 1, "low": 2}[self.value]


class ExecutionStatusEnum(str, Enum):
    """Enumeration of execution instance statuses."""
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatusEnum.COMPLETED, ExecutionStatusEnum.FAILED, ExecutionStatusEnum.CANCELLED)


class ExecutionLogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')


class NodeBase(BaseModel):
    """Fields shared by every node kind."""
    id: str = Field(..., description="Unique identifier for the node within its workflow")
    label: str = Field(default="", description="Human readable label")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('id')
    @classmethod
    def validate_id_format(cls, id_value):
        """Ensure node ID follows valid format."""
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")
        if not _ID_PATTERN.match(id_value.strip()):
            raise ValueError("Node ID must contain only alphanumeric characters, underscores, and hyphens")
        return id_value.strip()

    @property
    def display_name(self) -> str:
        return self.label or self.id


class StartNode(NodeBase):
    kind: Literal["start"] = "start"


class EndNode(NodeBase):
    kind: Literal["end"] = "end"


class TaskNode(NodeBase):
    """Blocks until the referenced external task reports completion."""
    kind: Literal["task"] = "task"
    task_id: Optional[str] = Field(None, description="External task reference")
    max_retries: int = Field(default=0, ge=0, description="Retries after a reported failure")
    retry_backoff: Optional[float] = Field(None, gt=0, description="Base backoff in seconds between retries")


class DecisionBranch(BaseModel):
    """One (condition, edge) pair of a decision node; no condition means else."""
    condition: Optional[str] = None
    edge_id: str


class DecisionNode(NodeBase):
    """Takes the first outgoing edge whose condition holds.

    When ``branches`` is empty the node's outgoing edges and their conditions
    are used in declared order.
    """
    kind: Literal["decision"] = "decision"
    branches: List[DecisionBranch] = Field(default_factory=list)


class WaitNode(NodeBase):
    kind: Literal["wait"] = "wait"
    duration: Optional[float] = Field(None, description="Wait duration in seconds")


class SubprocessNode(NodeBase):
    kind: Literal["subprocess"] = "subprocess"
    flow_id: Optional[str] = Field(None, description="Referenced workflow definition id")
    continue_on_error: bool = False


class NotificationNode(NodeBase):
    kind: Literal["notification"] = "notification"
    notification_type: str = Field(default="info")
    recipients: List[str] = Field(default_factory=list)
    payload: Dict[str, Any] = Field(default_factory=dict, description="Payload template; string values are formatted with the execution context")


Node = Annotated[
    Union[StartNode, TaskNode, DecisionNode, WaitNode, SubprocessNode, NotificationNode, EndNode],
    Field(discriminator="kind"),
]

NODE_TYPES = (StartNode, TaskNode, DecisionNode, WaitNode, SubprocessNode, NotificationNode, EndNode)


class EdgeDefinition(BaseModel):
    """Definition of an edge between workflow nodes."""
    id: str = Field(..., description="Unique identifier for the edge")
    source: str = Field(..., description="Source node ID")
    target: str = Field(..., description="Target node ID")
    kind: EdgeKind = Field(default=EdgeKind.DEFAULT)
    condition: Optional[str] = Field(None, description="Condition evaluated when kind is conditional")
    label: str = ""

    @field_validator('id', 'source', 'target')
    @classmethod
    def validate_ids(cls, value):
        if not value or not value.strip():
            raise ValueError("Edge ID and endpoints cannot be empty")
        return value.strip()


class ScheduleSpec(BaseModel):
    """Recurrence of a schedule trigger."""
    frequency: ScheduleFrequency = ScheduleFrequency.DAILY
    time: str = Field(default="09:00", description="Time of day, HH:MM (UTC)")
    weekday: Optional[int] = Field(None, ge=0, le=6, description="0=Monday, used by weekly schedules")
    day_of_month: Optional[int] = Field(None, ge=1, le=31, description="Used by monthly schedules")

    @field_validator('time')
    @classmethod
    def validate_time(cls, value):
        match = re.match(r'^(\d{1,2}):(\d{2})$', value.strip())
        if not match or int(match.group(1)) > 23 or int(match.group(2)) > 59:
            raise ValueError("Schedule time must be HH:MM")
        return value.strip()

    @property
    def hour(self) -> int:
        return int(self.time.split(":")[0])

    @property
    def minute(self) -> int:
        return int(self.time.split(":")[1])


class TriggerConfig(BaseModel):
    schedule: Optional[ScheduleSpec] = None
    event_name: Optional[str] = None
    predicate: Optional[str] = Field(None, description="Name of a registered predicate (condition triggers)")
    poll_interval: Optional[float] = Field(None, gt=0, description="Polling interval in seconds (condition triggers)")


class TriggerDefinition(BaseModel):
    id: str
    name: str = ""
    kind: TriggerKind = TriggerKind.MANUAL
    enabled: bool = True
    config: TriggerConfig = Field(default_factory=TriggerConfig)


class RuleAction(BaseModel):
    """Parameters of a rule action; which fields apply depends on the rule kind."""
    description: str = ""
    task_title: Optional[str] = None
    task_id: Optional[str] = None
    assignee: Optional[str] = None
    priority: Optional[str] = None
    effect: Literal["fail", "warn"] = "warn"
    message: Optional[str] = None
    notification_type: str = "info"
    recipients: List[str] = Field(default_factory=list)
    payload: Dict[str, Any] = Field(default_factory=dict)


class RuleDefinition(BaseModel):
    id: str
    name: str = ""
    kind: RuleKind
    condition: str
    action: RuleAction = Field(default_factory=RuleAction)
    priority: RulePriority = RulePriority.MEDIUM
    enabled: bool = True


class WorkflowDefinition(BaseModel):
    """Complete definition of a task flow."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = Field(..., description="Name of the workflow")
    description: str = ""
    type: WorkflowType = WorkflowType.SEQUENTIAL
    status: WorkflowStatus = WorkflowStatus.DRAFT
    nodes: List[Node] = Field(default_factory=list)
    edges: List[EdgeDefinition] = Field(default_factory=list)
    triggers: List[TriggerDefinition] = Field(default_factory=list)
    rules: List[RuleDefinition] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    version: int = Field(default=1, ge=1)
    max_duration: Optional[float] = Field(None, gt=0, description="Maximum execution duration in seconds")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        """Ensure workflow name is not empty."""
        if not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip()

    def get_node(self, node_id: str):
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_edge(self, edge_id: str) -> Optional[EdgeDefinition]:
        for edge in self.edges:
            if edge.id == edge_id:
                return edge
        return None

    def outgoing_edges(self, node_id: str) -> List[EdgeDefinition]:
        """Outgoing edges of a node, in declared order."""
        return [edge for edge in self.edges if edge.source == node_id]

    def incoming_edges(self, node_id: str) -> List[EdgeDefinition]:
        return [edge for edge in self.edges if edge.target == node_id]

    def nodes_of_kind(self, kind: NodeKind) -> List[Any]:
        return [node for node in self.nodes if node.kind == kind]


class WorkflowSummary(BaseModel):
    """Summary information about a workflow definition."""
    id: str
    name: str
    type: WorkflowType
    status: WorkflowStatus
    version: int
    node_count: int
    updated_at: datetime


class GraphViolation(BaseModel):
    """One violated graph invariant."""
    code: str
    message: str
    node_id: Optional[str] = None
    edge_id: Optional[str] = None


class ValidationResult(BaseModel):
    """Result of graph validation."""
    is_valid: bool = Field(..., description="Whether the graph is valid")
    violations: List[GraphViolation] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")

    @property
    def errors(self) -> List[str]:
        return [violation.message for violation in self.violations]


class Occurrence(BaseModel):
    """One runtime visit to a node."""
    model_config = ConfigDict(frozen=True)

    node_id: str
    visit: int = Field(..., ge=1)

    def __str__(self) -> str:
        return f"{self.node_id}#{self.visit}"


class ExecutionLogEntry(BaseModel):
    """Immutable entry of an execution log."""
    model_config = ConfigDict(frozen=True)

    seq: int = Field(..., ge=1, description="Position in the execution log, starting at 1")
    timestamp: datetime
    level: ExecutionLogLevel
    message: str
    node_id: Optional[str] = None
    visit: Optional[int] = None
    data: Optional[Dict[str, Any]] = None
    source: Literal["engine", "rule"] = "engine"


class ExecutionSnapshot(BaseModel):
    """Mutable part of an execution, as last committed by its actor."""
    status: ExecutionStatusEnum
    progress: float = Field(default=0.0, ge=0, le=100)
    active_occurrences: List[Occurrence] = Field(default_factory=list)
    context: Dict[str, Any] = Field(default_factory=dict)
    started_at: datetime
    ended_at: Optional[datetime] = None
    error: Optional[Dict[str, Any]] = None


class ExecutionInstance(BaseModel):
    """A point-in-time view of one execution."""
    id: str
    flow_id: str
    flow_version: int
    definition: WorkflowDefinition
    status: ExecutionStatusEnum
    started_at: datetime
    ended_at: Optional[datetime] = None
    active_occurrences: List[Occurrence] = Field(default_factory=list)
    context: Dict[str, Any] = Field(default_factory=dict)
    progress: float = 0.0
    logs: List[ExecutionLogEntry] = Field(default_factory=list)
    parent_execution_id: Optional[str] = None
    trigger_id: Optional[str] = None
    error: Optional[Dict[str, Any]] = None


class ExecutionSummary(BaseModel):
    id: str
    flow_id: str
    flow_version: int
    status: ExecutionStatusEnum
    progress: float
    started_at: datetime
    ended_at: Optional[datetime] = None
    parent_execution_id: Optional[str] = None


class TaskInfo(BaseModel):
    """An external task as seen through the Task Store."""
    id: str
    title: str
    status: TaskStatus = TaskStatus.PENDING
    priority: str = "medium"
    assignee: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TaskCompletion(BaseModel):
    """Completion report of an external task."""
    task_id: str
    success: bool = True
    output: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
