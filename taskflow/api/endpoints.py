"""FastAPI REST endpoints for the task-flow engine."""

from datetime import datetime, timezone
from typing import Dict, List, Any, NoReturn, Optional
from fastapi import APIRouter, HTTPException, Depends, Query, status
from pydantic import BaseModel, Field

from ..core.collaborators import EventBus, InMemoryTaskStore
from ..core.execution_engine import ExecutionEngine
from ..core.exceptions import WorkflowEngineError, create_error_response
from ..core.logging import get_logger
from ..core.middleware import get_status_code_for_error
from ..core.trigger_manager import TriggerManager
from ..core.workflow_manager import WorkflowManager
from ..models.core import (
    ExecutionInstance,
    ExecutionLogEntry,
    ExecutionSummary,
    TaskInfo,
    ValidationResult,
    WorkflowDefinition,
    WorkflowSummary,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["taskflow"])

# Global instances (initialized by the application factory)
_workflow_manager: Optional[WorkflowManager] = None
_execution_engine: Optional[ExecutionEngine] = None
_trigger_manager: Optional[TriggerManager] = None
_task_store: Optional[InMemoryTaskStore] = None
_event_bus: Optional[EventBus] = None


def init_dependencies(
    workflow_manager: WorkflowManager,
    execution_engine: ExecutionEngine,
    trigger_manager: TriggerManager,
    task_store: InMemoryTaskStore,
    event_bus: EventBus
):
    """Initialize the global dependencies."""
    global _workflow_manager, _execution_engine, _trigger_manager, _task_store, _event_bus
    _workflow_manager = workflow_manager
    _execution_engine = execution_engine
    _trigger_manager = trigger_manager
    _task_store = task_store
    _event_bus = event_bus


def _not_initialized(component: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"{component} not initialized"
    )


def get_workflow_manager() -> WorkflowManager:
    """Dependency to get the workflow manager."""
    if _workflow_manager is None:
        raise _not_initialized("Workflow manager")
    return _workflow_manager


def get_execution_engine() -> ExecutionEngine:
    """Dependency to get the execution engine."""
    if _execution_engine is None:
        raise _not_initialized("Execution engine")
    return _execution_engine


def get_trigger_manager() -> TriggerManager:
    if _trigger_manager is None:
        raise _not_initialized("Trigger manager")
    return _trigger_manager


def get_task_store() -> InMemoryTaskStore:
    if _task_store is None:
        raise _not_initialized("Task store")
    return _task_store


def get_event_bus() -> EventBus:
    if _event_bus is None:
        raise _not_initialized("Event bus")
    return _event_bus


def _raise_http_error(error: Exception, action: str) -> NoReturn:
    """Translate an error raised while performing ``action`` into an HTTPException."""
    if isinstance(error, WorkflowEngineError):
        status_code = get_status_code_for_error(error)
        logger.warning(f"Workflow engine error while trying to {action}: {str(error)}")
        raise HTTPException(status_code=status_code, detail=create_error_response(error)) from error

    logger.error(f"Unexpected error while trying to {action}: {str(error)}", exc_info=True)
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": "InternalError",
            "message": f"An unexpected error occurred while trying to {action}",
            "details": {"original_error": str(error)},
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    ) from error


# Request/Response models
class CreateWorkflowResponse(BaseModel):
    """Response model for workflow creation."""
    flow_id: str = Field(..., description="Identifier of the created workflow")
    version: int = Field(..., description="Stored version")
    message: str = Field(..., description="Success message")
    validation: ValidationResult = Field(..., description="Validation result of the stored draft")


class UpdateWorkflowRequest(BaseModel):
    """Request model for editing a workflow."""
    workflow: WorkflowDefinition = Field(..., description="New workflow content")
    expected_version: int = Field(..., ge=1, description="Version the edit is based on")


class ExecuteWorkflowRequest(BaseModel):
    """Request model for a manual execution."""
    context: Dict[str, Any] = Field(default_factory=dict, description="Initial execution context")
    trigger_id: Optional[str] = Field(None, description="Manual trigger to fire, if any")


class ExecutionStartedResponse(BaseModel):
    execution_id: str
    flow_id: str
    message: str


class PublishEventRequest(BaseModel):
    payload: Dict[str, Any] = Field(default_factory=dict)


class CreateTaskRequest(BaseModel):
    title: str
    priority: str = "medium"
    assignee: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CompleteTaskRequest(BaseModel):
    """Outcome reported for an external task."""
    success: bool = True
    output: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


# Workflow endpoints

@router.get(
    "/workflows",
    response_model=List[WorkflowSummary],
    summary="List workflows"
)
async def list_workflows(
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> List[WorkflowSummary]:
    try:
        return workflow_manager.list_workflows()
    except Exception as e:
        _raise_http_error(e, "list workflows")


@router.post(
    "/workflows",
    response_model=CreateWorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a workflow",
    description="Store a new workflow definition as a draft and report its validation result"
)
async def create_workflow(
    workflow: WorkflowDefinition,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> CreateWorkflowResponse:
    """
    Create a new workflow.

    Drafts may be invalid; validation is enforced on activation.
    """
    try:
        stored = workflow_manager.create_workflow(workflow)
        validation = workflow_manager.validate_workflow(stored)
        logger.info(f"Successfully created workflow '{stored.name}' with ID: {stored.id}")
        return CreateWorkflowResponse(
            flow_id=stored.id,
            version=stored.version,
            message=f"Workflow '{stored.name}' created successfully",
            validation=validation
        )
    except Exception as e:
        _raise_http_error(e, "create workflow")


@router.post(
    "/workflows/validate",
    response_model=ValidationResult,
    summary="Validate a workflow definition without storing it"
)
async def validate_workflow(
    workflow: WorkflowDefinition,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> ValidationResult:
    try:
        return workflow_manager.validate_workflow(workflow)
    except Exception as e:
        _raise_http_error(e, "validate workflow")


@router.get(
    "/workflows/{flow_id}",
    response_model=WorkflowDefinition,
    summary="Get a workflow definition"
)
async def get_workflow(
    flow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> WorkflowDefinition:
    try:
        return workflow_manager.get_workflow(flow_id)
    except Exception as e:
        _raise_http_error(e, f"retrieve workflow {flow_id}")


@router.put(
    "/workflows/{flow_id}",
    response_model=WorkflowDefinition,
    summary="Edit a workflow",
    description="Replace the workflow content; fails with 409 if the stored version is not expected_version"
)
async def update_workflow(
    flow_id: str,
    request: UpdateWorkflowRequest,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> WorkflowDefinition:
    try:
        return workflow_manager.update_workflow(flow_id, request.workflow, request.expected_version)
    except Exception as e:
        _raise_http_error(e, f"update workflow {flow_id}")


@router.delete(
    "/workflows/{flow_id}",
    summary="Delete a workflow"
)
async def delete_workflow(
    flow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> Dict[str, Any]:
    try:
        workflow_manager.delete_workflow(flow_id)
        return {"message": f"Workflow '{flow_id}' deleted successfully", "flow_id": flow_id}
    except Exception as e:
        _raise_http_error(e, f"delete workflow {flow_id}")


@router.post("/workflows/{flow_id}/activate", response_model=WorkflowDefinition, summary="Activate a workflow")
async def activate_workflow(
    flow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> WorkflowDefinition:
    try:
        return workflow_manager.activate_workflow(flow_id)
    except Exception as e:
        _raise_http_error(e, f"activate workflow {flow_id}")


@router.post("/workflows/{flow_id}/pause", response_model=WorkflowDefinition, summary="Pause a workflow")
async def pause_workflow(
    flow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> WorkflowDefinition:
    try:
        return workflow_manager.pause_workflow(flow_id)
    except Exception as e:
        _raise_http_error(e, f"pause workflow {flow_id}")


@router.post("/workflows/{flow_id}/archive", response_model=WorkflowDefinition, summary="Archive a workflow")
async def archive_workflow(
    flow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> WorkflowDefinition:
    try:
        return workflow_manager.archive_workflow(flow_id)
    except Exception as e:
        _raise_http_error(e, f"archive workflow {flow_id}")


@router.post(
    "/workflows/{flow_id}/execute",
    response_model=ExecutionStartedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start an execution manually",
    description="Fire a manual trigger (or start directly when no trigger is named) against the current version"
)
async def execute_workflow(
    flow_id: str,
    request: Optional[ExecuteWorkflowRequest] = None,
    trigger_manager: TriggerManager = Depends(get_trigger_manager)
) -> ExecutionStartedResponse:
    request = request or ExecuteWorkflowRequest()
    try:
        execution_id = trigger_manager.fire_manual(flow_id, request.trigger_id, request.context)
        logger.info(f"Started execution {execution_id} of workflow {flow_id}")
        return ExecutionStartedResponse(
            execution_id=execution_id,
            flow_id=flow_id,
            message="Workflow execution started successfully"
        )
    except Exception as e:
        _raise_http_error(e, f"execute workflow {flow_id}")


@router.get("/workflows/{flow_id}/triggers", summary="List the armed triggers of a workflow")
async def list_triggers(
    flow_id: str,
    trigger_manager: TriggerManager = Depends(get_trigger_manager)
) -> List[Dict[str, Any]]:
    return trigger_manager.list_triggers(flow_id)


@router.post("/workflows/{flow_id}/triggers/{trigger_id}/enable", summary="Re-enable a trigger")
async def enable_trigger(
    flow_id: str,
    trigger_id: str,
    trigger_manager: TriggerManager = Depends(get_trigger_manager)
) -> Dict[str, Any]:
    try:
        trigger_manager.enable_trigger(flow_id, trigger_id)
        return trigger_manager.get_trigger_state(flow_id, trigger_id)
    except Exception as e:
        _raise_http_error(e, f"enable trigger {trigger_id}")


@router.post("/workflows/{flow_id}/triggers/{trigger_id}/disable", summary="Disable a trigger")
async def disable_trigger(
    flow_id: str,
    trigger_id: str,
    trigger_manager: TriggerManager = Depends(get_trigger_manager)
) -> Dict[str, Any]:
    try:
        trigger_manager.disable_trigger(flow_id, trigger_id, reason="disabled via API")
        return trigger_manager.get_trigger_state(flow_id, trigger_id)
    except Exception as e:
        _raise_http_error(e, f"disable trigger {trigger_id}")


# Execution endpoints

@router.get(
    "/executions",
    response_model=List[ExecutionSummary],
    summary="List executions",
    description="Execution history, optionally restricted to one workflow"
)
async def list_executions(
    flow_id: Optional[str] = Query(None, description="Only executions of this workflow"),
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> List[ExecutionSummary]:
    return execution_engine.list_executions(flow_id)


@router.get(
    "/executions/{execution_id}",
    response_model=ExecutionInstance,
    summary="Get execution status"
)
async def get_execution_status(
    execution_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> ExecutionInstance:
    try:
        return execution_engine.get_status(execution_id)
    except Exception as e:
        _raise_http_error(e, f"retrieve execution {execution_id}")


@router.get(
    "/executions/{execution_id}/logs",
    response_model=List[ExecutionLogEntry],
    summary="Get execution log entries",
    description="Entries with seq greater than since_seq, in order"
)
async def get_execution_logs(
    execution_id: str,
    since_seq: int = Query(0, ge=0, description="Return entries after this sequence number"),
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> List[ExecutionLogEntry]:
    try:
        return execution_engine.get_log_delta(execution_id, since_seq)
    except Exception as e:
        _raise_http_error(e, f"retrieve logs of execution {execution_id}")


@router.post("/executions/{execution_id}/cancel", status_code=status.HTTP_202_ACCEPTED, summary="Cancel an execution")
async def cancel_execution(
    execution_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> Dict[str, Any]:
    try:
        execution_engine.cancel(execution_id)
        return {"execution_id": execution_id, "message": "Cancellation requested"}
    except Exception as e:
        _raise_http_error(e, f"cancel execution {execution_id}")


@router.post("/executions/{execution_id}/pause", status_code=status.HTTP_202_ACCEPTED, summary="Pause an execution")
async def pause_execution(
    execution_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> Dict[str, Any]:
    try:
        execution_engine.pause(execution_id)
        return {"execution_id": execution_id, "message": "Pause requested"}
    except Exception as e:
        _raise_http_error(e, f"pause execution {execution_id}")


@router.post("/executions/{execution_id}/resume", status_code=status.HTTP_202_ACCEPTED, summary="Resume an execution")
async def resume_execution(
    execution_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> Dict[str, Any]:
    try:
        execution_engine.resume(execution_id)
        return {"execution_id": execution_id, "message": "Resume requested"}
    except Exception as e:
        _raise_http_error(e, f"resume execution {execution_id}")


@router.get("/metrics", summary="Engine metrics")
async def get_metrics(
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> Dict[str, Any]:
    return execution_engine.get_engine_metrics()


# Collaborator endpoints

@router.post("/events/{event_name}", summary="Publish an event on the event bus")
async def publish_event(
    event_name: str,
    request: Optional[PublishEventRequest] = None,
    event_bus: EventBus = Depends(get_event_bus)
) -> Dict[str, Any]:
    payload = request.payload if request is not None else {}
    delivered = event_bus.publish(event_name, payload)
    logger.info(f"Published event '{event_name}' to {delivered} subscriber(s)")
    return {"event_name": event_name, "delivered": delivered}


@router.post("/tasks", response_model=TaskInfo, status_code=status.HTTP_201_CREATED, summary="Create a task")
async def create_task(
    request: CreateTaskRequest,
    task_store: InMemoryTaskStore = Depends(get_task_store)
) -> TaskInfo:
    return task_store.create_task(request.title, request.priority, request.assignee, request.metadata)


@router.get("/tasks/{task_id}", response_model=TaskInfo, summary="Get a task")
async def get_task(
    task_id: str,
    task_store: InMemoryTaskStore = Depends(get_task_store)
) -> TaskInfo:
    try:
        return task_store.get_task(task_id)
    except Exception as e:
        _raise_http_error(e, f"retrieve task {task_id}")


@router.post(
    "/tasks/{task_id}/complete",
    summary="Report a task outcome",
    description="Completes the oldest task node waiting on this task in every live execution"
)
async def complete_task(
    task_id: str,
    request: Optional[CompleteTaskRequest] = None,
    task_store: InMemoryTaskStore = Depends(get_task_store)
) -> Dict[str, Any]:
    request = request or CompleteTaskRequest()
    completion = task_store.complete_task(task_id, request.success, request.output, request.error)
    return completion.model_dump()
