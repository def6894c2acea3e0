"""Workflow Manager for definition lifecycle handling."""

from typing import List, Optional

from ..models.core import (
    ValidationResult,
    WorkflowDefinition,
    WorkflowStatus,
    WorkflowSummary,
    utc_now,
)
from .exceptions import WorkflowStateError
from .graph_validator import GraphValidator
from .logging import get_logger

logger = get_logger(__name__)


class WorkflowManager:
    """Manages workflow definitions, validation, lifecycle and trigger registration."""

    def __init__(self, workflow_store, validator: Optional[GraphValidator] = None, trigger_manager=None):
        """Initialize WorkflowManager.

        Args:
            workflow_store: Store holding the definitions
            validator: Graph validator used on activation and on edits of active workflows
            trigger_manager: Trigger Manager to (un)register triggers with, if any
        """
        self.workflow_store = workflow_store
        self.validator = validator or GraphValidator()
        self.trigger_manager = trigger_manager

    def create_workflow(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """
        Store a new workflow definition in draft status.

        Args:
            definition: The workflow definition to create

        Returns:
            WorkflowDefinition: The stored definition (version 1)

        Raises:
            ConcurrencyConflictError: If a workflow with the same ID exists
            StorageError: If storage operation fails
        """
        logger.info(f"Creating new workflow: {definition.name}")
        now = utc_now()
        draft = definition.model_copy(update={
            "status": WorkflowStatus.DRAFT,
            "version": 1,
            "created_at": now,
            "updated_at": now,
        })

        validation_result = self.validator.validate(draft)
        if not validation_result.is_valid:
            logger.info(f"Workflow '{draft.name}' saved as draft with {len(validation_result.violations)} violation(s)")
        if validation_result.warnings:
            logger.warning(f"Workflow validation warnings: {'; '.join(validation_result.warnings)}")

        return self.workflow_store.create(draft)

    def get_workflow(self, flow_id: str) -> WorkflowDefinition:
        return self.workflow_store.get(flow_id)

    def list_workflows(self) -> List[WorkflowSummary]:
        """
        List all workflows with summary information.

        Returns:
            List[WorkflowSummary]: Summaries, most recently updated first
        """
        summaries = [
            WorkflowSummary(
                id=definition.id,
                name=definition.name,
                type=definition.type,
                status=definition.status,
                version=definition.version,
                node_count=len(definition.nodes),
                updated_at=definition.updated_at
            )
            for definition in self.workflow_store.list()
        ]
        return sorted(summaries, key=lambda s: s.updated_at, reverse=True)

    def validate_workflow(self, definition: WorkflowDefinition) -> ValidationResult:
        return self.validator.validate(definition)

    def update_workflow(self, flow_id: str, definition: WorkflowDefinition, expected_version: int) -> WorkflowDefinition:
        """
        Replace the content of a workflow, bumping its version.

        The status is kept; it only changes through activate, pause and
        archive. Running executions keep the version they started with.

        Args:
            flow_id: ID of the workflow to edit
            definition: New content
            expected_version: Version the edit was based on

        Returns:
            WorkflowDefinition: The stored definition

        Raises:
            NotFoundError: If the workflow does not exist
            WorkflowStateError: If the workflow is archived
            GraphValidationError: If an active workflow would become invalid
            ConcurrencyConflictError: If the stored version is not ``expected_version``
        """
        current = self.workflow_store.get(flow_id)
        if current.status == WorkflowStatus.ARCHIVED:
            raise WorkflowStateError(f"Workflow {flow_id} is archived and cannot be edited",
                                     current_status=current.status.value)

        edited = definition.model_copy(update={"id": flow_id, "status": current.status})
        if current.status == WorkflowStatus.ACTIVE:
            self.validator.validate_or_raise(edited)

        stored = self.workflow_store.update(edited, expected_version)
        logger.info(f"Updated workflow {flow_id} to version {stored.version}")
        if stored.status == WorkflowStatus.ACTIVE and self.trigger_manager is not None:
            self.trigger_manager.register_workflow(stored)
        return stored

    def delete_workflow(self, flow_id: str) -> None:
        """
        Delete a workflow and disarm its triggers.

        Raises:
            NotFoundError: If the workflow does not exist
        """
        self.workflow_store.get(flow_id)
        if self.trigger_manager is not None:
            self.trigger_manager.unregister_workflow(flow_id)
        self.workflow_store.delete(flow_id)
        logger.info(f"Deleted workflow {flow_id}")

    def activate_workflow(self, flow_id: str) -> WorkflowDefinition:
        """
        Make a workflow triggerable.

        Raises:
            GraphValidationError: If the graph is invalid
            WorkflowStateError: If the workflow is archived
        """
        current = self.workflow_store.get(flow_id)
        if current.status == WorkflowStatus.ACTIVE:
            return current
        if current.status == WorkflowStatus.ARCHIVED:
            raise WorkflowStateError(f"Workflow {flow_id} is archived and cannot be activated",
                                     current_status=current.status.value)

        self.validator.validate_or_raise(current)
        stored = self._set_status(current, WorkflowStatus.ACTIVE)
        if self.trigger_manager is not None:
            self.trigger_manager.register_workflow(stored)
        return stored

    def pause_workflow(self, flow_id: str) -> WorkflowDefinition:
        current = self.workflow_store.get(flow_id)
        if current.status != WorkflowStatus.ACTIVE:
            raise WorkflowStateError(f"Only active workflows can be paused; {flow_id} is {current.status.value}",
                                     current_status=current.status.value)
        if self.trigger_manager is not None:
            self.trigger_manager.unregister_workflow(flow_id)
        return self._set_status(current, WorkflowStatus.PAUSED)

    def archive_workflow(self, flow_id: str) -> WorkflowDefinition:
        current = self.workflow_store.get(flow_id)
        if current.status == WorkflowStatus.ARCHIVED:
            return current
        if self.trigger_manager is not None:
            self.trigger_manager.unregister_workflow(flow_id)
        return self._set_status(current, WorkflowStatus.ARCHIVED)

    def restore_triggers(self) -> int:
        """Register the triggers of every stored active workflow; used at startup."""
        if self.trigger_manager is None:
            return 0
        active = [d for d in self.workflow_store.list() if d.status == WorkflowStatus.ACTIVE]
        for definition in active:
            self.trigger_manager.register_workflow(definition)
        logger.info(f"Restored triggers for {len(active)} active workflow(s)")
        return len(active)

    def _set_status(self, current: WorkflowDefinition, status: WorkflowStatus) -> WorkflowDefinition:
        stored = self.workflow_store.update(current.model_copy(update={"status": status}), current.version)
        logger.info(f"Workflow {current.id} is now {status.value} (version {stored.version})")
        return stored
