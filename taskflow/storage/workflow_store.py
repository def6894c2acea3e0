"""Workflow Store: persistence of workflow definitions with optimistic concurrency."""

import abc
import threading
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..core.error_recovery import RetryConfig, with_retry
from ..core.exceptions import ConcurrencyConflictError, NotFoundError, StorageError
from ..core.logging import get_logger
from ..models.core import WorkflowDefinition, utc_now
from .models import WorkflowModel

logger = get_logger(__name__)

_STORAGE_RETRY = RetryConfig(max_attempts=3, base_delay=0.1, max_delay=1.0)


def _not_found(flow_id: str) -> NotFoundError:
    return NotFoundError(f"Workflow with ID '{flow_id}' not found", resource="workflow", resource_id=flow_id)


def _version_conflict(flow_id: str, expected: int, actual: int) -> ConcurrencyConflictError:
    return ConcurrencyConflictError(
        f"Workflow '{flow_id}' is at version {actual}, not {expected}",
        expected_version=expected,
        actual_version=actual
    )


class WorkflowStore(metaclass=abc.ABCMeta):
    """Contract for storing workflow definitions."""

    @abc.abstractmethod
    def create(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Store a new definition; raises ConcurrencyConflictError if the id is taken."""
        raise NotImplementedError

    @abc.abstractmethod
    def get(self, flow_id: str) -> WorkflowDefinition:
        """Current version of a definition; raises NotFoundError if unknown."""
        raise NotImplementedError

    @abc.abstractmethod
    def list(self) -> List[WorkflowDefinition]:
        raise NotImplementedError

    @abc.abstractmethod
    def update(self, definition: WorkflowDefinition, expected_version: int) -> WorkflowDefinition:
        """
        Replace a definition if the stored version still equals ``expected_version``.

        The stored copy gets version ``expected_version + 1``.

        Raises:
            NotFoundError: If the definition does not exist
            ConcurrencyConflictError: If the stored version differs
        """
        raise NotImplementedError

    @abc.abstractmethod
    def delete(self, flow_id: str) -> bool:
        raise NotImplementedError


class InMemoryWorkflowStore(WorkflowStore):
    """Thread-safe in-process store; hands out deep copies."""

    def __init__(self):
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._lock = threading.RLock()

    def create(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        with self._lock:
            if definition.id in self._definitions:
                raise ConcurrencyConflictError(f"Workflow with ID '{definition.id}' already exists")
            self._definitions[definition.id] = definition.model_copy(deep=True)
        return definition.model_copy(deep=True)

    def get(self, flow_id: str) -> WorkflowDefinition:
        with self._lock:
            definition = self._definitions.get(flow_id)
            if definition is None:
                raise _not_found(flow_id)
            return definition.model_copy(deep=True)

    def list(self) -> List[WorkflowDefinition]:
        with self._lock:
            return [d.model_copy(deep=True) for d in self._definitions.values()]

    def update(self, definition: WorkflowDefinition, expected_version: int) -> WorkflowDefinition:
        with self._lock:
            current = self._definitions.get(definition.id)
            if current is None:
                raise _not_found(definition.id)
            if current.version != expected_version:
                raise _version_conflict(definition.id, expected_version, current.version)
            stored = definition.model_copy(
                update={"version": expected_version + 1, "created_at": current.created_at, "updated_at": utc_now()},
                deep=True
            )
            self._definitions[definition.id] = stored
            return stored.model_copy(deep=True)

    def delete(self, flow_id: str) -> bool:
        with self._lock:
            return self._definitions.pop(flow_id, None) is not None


class SqlWorkflowStore(WorkflowStore):
    """SQLAlchemy-backed store keeping the definition as a JSON document."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def create(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        logger.info(f"Creating new workflow: {definition.name}")

        def work(db: Session) -> bool:
            if db.get(WorkflowModel, definition.id) is not None:
                return False
            db.add(WorkflowModel(
                id=definition.id,
                name=definition.name,
                description=definition.description,
                status=definition.status.value,
                version=definition.version,
                definition=definition.model_dump(mode="json"),
                created_at=definition.created_at,
                updated_at=definition.updated_at
            ))
            return True

        if not self._run("create workflow", work):
            raise ConcurrencyConflictError(f"Workflow with ID '{definition.id}' already exists")
        logger.info(f"Successfully created workflow '{definition.name}' with ID: {definition.id}")
        return definition

    def get(self, flow_id: str) -> WorkflowDefinition:
        logger.debug(f"Retrieving workflow with ID: {flow_id}")

        def work(db: Session) -> Optional[Dict[str, Any]]:
            model = db.get(WorkflowModel, flow_id)
            return dict(model.definition) if model is not None else None

        data = self._run("retrieve workflow", work)
        if data is None:
            raise _not_found(flow_id)
        return WorkflowDefinition.model_validate(data)

    def list(self) -> List[WorkflowDefinition]:
        def work(db: Session) -> List[Dict[str, Any]]:
            models = db.query(WorkflowModel).order_by(WorkflowModel.created_at.desc()).all()
            return [dict(model.definition) for model in models]

        definitions = [WorkflowDefinition.model_validate(data) for data in self._run("list workflows", work)]
        logger.debug(f"Retrieved {len(definitions)} workflows")
        return definitions

    def update(self, definition: WorkflowDefinition, expected_version: int) -> WorkflowDefinition:
        logger.info(f"Updating workflow {definition.id} from version {expected_version}")

        def work(db: Session) -> Optional[WorkflowDefinition]:
            model = db.get(WorkflowModel, definition.id)
            if model is None:
                return None
            stored = definition.model_copy(
                update={"version": expected_version + 1,
                        "created_at": WorkflowDefinition.model_validate(model.definition).created_at,
                        "updated_at": utc_now()},
                deep=True
            )
            # Compare-and-set on the version column
            result = db.execute(
                update(WorkflowModel)
                .where(WorkflowModel.id == definition.id, WorkflowModel.version == expected_version)
                .values(
                    name=stored.name,
                    description=stored.description,
                    status=stored.status.value,
                    version=stored.version,
                    definition=stored.model_dump(mode="json"),
                    updated_at=stored.updated_at
                )
            )
            return stored if result.rowcount == 1 else None

        stored = self._run("update workflow", work)
        if stored is None:
            actual = self._current_version(definition.id)
            if actual is None:
                raise _not_found(definition.id)
            raise _version_conflict(definition.id, expected_version, actual)
        return stored

    def delete(self, flow_id: str) -> bool:
        logger.info(f"Deleting workflow with ID: {flow_id}")

        def work(db: Session) -> bool:
            model = db.get(WorkflowModel, flow_id)
            if model is None:
                return False
            db.delete(model)
            return True

        deleted = self._run("delete workflow", work)
        if not deleted:
            logger.warning(f"Workflow with ID '{flow_id}' not found for deletion")
        return deleted

    def _current_version(self, flow_id: str) -> Optional[int]:
        def work(db: Session) -> Optional[int]:
            model = db.get(WorkflowModel, flow_id)
            return model.version if model is not None else None

        return self._run("read workflow version", work)

    @with_retry(_STORAGE_RETRY)
    def _run(self, operation: str, work: Callable[[Session], Any]) -> Any:
        """Run ``work`` in its own transaction; database errors become StorageError."""
        db = self._session_factory()
        try:
            result = work(db)
            db.commit()
            return result
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while trying to {operation}: {str(e)}")
            raise StorageError(f"Failed to {operation}: {str(e)}", operation=operation, table="workflows") from e
        finally:
            db.close()
