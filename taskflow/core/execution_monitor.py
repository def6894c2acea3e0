"""Read-only view over execution state for polling clients."""

import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..models.core import (
    ExecutionInstance,
    ExecutionLogEntry,
    ExecutionSnapshot,
    ExecutionSummary,
    WorkflowDefinition,
)
from .exceptions import NotFoundError
from .logging import get_logger

logger = get_logger(__name__)


@dataclass
class _ExecutionRecord:
    execution_id: str
    definition: WorkflowDefinition
    snapshot: ExecutionSnapshot
    parent_execution_id: Optional[str] = None
    trigger_id: Optional[str] = None
    logs: List[ExecutionLogEntry] = field(default_factory=list)


class ExecutionMonitor:
    """
    Holds the latest committed snapshot and log of every execution.

    Instance actors push a snapshot together with the entries appended since
    their previous push; readers only ever see whole commits.
    """

    def __init__(self):
        self._records: Dict[str, _ExecutionRecord] = {}
        self._lock = threading.Lock()

    def register(
        self,
        execution_id: str,
        definition: WorkflowDefinition,
        snapshot: ExecutionSnapshot,
        parent_execution_id: Optional[str] = None,
        trigger_id: Optional[str] = None
    ) -> None:
        record = _ExecutionRecord(
            execution_id=execution_id,
            definition=definition,
            snapshot=snapshot,
            parent_execution_id=parent_execution_id,
            trigger_id=trigger_id
        )
        with self._lock:
            self._records[execution_id] = record
        logger.debug(f"Registered execution {execution_id} for workflow {definition.id}")

    def publish(self, execution_id: str, snapshot: ExecutionSnapshot,
                new_entries: Optional[List[ExecutionLogEntry]] = None) -> None:
        """Commit a snapshot and the log entries appended since the last commit."""
        with self._lock:
            record = self._records.get(execution_id)
            if record is None:
                logger.warning(f"Dropping snapshot for unregistered execution {execution_id}")
                return
            record.snapshot = snapshot
            if new_entries:
                record.logs.extend(new_entries)

    def has_execution(self, execution_id: str) -> bool:
        with self._lock:
            return execution_id in self._records

    def get_status(self, execution_id: str) -> ExecutionInstance:
        """
        Get the current state of an execution.

        Raises:
            NotFoundError: If the execution is unknown
        """
        with self._lock:
            record = self._get_record(execution_id)
            snapshot = record.snapshot
            logs = list(record.logs)

        return ExecutionInstance(
            id=record.execution_id,
            flow_id=record.definition.id,
            flow_version=record.definition.version,
            definition=record.definition,
            status=snapshot.status,
            started_at=snapshot.started_at,
            ended_at=snapshot.ended_at,
            active_occurrences=list(snapshot.active_occurrences),
            context=dict(snapshot.context),
            progress=snapshot.progress,
            logs=logs,
            parent_execution_id=record.parent_execution_id,
            trigger_id=record.trigger_id,
            error=snapshot.error
        )

    def get_log_delta(self, execution_id: str, since_seq: int = 0) -> List[ExecutionLogEntry]:
        """Entries with a sequence number greater than ``since_seq``."""
        with self._lock:
            record = self._get_record(execution_id)
            # seq is 1-based and dense, so it doubles as a list offset
            return list(record.logs[max(0, since_seq):])

    def list_executions(self, flow_id: Optional[str] = None) -> List[ExecutionSummary]:
        """Executions ordered by start time, optionally filtered by workflow."""
        with self._lock:
            records = [r for r in self._records.values() if flow_id is None or r.definition.id == flow_id]
            summaries = [
                ExecutionSummary(
                    id=r.execution_id,
                    flow_id=r.definition.id,
                    flow_version=r.definition.version,
                    status=r.snapshot.status,
                    progress=r.snapshot.progress,
                    started_at=r.snapshot.started_at,
                    ended_at=r.snapshot.ended_at,
                    parent_execution_id=r.parent_execution_id
                )
                for r in records
            ]
        return sorted(summaries, key=lambda s: s.started_at)

    def remove(self, execution_id: str) -> bool:
        """Drop a terminal execution from the monitor (archival)."""
        with self._lock:
            record = self._records.get(execution_id)
            if record is None or not record.snapshot.status.is_terminal:
                return False
            del self._records[execution_id]
        logger.info(f"Removed execution {execution_id} from monitor")
        return True

    def _get_record(self, execution_id: str) -> _ExecutionRecord:
        record = self._records.get(execution_id)
        if record is None:
            raise NotFoundError(
                f"Execution {execution_id} not found",
                resource="execution",
                resource_id=execution_id
            )
        return record
