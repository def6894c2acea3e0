"""Database models and storage layer."""

from .database import (
    Base,
    create_database_engine,
    create_session_factory,
    create_tables,
    drop_tables,
    get_database_engine,
    get_db,
    reset_database_engine,
)
from .models import WorkflowModel
from .workflow_store import InMemoryWorkflowStore, SqlWorkflowStore, WorkflowStore

__all__ = [
    "Base",
    "create_database_engine",
    "create_session_factory",
    "create_tables",
    "drop_tables",
    "get_database_engine",
    "get_db",
    "reset_database_engine",
    "WorkflowModel",
    "WorkflowStore",
    "InMemoryWorkflowStore",
    "SqlWorkflowStore",
]
