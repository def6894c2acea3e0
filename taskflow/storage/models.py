"""SQLAlchemy database models for the task-flow engine."""

from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Text, JSON, Integer, Index
from .database import Base


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowModel(Base):
    """Database model for workflow definitions."""
    __tablename__ = "workflows"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    status = Column(String, nullable=False, default="draft")
    version = Column(Integer, nullable=False, default=1)
    definition = Column(JSON, nullable=False)  # Stores the complete workflow definition
    created_at = Column(DateTime(timezone=True), default=_utc_now)
    updated_at = Column(DateTime(timezone=True), default=_utc_now, onupdate=_utc_now)

    __table_args__ = (
        Index("idx_workflows_status", "status"),
        Index("idx_workflows_updated_at", "updated_at"),
    )
