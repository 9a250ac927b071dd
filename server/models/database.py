"""SQLModel database models and tables."""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from sqlmodel import SQLModel, Field, Column, DateTime, JSON
from sqlalchemy import func


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowRecord(SQLModel, table=True):
    """Persisted workflow graph (nodes and edges in canvas wire format)."""

    __tablename__ = "workflows"

    workflow_id: str = Field(primary_key=True, max_length=255)
    owner_id: str = Field(index=True, max_length=255)
    nodes: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    edges: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    version: int = Field(default=1)
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class ExecutionRecord(SQLModel, table=True):
    """One workflow execution with its log and outcome."""

    __tablename__ = "executions"

    execution_id: str = Field(primary_key=True, max_length=255)
    workflow_id: str = Field(index=True, max_length=255)
    owner_id: str = Field(index=True, max_length=255)
    success: bool = Field(default=False)
    status: str = Field(default="pending", max_length=50)
    failing_step: Optional[int] = Field(default=None)
    error: Optional[str] = Field(default=None, max_length=2000)
    error_kind: Optional[str] = Field(default=None, max_length=50)
    output: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    log: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    duration_ms: int = Field(default=0)
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )


class CollectionDocument(SQLModel, table=True):
    """Document written by the db* nodes, grouped by collection name."""

    __tablename__ = "collection_documents"

    id: str = Field(primary_key=True, max_length=64)
    collection: str = Field(index=True, max_length=255)
    data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )
