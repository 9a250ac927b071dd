"""Async database service with SQLModel and SQLAlchemy 2.0."""

import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional
from contextlib import asynccontextmanager

from sqlmodel import SQLModel, select
from sqlalchemy import update, delete
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from core.config import Settings
from core.logging import get_logger
from models.database import WorkflowRecord, ExecutionRecord, CollectionDocument
from services.errors import (
    ConcurrentModificationError,
    ExecutionNotFoundError,
    WorkflowNotFoundError,
)
from services.execution.models import ExecutionResult
from services.graph.models import Edge, Graph, Node

logger = get_logger(__name__)


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            # Disable verbose database and asyncio logging
            logging.getLogger("aiosqlite").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)

            engine_kwargs: Dict[str, Any] = {"echo": self.settings.database_echo, "future": True}
            if ":memory:" in self.settings.database_url:
                # One shared connection, otherwise every session sees an empty database
                engine_kwargs["poolclass"] = StaticPool
                engine_kwargs["connect_args"] = {"check_same_thread": False}

            self.engine = create_async_engine(self.settings.database_url, **engine_kwargs)

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully")

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()


def _graph_from_record(record: WorkflowRecord) -> Graph:
    return Graph(
        workflow_id=record.workflow_id,
        owner_id=record.owner_id,
        nodes=[Node.from_dict(n) for n in record.nodes or []],
        edges=[Edge.from_dict(e) for e in record.edges or []],
        created_at=record.created_at,
        updated_at=record.updated_at,
        version=record.version,
    )


class WorkflowRepository:
    """Workflow graphs and execution records.

    save() is an optimistic update: it only succeeds when the stored version is
    still the one the caller loaded.
    """

    def __init__(self, database: Database):
        self.database = database

    # ============================================================================
    # Workflows
    # ============================================================================

    async def create(self, graph: Graph) -> Graph:
        """Insert a new workflow at version 1."""
        now = datetime.now(timezone.utc)
        record = WorkflowRecord(
            workflow_id=graph.workflow_id,
            owner_id=graph.owner_id,
            nodes=[n.to_dict() for n in graph.nodes],
            edges=[e.to_dict() for e in graph.edges],
            version=1,
            created_at=now,
            updated_at=now,
        )
        async with self.database.get_session() as session:
            session.add(record)
            await session.commit()

        logger.info("Workflow created", workflow_id=graph.workflow_id,
                    owner_id=graph.owner_id, nodes=len(graph.nodes))
        return _graph_from_record(record)

    async def load(self, workflow_id: str, owner_id: str) -> Graph:
        """Load a workflow owned by owner_id.

        Raises:
            WorkflowNotFoundError: No such workflow for this owner.
        """
        async with self.database.get_session() as session:
            stmt = select(WorkflowRecord).where(
                WorkflowRecord.workflow_id == workflow_id,
                WorkflowRecord.owner_id == owner_id,
            )
            result = await session.execute(stmt)
            record = result.scalar_one_or_none()

        if record is None:
            raise WorkflowNotFoundError(workflow_id)
        return _graph_from_record(record)

    async def save(self, graph: Graph, expected_version: int) -> Graph:
        """Persist graph if the stored version still equals expected_version.

        Raises:
            WorkflowNotFoundError: The workflow is gone.
            ConcurrentModificationError: Someone saved in between.
        """
        now = datetime.now(timezone.utc)
        async with self.database.get_session() as session:
            stmt = (
                update(WorkflowRecord)
                .where(
                    WorkflowRecord.workflow_id == graph.workflow_id,
                    WorkflowRecord.owner_id == graph.owner_id,
                    WorkflowRecord.version == expected_version,
                )
                .values(
                    nodes=[n.to_dict() for n in graph.nodes],
                    edges=[e.to_dict() for e in graph.edges],
                    version=expected_version + 1,
                    updated_at=now,
                )
            )
            result = await session.execute(stmt)

            if result.rowcount == 0:
                await session.rollback()
                current = await session.execute(
                    select(WorkflowRecord.version).where(
                        WorkflowRecord.workflow_id == graph.workflow_id,
                        WorkflowRecord.owner_id == graph.owner_id,
                    )
                )
                actual = current.scalar_one_or_none()
                if actual is None:
                    raise WorkflowNotFoundError(graph.workflow_id)
                raise ConcurrentModificationError(graph.workflow_id, expected_version, actual)

            await session.commit()

        saved = graph.copy()
        saved.version = expected_version + 1
        saved.updated_at = now
        logger.debug("Workflow saved", workflow_id=graph.workflow_id, version=saved.version)
        return saved

    async def list(self, owner_id: str) -> List[Graph]:
        async with self.database.get_session() as session:
            stmt = (
                select(WorkflowRecord)
                .where(WorkflowRecord.owner_id == owner_id)
                .order_by(WorkflowRecord.created_at)
            )
            result = await session.execute(stmt)
            return [_graph_from_record(r) for r in result.scalars().all()]

    async def delete(self, workflow_id: str, owner_id: str) -> None:
        """Delete a workflow.

        Raises:
            WorkflowNotFoundError: No such workflow for this owner.
        """
        async with self.database.get_session() as session:
            stmt = delete(WorkflowRecord).where(
                WorkflowRecord.workflow_id == workflow_id,
                WorkflowRecord.owner_id == owner_id,
            )
            result = await session.execute(stmt)
            if result.rowcount == 0:
                raise WorkflowNotFoundError(workflow_id)
            await session.commit()

        logger.info("Workflow deleted", workflow_id=workflow_id, owner_id=owner_id)

    # ============================================================================
    # Executions
    # ============================================================================

    async def save_execution(self, result: ExecutionResult) -> None:
        record = ExecutionRecord(
            execution_id=result.execution_id,
            workflow_id=result.workflow_id,
            owner_id=result.owner_id,
            success=result.success,
            status=result.status.value,
            failing_step=result.failing_step,
            error=(result.error or "")[:2000] or None,
            error_kind=result.error_kind,
            output=result.output,
            log=[entry.to_dict() for entry in result.log],
            duration_ms=result.duration_ms,
        )
        async with self.database.get_session() as session:
            session.add(record)
            await session.commit()

    async def get_execution(self, execution_id: str) -> Dict[str, Any]:
        """Get a stored execution as a response dict.

        Raises:
            ExecutionNotFoundError: Unknown execution id.
        """
        async with self.database.get_session() as session:
            stmt = select(ExecutionRecord).where(ExecutionRecord.execution_id == execution_id)
            result = await session.execute(stmt)
            record = result.scalar_one_or_none()

        if record is None:
            raise ExecutionNotFoundError(execution_id)

        return {
            "executionId": record.execution_id,
            "workflowId": record.workflow_id,
            "ownerId": record.owner_id,
            "success": record.success,
            "status": record.status,
            "failingStep": record.failing_step,
            "error": record.error,
            "errorKind": record.error_kind,
            "output": record.output,
            "log": record.log or [],
            "durationMs": record.duration_ms,
            "createdAt": record.created_at.isoformat() if record.created_at else None,
        }


class DocumentStore:
    """Collection/document store backing the db* nodes.

    Documents are JSON objects; each gets an `_id`. Filters are equality
    matches on top-level keys, evaluated on the decoded documents.
    """

    def __init__(self, database: Database):
        self.database = database

    @staticmethod
    def _as_document(row: CollectionDocument) -> Dict[str, Any]:
        return {"_id": row.id, **(row.data or {})}

    @staticmethod
    def _matches(document: Dict[str, Any], filters: Dict[str, Any]) -> bool:
        return all(document.get(key) == value for key, value in filters.items())

    async def _matching_rows(self, session: AsyncSession, collection: str,
                             filters: Dict[str, Any]) -> List[CollectionDocument]:
        stmt = (
            select(CollectionDocument)
            .where(CollectionDocument.collection == collection)
            .order_by(CollectionDocument.created_at, CollectionDocument.id)
        )
        if "_id" in filters:
            stmt = stmt.where(CollectionDocument.id == str(filters["_id"]))
        result = await session.execute(stmt)
        return [row for row in result.scalars().all()
                if self._matches(self._as_document(row), filters)]

    async def find_one(self, collection: str, filters: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        async with self.database.get_session() as session:
            rows = await self._matching_rows(session, collection, filters)
        return self._as_document(rows[0]) if rows else None

    async def find_many(self, collection: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        async with self.database.get_session() as session:
            rows = await self._matching_rows(session, collection, filters)
        return [self._as_document(row) for row in rows]

    async def insert(self, collection: str, data: Dict[str, Any]) -> Dict[str, Any]:
        document_data = {k: v for k, v in data.items() if k != "_id"}
        row = CollectionDocument(id=uuid.uuid4().hex, collection=collection, data=document_data)
        async with self.database.get_session() as session:
            session.add(row)
            await session.commit()
        return self._as_document(row)

    async def update_one(self, collection: str, filters: Dict[str, Any],
                         data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """$set semantics on the first matching document."""
        async with self.database.get_session() as session:
            rows = await self._matching_rows(session, collection, filters)
            if not rows:
                return None
            row = rows[0]
            # Reassign so the JSON column is flagged dirty
            row.data = {**(row.data or {}), **{k: v for k, v in data.items() if k != "_id"}}
            row.updated_at = datetime.now(timezone.utc)
            session.add(row)
            await session.commit()
            return self._as_document(row)

    async def delete(self, collection: str, filters: Dict[str, Any], many: bool = False) -> int:
        async with self.database.get_session() as session:
            rows = await self._matching_rows(session, collection, filters)
            if not many:
                rows = rows[:1]
            for row in rows:
                await session.delete(row)
            await session.commit()
        return len(rows)
