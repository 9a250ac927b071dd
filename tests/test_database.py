"""Tests for the SQLModel-backed repository and document store."""

import pytest

from conftest import signup_graph

from core.database import Database, DocumentStore, WorkflowRepository
from services.errors import (
    ConcurrentModificationError,
    ExecutionNotFoundError,
    WorkflowNotFoundError,
)
from services.execution import ExecutionInterpreter, ToolHandlerRegistry


@pytest.fixture
async def database(settings):
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


@pytest.fixture
def repository(database):
    return WorkflowRepository(database)


@pytest.fixture
def documents(database):
    return DocumentStore(database)


class TestWorkflowRepository:

    async def test_create_and_load(self, repository):
        created = await repository.create(signup_graph())
        assert created.version == 1

        loaded = await repository.load("wf-1", "owner-1")
        assert [n.to_dict() for n in loaded.nodes] == [n.to_dict() for n in signup_graph().nodes]
        assert [e.key for e in loaded.edges] == [e.key for e in signup_graph().edges]
        assert loaded.version == 1

    async def test_load_is_scoped_to_owner(self, repository):
        await repository.create(signup_graph())
        with pytest.raises(WorkflowNotFoundError):
            await repository.load("wf-1", "someone-else")

    async def test_save_bumps_version(self, repository):
        await repository.create(signup_graph())
        graph = await repository.load("wf-1", "owner-1")
        graph.get_node("respond").fields["status"] = 200

        saved = await repository.save(graph, expected_version=1)
        assert saved.version == 2
        reloaded = await repository.load("wf-1", "owner-1")
        assert reloaded.version == 2
        assert reloaded.get_node("respond").fields["status"] == 200

    async def test_stale_save_is_a_conflict(self, repository):
        await repository.create(signup_graph())
        first = await repository.load("wf-1", "owner-1")
        second = await repository.load("wf-1", "owner-1")

        await repository.save(first, expected_version=first.version)
        with pytest.raises(ConcurrentModificationError) as exc_info:
            await repository.save(second, expected_version=second.version)
        assert exc_info.value.expected == 1
        assert exc_info.value.actual == 2
        assert exc_info.value.kind == "conflict"

    async def test_save_missing_workflow(self, repository):
        with pytest.raises(WorkflowNotFoundError):
            await repository.save(signup_graph(), expected_version=1)

    async def test_list_and_delete(self, repository):
        await repository.create(signup_graph(workflow_id="wf-1"))
        await repository.create(signup_graph(workflow_id="wf-2"))
        await repository.create(signup_graph(workflow_id="wf-3", owner_id="other"))

        assert [g.workflow_id for g in await repository.list("owner-1")] == ["wf-1", "wf-2"]

        await repository.delete("wf-1", "owner-1")
        assert [g.workflow_id for g in await repository.list("owner-1")] == ["wf-2"]
        with pytest.raises(WorkflowNotFoundError):
            await repository.delete("wf-1", "owner-1")

    async def test_execution_records(self, repository):
        # Empty registry: the run fails on its first step
        result = await ExecutionInterpreter(ToolHandlerRegistry()).run(signup_graph())
        await repository.save_execution(result)

        record = await repository.get_execution(result.execution_id)
        assert record["success"] is False
        assert record["status"] == "failed"
        assert record["failingStep"] == 0
        assert record["errorKind"] == "configuration"
        assert record["log"] == [entry.to_dict() for entry in result.log]

        with pytest.raises(ExecutionNotFoundError):
            await repository.get_execution("missing")


class TestDocumentStore:

    async def test_insert_assigns_id(self, documents):
        created = await documents.insert("users", {"email": "a@b.co", "_id": "ignored"})
        assert created["_id"] != "ignored"
        assert await documents.find_one("users", {"_id": created["_id"]}) == created

    async def test_equality_filters(self, documents):
        await documents.insert("users", {"role": "admin", "name": "a"})
        await documents.insert("users", {"role": "guest", "name": "b"})
        await documents.insert("posts", {"role": "admin"})

        admins = await documents.find_many("users", {"role": "admin"})
        assert [d["name"] for d in admins] == ["a"]
        assert await documents.find_one("users", {"role": "owner"}) is None
        assert len(await documents.find_many("users", {})) == 2

    async def test_update_one_sets_fields(self, documents):
        created = await documents.insert("users", {"email": "a@b.co", "name": "old"})
        updated = await documents.update_one("users", {"email": "a@b.co"}, {"name": "new"})
        assert updated == {"_id": created["_id"], "email": "a@b.co", "name": "new"}
        assert (await documents.find_one("users", {"email": "a@b.co"}))["name"] == "new"
        assert await documents.update_one("users", {"email": "x@y.co"}, {"name": "z"}) is None

    async def test_delete(self, documents):
        for name in ("a", "b", "c"):
            await documents.insert("users", {"role": "guest", "name": name})

        assert await documents.delete("users", {"role": "guest"}) == 1
        assert await documents.delete("users", {"role": "guest"}, many=True) == 2
        assert await documents.find_many("users", {}) == []
