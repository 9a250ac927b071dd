"""Shared fixtures: in-memory collaborators, graph builders and an API client."""

import os

# Settings are read when main is imported, so the environment comes first
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["JWT_SECRET_KEY"] = "test-secret"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["LOG_FORMAT"] = "console"
os.environ.pop("LLM_API_KEY", None)
os.environ.pop("SMTP_HOST", None)

import uuid
from typing import Any, Dict, List, Optional, Tuple

import pytest

from core.config import Settings
from services.execution import ExecutionInterpreter, build_default_registry
from services.graph import Delta, Edge, Graph, Node, edge_id_for
from services.tokens import TokenSigner


# =============================================================================
# Fake collaborators
# =============================================================================

class FakeDocumentStore:
    """Dict-backed stand-in for DocumentStore with the same equality matching."""

    def __init__(self):
        self.collections: Dict[str, List[Dict[str, Any]]] = {}

    def _matching(self, collection: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [doc for doc in self.collections.get(collection, [])
                if all(doc.get(k) == v for k, v in filters.items())]

    async def find_one(self, collection, filters):
        matches = self._matching(collection, filters)
        return dict(matches[0]) if matches else None

    async def find_many(self, collection, filters):
        return [dict(doc) for doc in self._matching(collection, filters)]

    async def insert(self, collection, data):
        document = {"_id": uuid.uuid4().hex, **data}
        self.collections.setdefault(collection, []).append(document)
        return dict(document)

    async def update_one(self, collection, filters, data):
        matches = self._matching(collection, filters)
        if not matches:
            return None
        matches[0].update(data)
        return dict(matches[0])

    async def delete(self, collection, filters, many=False):
        matches = self._matching(collection, filters)
        if not many:
            matches = matches[:1]
        remaining = self.collections.get(collection, [])
        self.collections[collection] = [d for d in remaining if d not in matches]
        return len(matches)


class FailingDocumentStore(FakeDocumentStore):
    """Every write fails, as if the database were down."""

    async def insert(self, collection, data):
        raise RuntimeError("database unavailable")


class FakeMailer:
    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    @property
    def configured(self) -> bool:
        return True

    async def send(self, to, subject, body, sender=None):
        self.sent.append({"to": to, "subject": subject, "body": body, "from": sender})
        return {"sent": True, "to": to, "subject": subject}


class RecordingSink:
    def __init__(self):
        self.entries = []

    def append(self, entry):
        self.entries.append(entry)


class FakeProposalSource:
    """Returns queued deltas (or raises queued errors) in order."""

    def __init__(self):
        self.queue: List[Any] = []
        self.calls: List[Tuple[str, Optional[Graph]]] = []

    def push(self, item: Any) -> None:
        self.queue.append(item)

    async def propose_delta(self, prompt, graph=None):
        self.calls.append((prompt, graph))
        item = self.queue.pop(0)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, dict):
            return Delta.from_dict(item)
        return item


# =============================================================================
# Graph builders
# =============================================================================

def node(node_id: str, node_type: str, **fields) -> Node:
    return Node(id=node_id, type=node_type, label=node_id, fields=fields)


def chain_edges(*node_ids: str) -> List[Edge]:
    """Edges connecting node_ids in sequence."""
    return [Edge(id=edge_id_for(s, t), source=s, target=t)
            for s, t in zip(node_ids, node_ids[1:])]


def build_graph(nodes: List[Node], edges: Optional[List[Edge]] = None,
                workflow_id: str = "wf-1", owner_id: str = "owner-1") -> Graph:
    return Graph(workflow_id=workflow_id, owner_id=owner_id, nodes=list(nodes),
                 edges=list(edges if edges is not None else chain_edges(*[n.id for n in nodes])))


# Fields that satisfy each type's contract
SIGNUP_NODES = [
    ("input", "input", {"variables": [{"name": "email"}, {"name": "name"}, {"name": "password"}]}),
    ("insert", "dbInsert", {"collection": "users",
                            "data": {"email": "{{email}}", "name": "{{name}}",
                                     "password": "{{password}}"}}),
    ("respond", "response", {"status": 201, "body": {"user": "{{created}}"}}),
]


def signup_graph(**kwargs) -> Graph:
    return build_graph([node(i, t, **f) for i, t, f in SIGNUP_NODES], **kwargs)


def delta_payload(nodes: List[Tuple[str, str, Dict[str, Any]]],
                  edges: List[Tuple[str, str]]) -> Dict[str, Any]:
    """Canvas-shaped delta as a proposal source would send it."""
    return {
        "nodes": [{"id": i, "type": t, "data": {"label": i, "fields": f}} for i, t, f in nodes],
        "edges": [{"id": edge_id_for(s, t), "source": s, "target": t} for s, t in edges],
    }


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def settings() -> Settings:
    return Settings(database_url="sqlite+aiosqlite:///:memory:", jwt_secret_key="test-secret",
                    execution_max_delay_seconds=5.0)


@pytest.fixture
def store() -> FakeDocumentStore:
    return FakeDocumentStore()


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def signer() -> TokenSigner:
    return TokenSigner("test-secret")


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def registry(store, mailer, signer, settings):
    return build_default_registry(store=store, mailer=mailer, signer=signer, settings=settings)


@pytest.fixture
def interpreter(registry, sink) -> ExecutionInterpreter:
    return ExecutionInterpreter(registry, log_sink=sink)


@pytest.fixture
def proposals() -> FakeProposalSource:
    return FakeProposalSource()


@pytest.fixture
def client(proposals):
    """TestClient over the real app, in-memory SQLite and a fake proposal source."""
    from fastapi.testclient import TestClient

    from core.container import container
    from main import app

    container.reset_singletons()
    with container.proposal_source.override(proposals):
        with TestClient(app) as test_client:
            yield test_client
    container.reset_singletons()
