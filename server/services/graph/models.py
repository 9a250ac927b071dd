"""Workflow graph models.

A graph is an ordered list of typed nodes plus directed edges. Node order is the
insertion order and only acts as the tie-break for scheduling; execution order
comes from the edges.

All models convert to and from the canvas wire format:
    node: {"id", "type", "data": {"label", "fields", "isNew"}}
    edge: {"id", "source", "target"}
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

from pydantic import ValidationError

from constants import ALL_NODE_TYPES, is_response_type
from models.nodes import validate_node_fields
from services.errors import CycleDetectedError


# =============================================================================
# NODES AND EDGES
# =============================================================================

@dataclass
class Node:
    """One typed step of a workflow."""
    id: str
    type: str
    label: str = ""
    fields: Dict[str, Any] = field(default_factory=dict)
    is_new: bool = False

    @property
    def is_response(self) -> bool:
        return is_response_type(self.type)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to canvas wire format."""
        return {
            "id": self.id,
            "type": self.type,
            "data": {
                "label": self.label,
                "fields": self.fields,
                "isNew": self.is_new,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Node":
        """Create from the canvas format or a flat {id, type, label, fields} dict."""
        inner = data.get("data") if isinstance(data.get("data"), dict) else data
        return cls(
            id=data["id"],
            type=data["type"],
            label=inner.get("label") or "",
            fields=dict(inner.get("fields") or {}),
            is_new=bool(inner.get("isNew", inner.get("is_new", False))),
        )


@dataclass
class Edge:
    """Directed dependency between two nodes."""
    id: str
    source: str
    target: str

    @property
    def key(self) -> tuple:
        return (self.source, self.target)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "source": self.source, "target": self.target}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Edge":
        source = data["source"]
        target = data["target"]
        return cls(id=data.get("id") or edge_id_for(source, target),
                   source=source, target=target)


def edge_id_for(source: str, target: str) -> str:
    """Deterministic edge id used when a producer does not supply one."""
    return f"e-{source}-{target}"


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class Violation:
    """A single structural or field-contract problem in a graph."""
    code: str
    message: str
    node_id: Optional[str] = None
    edge_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"code": self.code, "message": self.message}
        if self.node_id is not None:
            result["nodeId"] = self.node_id
        if self.edge_id is not None:
            result["edgeId"] = self.edge_id
        return result


@dataclass
class ValidationResult:
    violations: List[Violation] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.violations

    def add(self, code: str, message: str, node_id: Optional[str] = None,
            edge_id: Optional[str] = None) -> None:
        self.violations.append(Violation(code, message, node_id, edge_id))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.is_valid,
            "violations": [v.to_dict() for v in self.violations],
        }


# =============================================================================
# GRAPH
# =============================================================================

@dataclass
class Graph:
    """A persisted workflow: nodes, edges and ownership metadata."""
    workflow_id: str
    owner_id: str
    nodes: List[Node] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    version: int = 0

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_node(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def node_ids(self) -> List[str]:
        return [n.id for n in self.nodes]

    def find_nodes_by_type(self, node_type: str) -> List[Node]:
        return [n for n in self.nodes if n.type == node_type]

    def response_node(self) -> Optional[Node]:
        """The terminal response node, if any (the last one when several exist)."""
        responses = [n for n in self.nodes if n.is_response]
        return responses[-1] if responses else None

    def terminal_candidates(self) -> List[Node]:
        """Nodes with no outgoing edge to an existing node, in node order."""
        ids = set(self.node_ids())
        sources = {e.source for e in self.edges if e.target in ids}
        return [n for n in self.nodes if n.id not in sources]

    def copy(self) -> "Graph":
        return copy.deepcopy(self)

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(self) -> ValidationResult:
        """Check structural invariants and node field contracts.

        Pure: reports every violation found, never modifies the graph.
        """
        # Imported here, the scheduler module depends on this one
        from services.graph.scheduler import TopologicalScheduler

        result = ValidationResult()

        seen = set()
        for node in self.nodes:
            if node.id in seen:
                result.add("duplicate_node_id", f"Duplicate node id: {node.id}", node_id=node.id)
            seen.add(node.id)

        for edge in self.edges:
            if edge.source not in seen or edge.target not in seen:
                result.add("dangling_edge",
                           f"Edge {edge.id} references unknown node "
                           f"({edge.source} -> {edge.target})",
                           edge_id=edge.id)

        responses = [n for n in self.nodes if n.is_response]
        if len(responses) > 1:
            result.add("multiple_response_nodes",
                       f"Graph has {len(responses)} response nodes, at most one is allowed")
        for response in responses:
            outgoing = [e for e in self.edges if e.source == response.id]
            for edge in outgoing:
                result.add("response_not_terminal",
                           f"Response node {response.id} has an outgoing edge to {edge.target}",
                           node_id=response.id, edge_id=edge.id)

        try:
            TopologicalScheduler().order(self)
        except CycleDetectedError as e:
            result.add("cycle", str(e))

        for node in self.nodes:
            if node.type not in ALL_NODE_TYPES:
                continue
            try:
                validate_node_fields(node.type, node.fields)
            except ValidationError as e:
                for err in e.errors():
                    location = ".".join(str(part) for part in err["loc"][1:]) or "fields"
                    result.add("invalid_fields",
                               f"{node.type} node {node.id}: {location}: {err['msg']}",
                               node_id=node.id)

        return result

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflowId": self.workflow_id,
            "ownerId": self.owner_id,
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Graph":
        created = data.get("createdAt")
        updated = data.get("updatedAt")
        return cls(
            workflow_id=data.get("workflowId", ""),
            owner_id=data.get("ownerId", ""),
            nodes=[Node.from_dict(n) for n in data.get("nodes", [])],
            edges=[Edge.from_dict(e) for e in data.get("edges", [])],
            created_at=datetime.fromisoformat(created) if created else datetime.now(timezone.utc),
            updated_at=datetime.fromisoformat(updated) if updated else datetime.now(timezone.utc),
            version=data.get("version", 0),
        )
