"""Merge untrusted node/edge deltas into a workflow graph.

Mutation is all-or-nothing: the engine works on a deep copy and either returns
a new graph that passes Graph.validate() or raises GraphValidationError. After
every successful merge the graph holds at most one response node, placed last
in the node list, with an edge from every other sink into it.
"""

import time
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Set, Tuple

from core.logging import get_logger, log_execution_time
from services.errors import GraphValidationError, ProposalError
from services.graph.models import Edge, Graph, Node, Violation, edge_id_for

logger = get_logger(__name__)


# =============================================================================
# DELTA
# =============================================================================

# Key pairs accepted for a delta's node and edge lists, first match wins
_NODE_KEYS = ("nodes", "addedNodes", "newNodes")
_EDGE_KEYS = ("edges", "addedEdges", "newEdges")


@dataclass
class Delta:
    """A proposed partial set of nodes and edges."""
    nodes: List[Node] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Delta":
        """Parse a delta from an untrusted producer.

        Nodes may use the canvas shape {"id", "type", "data": {...}} or the flat
        shape {"id", "type", "label", "fields"}.

        Raises:
            ProposalError: With one violation per malformed node or edge.
        """
        if not isinstance(data, dict):
            raise ProposalError("Proposal must be a JSON object",
                                [Violation("malformed_proposal", "Proposal must be a JSON object")])

        raw_nodes = _first_present(data, _NODE_KEYS)
        raw_edges = _first_present(data, _EDGE_KEYS)
        violations: List[Violation] = []

        if not isinstance(raw_nodes, list):
            violations.append(Violation("malformed_proposal", "'nodes' must be a list"))
            raw_nodes = []
        if not isinstance(raw_edges, list):
            violations.append(Violation("malformed_proposal", "'edges' must be a list"))
            raw_edges = []

        nodes = []
        for index, raw in enumerate(raw_nodes):
            node = _parse_node(raw, index, violations)
            if node is not None:
                nodes.append(node)

        edges = []
        for index, raw in enumerate(raw_edges):
            edge = _parse_edge(raw, index, violations)
            if edge is not None:
                edges.append(edge)

        if violations:
            raise ProposalError(f"Malformed proposal: {violations[0].message}", violations)
        return cls(nodes=nodes, edges=edges)


def _first_present(data: Dict[str, Any], keys: Tuple[str, ...]) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return []


def _parse_node(raw: Any, index: int, violations: List[Violation]) -> Optional[Node]:
    if not isinstance(raw, dict):
        violations.append(Violation("malformed_node", f"Node #{index} is not an object"))
        return None

    node_id = raw.get("id")
    node_type = raw.get("type")
    inner = raw.get("data") if isinstance(raw.get("data"), dict) else raw
    fields = inner.get("fields", {})
    label = inner.get("label")

    problems = []
    if not isinstance(node_id, str) or not node_id:
        problems.append("missing or non-string id")
    if not isinstance(node_type, str) or not node_type:
        problems.append("missing or non-string type")
    if fields is None:
        fields = {}
    if not isinstance(fields, dict):
        problems.append("fields must be an object")
    if label is not None and not isinstance(label, str):
        problems.append("label must be a string")

    if problems:
        for problem in problems:
            violations.append(Violation(
                "malformed_node", f"Node #{index}: {problem}",
                node_id=node_id if isinstance(node_id, str) else None))
        return None

    return Node(id=node_id, type=node_type, label=label or "", fields=dict(fields))


def _parse_edge(raw: Any, index: int, violations: List[Violation]) -> Optional[Edge]:
    if not isinstance(raw, dict):
        violations.append(Violation("malformed_edge", f"Edge #{index} is not an object"))
        return None

    source = raw.get("source")
    target = raw.get("target")
    edge_id = raw.get("id")
    if not isinstance(source, str) or not source or not isinstance(target, str) or not target:
        violations.append(Violation("malformed_edge", f"Edge #{index}: source and target must be strings",
                                    edge_id=edge_id if isinstance(edge_id, str) else None))
        return None
    if edge_id is not None and not isinstance(edge_id, str):
        violations.append(Violation("malformed_edge", f"Edge #{index}: id must be a string"))
        return None

    return Edge(id=edge_id or edge_id_for(source, target), source=source, target=target)


# =============================================================================
# MUTATION ENGINE
# =============================================================================

@dataclass
class MutationResult:
    """Outcome of a successful merge."""
    graph: Graph
    nodes_added: int = 0
    edges_added: int = 0
    dropped_edges: List[Edge] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [n.to_dict() for n in self.graph.nodes],
            "edges": [e.to_dict() for e in self.graph.edges],
            "nodesAdded": self.nodes_added,
            "edgesAdded": self.edges_added,
            "droppedEdges": [e.to_dict() for e in self.dropped_edges],
        }


class MutationEngine:
    """Merges deltas into graphs while keeping the terminal response invariant."""

    def merge(self, graph: Graph, delta: Delta) -> MutationResult:
        """Merge a delta into a copy of graph.

        Raises:
            ProposalError: A delta node reuses an existing id with a different type.
            GraphValidationError: The merged graph violates an invariant
                (cycle, duplicate id, bad field contract). The input graph is
                left untouched either way.
        """
        start_time = time.time()
        work = graph.copy()
        dropped: List[Edge] = []

        for node in work.nodes:
            node.is_new = False

        original_keys = {e.key for e in graph.edges}
        had_response = any(n.is_response for n in work.nodes)

        # Stored graphs should never carry dangling edges, drop them if they do
        work.edges = self._drop_dangling(work, work.edges, dropped, "stored")

        # Response nodes in application order: stored ones first, then the delta's
        response_order = [n.id for n in work.nodes if n.is_response]

        self._merge_nodes(work, delta.nodes, response_order, had_response)
        self._merge_edges(work, delta.edges, dropped)
        self._normalize_response(work, response_order, dropped)

        result = work.validate()
        if not result.is_valid:
            logger.warning("Mutation rejected",
                           workflow_id=graph.workflow_id,
                           violations=[v.to_dict() for v in result.violations])
            raise GraphValidationError(
                f"Mutation rejected: {result.violations[0].message}", result.violations)

        mutation = MutationResult(
            graph=work,
            nodes_added=sum(1 for n in work.nodes if n.is_new),
            edges_added=sum(1 for e in work.edges if e.key not in original_keys),
            dropped_edges=dropped,
        )
        log_execution_time(logger, "graph_mutation", start_time, time.time(),
                           workflow_id=graph.workflow_id,
                           nodes_added=mutation.nodes_added,
                           edges_added=mutation.edges_added,
                           dropped_edges=len(dropped))
        return mutation

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def _merge_nodes(self, work: Graph, delta_nodes: List[Node],
                     response_order: List[str], had_response: bool) -> None:
        """Append new nodes, shallow-merge fields onto id collisions."""
        for proposed in delta_nodes:
            existing = work.get_node(proposed.id)

            if existing is not None:
                if existing.type != proposed.type:
                    raise ProposalError(
                        f"Node {proposed.id} already exists with type {existing.type}, "
                        f"delta proposes {proposed.type}",
                        [Violation("type_mismatch",
                                   f"Node {proposed.id} cannot change type "
                                   f"from {existing.type} to {proposed.type}",
                                   node_id=proposed.id)])
                existing.fields.update(proposed.fields)
                if proposed.label:
                    existing.label = proposed.label
                target = existing
            else:
                target = Node(id=proposed.id, type=proposed.type, label=proposed.label,
                              fields=dict(proposed.fields))
                # A response replacing a stored one is not a new node
                target.is_new = not (target.is_response and had_response)
                work.nodes.append(target)

            if target.is_response:
                if target.id in response_order:
                    response_order.remove(target.id)
                response_order.append(target.id)

    def _merge_edges(self, work: Graph, delta_edges: List[Edge], dropped: List[Edge]) -> None:
        """Append edges with a new (source, target) pair; drop ones with unknown endpoints."""
        known = set(work.node_ids())
        keys = {e.key for e in work.edges}
        used_ids = {e.id for e in work.edges}

        for proposed in delta_edges:
            if proposed.source not in known or proposed.target not in known:
                logger.warning("Dropping delta edge with unknown endpoint",
                               workflow_id=work.workflow_id, edge=proposed.to_dict())
                dropped.append(proposed)
                continue
            if proposed.key in keys:
                continue

            edge_id = proposed.id
            if edge_id in used_ids:
                edge_id = self._unique_edge_id(proposed.source, proposed.target, used_ids)
            work.edges.append(Edge(id=edge_id, source=proposed.source, target=proposed.target))
            keys.add(proposed.key)
            used_ids.add(edge_id)

    def _normalize_response(self, work: Graph, response_order: List[str],
                            dropped: List[Edge]) -> None:
        """Collapse response nodes into one, move it last and fan in every sink."""
        if not response_order:
            return

        survivor_id = response_order[-1]
        responses = {n.id: n for n in work.nodes if n.is_response}

        merged_fields: Dict[str, Any] = {}
        for response_id in response_order:
            merged_fields.update(responses[response_id].fields)
        survivor = responses[survivor_id]
        survivor.fields = merged_fields

        removed: Set[str] = set(responses) - {survivor_id}
        if removed:
            logger.info("Pruning duplicate response nodes",
                        workflow_id=work.workflow_id, kept=survivor_id, removed=sorted(removed))

        # Rewire: into-removed -> into-survivor, out-of-response -> dropped
        edges: List[Edge] = []
        keys: Set[Tuple[str, str]] = set()
        used_ids: Set[str] = set()
        for edge in work.edges:
            if edge.source in responses:
                logger.warning("Dropping edge out of response node",
                               workflow_id=work.workflow_id, edge=edge.to_dict())
                dropped.append(edge)
                continue
            target = survivor_id if edge.target in removed else edge.target
            if (edge.source, target) in keys:
                continue
            edge_id = edge.id if target == edge.target else edge_id_for(edge.source, target)
            if edge_id in used_ids:
                edge_id = self._unique_edge_id(edge.source, target, used_ids)
            edges.append(Edge(id=edge_id, source=edge.source, target=target))
            keys.add((edge.source, target))
            used_ids.add(edge_id)

        work.nodes = [n for n in work.nodes if not n.is_response] + [survivor]
        work.edges = edges

        for sink in work.terminal_candidates():
            if sink.id == survivor_id:
                continue
            edge_id = self._unique_edge_id(sink.id, survivor_id, used_ids)
            work.edges.append(Edge(id=edge_id, source=sink.id, target=survivor_id))
            used_ids.add(edge_id)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _drop_dangling(graph: Graph, edges: List[Edge], dropped: List[Edge],
                       origin: str) -> List[Edge]:
        known = set(graph.node_ids())
        kept = []
        for edge in edges:
            if edge.source in known and edge.target in known:
                kept.append(edge)
            else:
                logger.warning("Dropping dangling edge", origin=origin,
                               workflow_id=graph.workflow_id, edge=edge.to_dict())
                dropped.append(edge)
        return kept

    @staticmethod
    def _unique_edge_id(source: str, target: str, used_ids: Set[str]) -> str:
        base = edge_id_for(source, target)
        candidate = base
        suffix = 1
        while candidate in used_ids:
            suffix += 1
            candidate = f"{base}-{suffix}"
        return candidate
