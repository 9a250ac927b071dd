"""Deterministic linear execution order via Kahn's algorithm."""

from collections import deque
from typing import Dict, List

from constants import INPUT_NODE_TYPES
from core.logging import get_logger
from services.errors import CycleDetectedError
from services.graph.models import Graph, Node

logger = get_logger(__name__)


class TopologicalScheduler:
    """Computes the execution order of a graph.

    Ties are broken by node insertion order: the queue is seeded with
    zero in-degree nodes in node order, and each node releases its successors
    in edge order. Same graph in, same order out.
    """

    def order(self, graph: Graph, skip_input: bool = False) -> List[str]:
        """Return node ids in execution order.

        Args:
            graph: Graph to order. Edges with a missing endpoint are ignored.
            skip_input: Leave `input` nodes out of the returned order.

        Raises:
            CycleDetectedError: When the edges form a cycle.
        """
        node_ids = graph.node_ids()
        in_degree: Dict[str, int] = {node_id: 0 for node_id in node_ids}
        adjacency: Dict[str, List[str]] = {node_id: [] for node_id in node_ids}

        for edge in graph.edges:
            if edge.source not in in_degree or edge.target not in in_degree:
                continue
            adjacency[edge.source].append(edge.target)
            in_degree[edge.target] += 1

        queue = deque(node_id for node_id in node_ids if in_degree[node_id] == 0)
        result: List[str] = []

        while queue:
            current = queue.popleft()
            result.append(current)
            for successor in adjacency[current]:
                in_degree[successor] -= 1
                if in_degree[successor] == 0:
                    queue.append(successor)

        # Duplicate ids collapse in the maps above, compare against unique ids
        unique_ids = list(dict.fromkeys(node_ids))
        if len(result) < len(unique_ids):
            placed = set(result)
            remaining = [node_id for node_id in unique_ids if node_id not in placed]
            logger.warning("Cycle detected while ordering graph",
                           workflow_id=graph.workflow_id, remaining=remaining)
            raise CycleDetectedError(remaining)

        if skip_input:
            types = {n.id: n.type for n in graph.nodes}
            result = [node_id for node_id in result if types[node_id] not in INPUT_NODE_TYPES]

        return result

    def ordered_nodes(self, graph: Graph, skip_input: bool = False) -> List[Node]:
        """Like order(), returning the Node objects."""
        by_id = {}
        for node in graph.nodes:
            by_id.setdefault(node.id, node)
        return [by_id[node_id] for node_id in self.order(graph, skip_input)]
