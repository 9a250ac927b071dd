"""Workflow graph package.

- models.py: Node, Edge, Graph and structural validation
- scheduler.py: Kahn's algorithm execution order with cycle detection
- mutation.py: merges untrusted deltas into a graph, keeping one terminal response node
"""

from .models import (
    Node,
    Edge,
    Graph,
    Violation,
    ValidationResult,
    edge_id_for,
)
from .scheduler import TopologicalScheduler
from .mutation import (
    Delta,
    MutationEngine,
    MutationResult,
)

__all__ = [
    # Models
    "Node",
    "Edge",
    "Graph",
    "Violation",
    "ValidationResult",
    "edge_id_for",
    # Scheduler
    "TopologicalScheduler",
    # Mutation
    "Delta",
    "MutationEngine",
    "MutationResult",
]
