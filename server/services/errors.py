"""Workflow engine exception hierarchy.

Every error carries a `kind` used by the HTTP layer and by execution results:
validation, configuration, handler, not_found, conflict.
"""

from typing import Any, Dict, List, Optional


class WorkflowError(Exception):
    """Base exception for all workflow engine errors."""
    kind = "internal"


class GraphValidationError(WorkflowError):
    """Graph violates a structural invariant; a mutation is rejected as a whole."""
    kind = "validation"

    def __init__(self, message: str, violations: Optional[List[Any]] = None):
        self.violations = list(violations or [])
        super().__init__(message)

    def violation_dicts(self) -> List[Dict[str, Any]]:
        return [v.to_dict() if hasattr(v, "to_dict") else {"message": str(v)}
                for v in self.violations]


class ProposalError(GraphValidationError):
    """Malformed delta (missing ids, wrong value types) from an untrusted producer."""


class CycleDetectedError(GraphValidationError):
    """Edges form a cycle, so no linear execution order exists."""

    def __init__(self, remaining: List[str]):
        self.remaining = list(remaining)
        super().__init__(f"Cycle detected among nodes: {', '.join(self.remaining)}")


class ConfigurationError(WorkflowError):
    """A node is misconfigured; fatal to the single execution."""
    kind = "configuration"


class UnknownNodeTypeError(ConfigurationError):
    """No handler is registered for a node type."""

    def __init__(self, node_type: str):
        self.node_type = node_type
        super().__init__(f"Unknown node type: {node_type}")


class HandlerError(WorkflowError):
    """An external collaborator (store, mailer, token signer) failed."""
    kind = "handler"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.details = details
        super().__init__(message)


class WorkflowNotFoundError(WorkflowError):
    """Workflow does not exist for the given owner."""
    kind = "not_found"

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class ExecutionNotFoundError(WorkflowError):
    """Execution record does not exist."""
    kind = "not_found"

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}")


class ConcurrentModificationError(WorkflowError):
    """Stored workflow version moved while a mutation was in flight."""
    kind = "conflict"

    def __init__(self, workflow_id: str, expected: int, actual: int):
        self.workflow_id = workflow_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Workflow {workflow_id} was modified concurrently "
            f"(expected version {expected}, found {actual})"
        )


class ExecutionConflictError(WorkflowError):
    """An execution with the requested id is already running."""
    kind = "conflict"

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution already running: {execution_id}")
