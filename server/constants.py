"""Centralized constants for node types and categories.

This module provides a single source of truth for all node type definitions,
eliminating duplicate string arrays across the codebase.
"""

from enum import Enum
from typing import FrozenSet


class NodeType(str, Enum):
    """Node types understood by the interpreter.

    Graphs may still carry other type strings (new tools are added over time);
    those fail at execution time when no handler is registered for them.
    """
    INPUT = "input"
    INPUT_VALIDATION = "inputValidation"
    DB_FIND = "dbFind"
    DB_INSERT = "dbInsert"
    DB_UPDATE = "dbUpdate"
    DB_DELETE = "dbDelete"
    AUTH_MIDDLEWARE = "authMiddleware"
    JWT_GENERATE = "jwtGenerate"
    EMAIL_SEND = "emailSend"
    DELAY = "delay"
    RESPONSE = "response"


# =============================================================================
# NODE TYPE GROUPS
# =============================================================================

INPUT_NODE_TYPES: FrozenSet[str] = frozenset([
    NodeType.INPUT.value,
])

DATABASE_NODE_TYPES: FrozenSet[str] = frozenset([
    NodeType.DB_FIND.value,
    NodeType.DB_INSERT.value,
    NodeType.DB_UPDATE.value,
    NodeType.DB_DELETE.value,
])

AUTH_NODE_TYPES: FrozenSet[str] = frozenset([
    NodeType.AUTH_MIDDLEWARE.value,
    NodeType.JWT_GENERATE.value,
])

# Terminal node: at most one per graph, always last
RESPONSE_NODE_TYPE: str = NodeType.RESPONSE.value

# Side-effecting nodes get a required-field presence check before dispatch
FIELD_CHECKED_NODE_TYPES: FrozenSet[str] = frozenset([
    NodeType.EMAIL_SEND.value,
    NodeType.DB_INSERT.value,
    NodeType.DB_UPDATE.value,
])

# Fields hold variable names / paths, handlers look them up themselves
RAW_FIELD_NODE_TYPES: FrozenSet[str] = frozenset([
    NodeType.INPUT.value,
    NodeType.INPUT_VALIDATION.value,
])

ALL_NODE_TYPES: FrozenSet[str] = frozenset(t.value for t in NodeType)

# =============================================================================
# DEFAULT OUTPUT VARIABLES
# =============================================================================

# Variable a node writes its output to when `fields.output` is not set
DEFAULT_OUTPUT_VARS = {
    NodeType.INPUT_VALIDATION.value: "validated",
    NodeType.DB_FIND.value: "found",
    NodeType.DB_INSERT.value: "created",
    NodeType.DB_UPDATE.value: "updated",
    NodeType.DB_DELETE.value: "deleted",
    NodeType.AUTH_MIDDLEWARE.value: "currentUser",
    NodeType.JWT_GENERATE.value: "token",
}

# Keys in the execution scope reserved by the interpreter
RESERVED_VAR_KEYS: FrozenSet[str] = frozenset([
    'input',
    '_response',
])


def is_response_type(node_type: str) -> bool:
    """Check whether a node type is the terminal response type."""
    return node_type == RESPONSE_NODE_TYPE
