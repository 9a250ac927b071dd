"""Execution engine package.

Sequential workflow interpretation with:
- Kahn's-algorithm step order from services.graph.scheduler
- Registry-based handler dispatch with collaborators bound via partial
- {{path}} template resolution against a plain-data snapshot of the scope
- Structured, append-only execution log handed to a non-blocking sink
"""

from .models import (
    RunStatus,
    LogPhase,
    ExecutionContext,
    ExecutionLogEntry,
    ExecutionResult,
    LogSink,
    NullLogSink,
)
from .registry import (
    ToolHandlerRegistry,
    build_default_registry,
)
from .templates import (
    TEMPLATE_PATTERN,
    resolve_templates,
    lookup_path,
    to_plain,
)
from .interpreter import ExecutionInterpreter

__all__ = [
    # Models
    "RunStatus",
    "LogPhase",
    "ExecutionContext",
    "ExecutionLogEntry",
    "ExecutionResult",
    "LogSink",
    "NullLogSink",
    # Registry
    "ToolHandlerRegistry",
    "build_default_registry",
    # Templates
    "TEMPLATE_PATTERN",
    "resolve_templates",
    "lookup_path",
    "to_plain",
    # Interpreter
    "ExecutionInterpreter",
]
