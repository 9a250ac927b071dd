"""Execution state models.

One ExecutionContext per invocation; it is created fresh, mutated only by the
interpreter and its handlers, and discarded after the run. What survives the
run is the ExecutionResult with its log.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, Optional, Protocol


class RunStatus(str, Enum):
    """Execution run states.

    State transitions:
        PENDING -> RUNNING -> SUCCEEDED
                           -> FAILED
    """
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class LogPhase(str, Enum):
    """Phase of an execution log entry."""
    START = "start"
    DATA = "data"
    SUCCESS = "success"
    ERROR = "error"
    END = "end"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ExecutionContext:
    """Shared variable scope and position of one run."""
    execution_id: str
    workflow_id: str
    owner_id: str
    vars: Dict[str, Any] = field(default_factory=dict)
    step_index: int = 0
    headers: Dict[str, str] = field(default_factory=dict)
    cancel_event: Optional[asyncio.Event] = None

    @classmethod
    def create(cls, workflow_id: str, owner_id: str, input_data: Optional[Dict[str, Any]] = None,
               headers: Optional[Dict[str, str]] = None,
               execution_id: Optional[str] = None,
               cancel_event: Optional[asyncio.Event] = None) -> "ExecutionContext":
        """Create a fresh context seeded with the invocation input."""
        return cls(
            execution_id=execution_id or str(uuid.uuid4()),
            workflow_id=workflow_id,
            owner_id=owner_id,
            vars={"input": dict(input_data or {})},
            headers={k.lower(): v for k, v in (headers or {}).items()},
            cancel_event=cancel_event,
        )

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())


@dataclass
class ExecutionLogEntry:
    """Append-only record of what happened during a run."""
    execution_id: str
    step_index: int
    node_type: str
    phase: LogPhase
    message: str
    payload: Optional[Any] = None
    timestamp_ms: int = field(default_factory=now_ms)
    node_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        result = {
            "executionId": self.execution_id,
            "stepIndex": self.step_index,
            "nodeType": self.node_type,
            "phase": self.phase.value,
            "message": self.message,
            "timestampMs": self.timestamp_ms,
        }
        if self.node_id is not None:
            result["nodeId"] = self.node_id
        if self.payload is not None:
            result["payload"] = self.payload
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionLogEntry":
        return cls(
            execution_id=data["executionId"],
            step_index=data["stepIndex"],
            node_type=data["nodeType"],
            phase=LogPhase(data["phase"]),
            message=data.get("message", ""),
            payload=data.get("payload"),
            timestamp_ms=data.get("timestampMs", 0),
            node_id=data.get("nodeId"),
        )


@dataclass
class ExecutionResult:
    """Structured outcome of a run. Failures are data here, never exceptions."""
    success: bool
    execution_id: str
    workflow_id: str
    owner_id: str
    status: RunStatus
    output: Optional[Any] = None
    log: List[ExecutionLogEntry] = field(default_factory=list)
    steps: List[Dict[str, Any]] = field(default_factory=list)
    failing_step: Optional[int] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "success": self.success,
            "executionId": self.execution_id,
            "workflowId": self.workflow_id,
            "status": self.status.value,
            "output": self.output,
            "log": [entry.to_dict() for entry in self.log],
            "steps": self.steps,
            "durationMs": self.duration_ms,
        }
        if not self.success:
            result["failingStep"] = self.failing_step
            result["error"] = self.error
            result["errorKind"] = self.error_kind
            if self.error_details:
                result["details"] = self.error_details
        return result


# =============================================================================
# LOG SINK
# =============================================================================

class LogSink(Protocol):
    """Best-effort consumer of execution log entries (enables duck typing).

    append() must return without waiting on I/O.
    """

    def append(self, entry: ExecutionLogEntry) -> None:
        ...


class NullLogSink:
    """No-op sink when nothing observes executions.

    This follows the Null Object pattern - all operations succeed silently.
    """

    def append(self, entry: ExecutionLogEntry) -> None:
        pass
