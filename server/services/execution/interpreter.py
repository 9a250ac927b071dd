"""Execution interpreter - walks a workflow's topological order one step at a time.

State machine per run:
    PENDING -> RUNNING(step_index) -> SUCCEEDED
                                   -> FAILED(step_index, error)

Step errors never escape run(); they are returned as a failed ExecutionResult
with the partial log, the failing step index and the error kind.
"""

import asyncio
import time
from functools import partial
from typing import Dict, Any, List, Optional, Set

from constants import (
    DEFAULT_OUTPUT_VARS,
    FIELD_CHECKED_NODE_TYPES,
    INPUT_NODE_TYPES,
    RAW_FIELD_NODE_TYPES,
    RESERVED_VAR_KEYS,
)
from core.logging import execution_log_context, get_logger, log_execution_time
from models.nodes import required_fields
from services.errors import ConfigurationError, CycleDetectedError, WorkflowError
from services.execution.models import (
    ExecutionContext,
    ExecutionLogEntry,
    ExecutionResult,
    LogPhase,
    LogSink,
    NullLogSink,
    RunStatus,
)
from services.execution.registry import ToolHandlerRegistry
from services.execution.templates import resolve_templates, to_plain
from services.graph.models import Graph, Node
from services.graph.scheduler import TopologicalScheduler

logger = get_logger(__name__)

RESPONSE_VAR = "_response"


class _RunState:
    """Per-run bookkeeping: the context, the log and the step results."""

    def __init__(self, context: ExecutionContext, graph: Graph, sink: LogSink):
        self.context = context
        self.graph = graph
        self.sink = sink
        self.log: List[ExecutionLogEntry] = []
        self.steps: List[Dict[str, Any]] = []
        self.status = RunStatus.PENDING
        self.started_at = time.time()

    def emit(self, step_index: int, node_type: str, phase: LogPhase, message: str,
             payload: Optional[Any] = None, node_id: Optional[str] = None) -> None:
        entry = ExecutionLogEntry(
            execution_id=self.context.execution_id,
            step_index=step_index,
            node_type=node_type,
            phase=phase,
            message=message,
            payload=payload,
            node_id=node_id,
        )
        self.log.append(entry)
        # A failing sink must never fail the step
        try:
            self.sink.append(entry)
        except Exception as e:
            logger.warning("Log sink rejected entry", execution_id=self.context.execution_id,
                           phase=phase.value, error=str(e))

    def duration_ms(self) -> int:
        return int((time.time() - self.started_at) * 1000)

    def result(self, **kwargs) -> ExecutionResult:
        return ExecutionResult(
            execution_id=self.context.execution_id,
            workflow_id=self.context.workflow_id,
            owner_id=self.context.owner_id,
            status=self.status,
            log=self.log,
            steps=self.steps,
            duration_ms=self.duration_ms(),
            **kwargs,
        )


class ExecutionInterpreter:
    """Runs a workflow graph against one invocation's input.

    Runs are independent: all per-run state lives in the ExecutionContext, so
    many runs may execute concurrently against the same graph.
    """

    def __init__(self, registry: ToolHandlerRegistry, log_sink: Optional[LogSink] = None,
                 skip_input: bool = False, scheduler: Optional[TopologicalScheduler] = None):
        self.registry = registry
        self.log_sink = log_sink or NullLogSink()
        self.skip_input = skip_input
        self.scheduler = scheduler or TopologicalScheduler()
        # Handler tasks still running after their run was cancelled
        self._detached: Set[asyncio.Future] = set()

    @property
    def detached_steps(self) -> int:
        return len(self._detached)

    async def run(self, graph: Graph, input_data: Optional[Dict[str, Any]] = None,
                  headers: Optional[Dict[str, str]] = None,
                  execution_id: Optional[str] = None,
                  cancel_event: Optional[asyncio.Event] = None) -> ExecutionResult:
        """Execute the graph.

        Args:
            graph: Workflow to run (read only)
            input_data: Invocation input, available as vars["input"]
            headers: Invocation headers (authMiddleware reads Authorization)
            execution_id: Id to use, generated when omitted
            cancel_event: When set, no further steps are dispatched

        Returns:
            ExecutionResult; failures are reported in it, not raised
        """
        context = ExecutionContext.create(
            workflow_id=graph.workflow_id,
            owner_id=graph.owner_id,
            input_data=input_data,
            headers=headers,
            execution_id=execution_id,
            cancel_event=cancel_event or asyncio.Event(),
        )
        state = _RunState(context, graph, self.log_sink)

        try:
            nodes = self.scheduler.ordered_nodes(graph, skip_input=self.skip_input)
        except CycleDetectedError as e:
            state.status = RunStatus.FAILED
            state.emit(0, "workflow", LogPhase.ERROR, str(e),
                       payload={"remaining": e.remaining})
            return state.result(success=False, error=str(e), error_kind=e.kind)

        state.status = RunStatus.RUNNING
        logger.info("Execution started", execution_id=context.execution_id,
                    workflow_id=graph.workflow_id, steps=len(nodes))

        with execution_log_context(context.execution_id, graph.workflow_id):
            result = await self._run_steps(state, nodes)

        log_execution_time(logger, "workflow_execution", state.started_at, time.time(),
                           execution_id=context.execution_id,
                           workflow_id=graph.workflow_id,
                           status=result.status.value,
                           failing_step=result.failing_step)
        return result

    async def _run_steps(self, state: _RunState, nodes: List[Node]) -> ExecutionResult:
        context = state.context

        for index, node in enumerate(nodes):
            context.step_index = index

            if context.cancelled:
                return self._cancelled(state, index, node)

            step_start = time.time()
            try:
                handler = self.registry.get(node.type)
                state.emit(index, node.type, LogPhase.START,
                           f"Executing {node.label or node.type}", node_id=node.id)

                checked = node.type in FIELD_CHECKED_NODE_TYPES
                if node.type in RAW_FIELD_NODE_TYPES:
                    fields = dict(node.fields)
                else:
                    # Side-effecting nodes see a missing reference as undefined
                    fields = resolve_templates(node.fields, context.vars, strict=checked)

                if checked:
                    self._check_required_fields(node, fields)
                output_key = self._output_key(node)

                output = await self._dispatch(handler, fields, context, node)

            except asyncio.CancelledError:
                state.status = RunStatus.FAILED
                state.emit(index, node.type, LogPhase.ERROR, "Execution cancelled",
                           node_id=node.id)
                raise
            except Exception as e:
                return self._failed(state, index, node, e)

            duration_ms = int((time.time() - step_start) * 1000)
            plain_output = to_plain(output)
            if output_key is not None:
                context.vars[output_key] = output
            state.steps.append({
                "stepIndex": index,
                "nodeId": node.id,
                "nodeType": node.type,
                "outputVariable": output_key,
                "output": plain_output,
                "durationMs": duration_ms,
            })
            state.emit(index, node.type, LogPhase.SUCCESS, f"{node.label or node.type} completed",
                       payload={"durationMs": duration_ms, "outputVariable": output_key,
                                "output": plain_output},
                       node_id=node.id)

            # Response is terminal wherever it sits in the order
            if node.is_response:
                return self._succeeded(state, index, plain_output)

        return self._succeeded(state, len(nodes), self._final_output(context))

    async def _dispatch(self, handler, fields: Dict[str, Any], context: ExecutionContext,
                        node: Node) -> Any:
        """Run a handler, letting its side effect complete if the run is cancelled."""
        task = asyncio.ensure_future(handler(fields, context))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # Stop delays early; other side effects run to completion in the background
            context.cancel_event.set()
            self._detached.add(task)
            task.add_done_callback(partial(self._detached_step_done,
                                           execution_id=context.execution_id,
                                           step_index=context.step_index,
                                           node_type=node.type))
            logger.warning("Run cancelled while a step was in flight",
                           execution_id=context.execution_id,
                           step_index=context.step_index, node_type=node.type)
            raise

    def _detached_step_done(self, task: asyncio.Future, execution_id: str,
                            step_index: int, node_type: str) -> None:
        """Collect the outcome of a handler that outlived its cancelled run."""
        self._detached.discard(task)
        if task.cancelled():
            logger.warning("Detached step cancelled", execution_id=execution_id,
                           step_index=step_index, node_type=node_type)
            return
        error = task.exception()
        if error is not None:
            logger.error("Detached step failed", execution_id=execution_id,
                         step_index=step_index, node_type=node_type, error=str(error))
        else:
            logger.info("Detached step completed", execution_id=execution_id,
                        step_index=step_index, node_type=node_type)

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    @staticmethod
    def _check_required_fields(node: Node, fields: Dict[str, Any]) -> None:
        """Fail fast on a missing required field or any field set to None."""
        missing = [name for name in required_fields(node.type) if fields.get(name) is None]
        missing += [name for name, value in fields.items()
                    if value is None and name not in missing]
        if missing:
            raise ConfigurationError(
                f"{node.type} node {node.id} has undefined required field(s): "
                f"{', '.join(missing)}")

    @staticmethod
    def _output_key(node: Node) -> Optional[str]:
        if node.is_response:
            return RESPONSE_VAR
        # Input nodes write their declared variables straight into the scope
        if node.type in INPUT_NODE_TYPES:
            return None
        declared = node.fields.get("output") or node.fields.get("outputVar")
        if isinstance(declared, str) and declared:
            key = declared
        else:
            key = DEFAULT_OUTPUT_VARS.get(node.type, node.id)
        if key in RESERVED_VAR_KEYS:
            raise ConfigurationError(
                f"{node.type} node {node.id} cannot write its output to reserved variable '{key}'")
        return key

    # -------------------------------------------------------------------------
    # Terminal states
    # -------------------------------------------------------------------------

    @staticmethod
    def _final_output(context: ExecutionContext) -> Dict[str, Any]:
        return to_plain({k: v for k, v in context.vars.items() if k != "input"})

    def _succeeded(self, state: _RunState, step_index: int, output: Any) -> ExecutionResult:
        state.status = RunStatus.SUCCEEDED
        state.emit(step_index, "workflow", LogPhase.END, "Workflow completed",
                   payload={"stepsExecuted": len(state.steps), "durationMs": state.duration_ms()})
        logger.info("Execution succeeded", execution_id=state.context.execution_id,
                    steps=len(state.steps))
        return state.result(success=True, output=output)

    def _failed(self, state: _RunState, index: int, node: Node, error: Exception) -> ExecutionResult:
        kind = error.kind if isinstance(error, WorkflowError) else "handler"
        details = getattr(error, "details", None)
        message = str(error) or type(error).__name__

        state.status = RunStatus.FAILED
        state.emit(index, node.type, LogPhase.ERROR, message,
                   payload={"kind": kind, "details": to_plain(details)} if details else {"kind": kind},
                   node_id=node.id)
        logger.error("Step failed", execution_id=state.context.execution_id,
                     step_index=index, node_type=node.type, node_id=node.id,
                     error_kind=kind, error=message)
        return state.result(success=False, failing_step=index, error=message,
                            error_kind=kind, error_details=to_plain(details) if details else None)

    def _cancelled(self, state: _RunState, index: int, node: Node) -> ExecutionResult:
        state.status = RunStatus.FAILED
        state.emit(index, node.type, LogPhase.END, "Execution cancelled",
                   payload={"stepsExecuted": len(state.steps)}, node_id=node.id)
        logger.info("Execution cancelled", execution_id=state.context.execution_id,
                    step_index=index)
        return state.result(success=False, failing_step=index, error="Execution cancelled",
                            error_kind="cancelled")
