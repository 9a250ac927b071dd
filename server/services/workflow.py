"""Workflow Service - Facade for generating, mutating and executing workflows.

Thin facade delegating to specialized modules:
- ProposalSource: prompt -> untrusted Delta
- MutationEngine: Delta + Graph -> validated Graph
- WorkflowRepository: persistence with optimistic versioning
- ExecutionInterpreter: Graph + input -> ExecutionResult
"""

import asyncio
import time
import uuid
import weakref
from typing import Dict, Any, List, Optional, TYPE_CHECKING

from core.logging import get_logger, log_execution_time
from models.nodes import get_tool_catalog
from services.errors import ExecutionConflictError, ExecutionNotFoundError, GraphValidationError
from services.graph.models import Graph
from services.graph.mutation import Delta, MutationEngine

if TYPE_CHECKING:
    from core.database import WorkflowRepository
    from services.execution.interpreter import ExecutionInterpreter
    from services.proposals import ProposalSource

logger = get_logger(__name__)

# Workflow id recorded for runs of a posted, unstored graph
INLINE_WORKFLOW_ID = "inline"


class WorkflowService:
    """Invocation surface of the workflow engine.

    Mutations of one workflow are serialized by a per-workflow asyncio.Lock
    (this process) and an optimistic version check on save (across processes).
    Executions only read the stored graph and run concurrently.
    """

    def __init__(
        self,
        repository: "WorkflowRepository",
        proposal_source: "ProposalSource",
        interpreter: "ExecutionInterpreter",
        mutation_engine: Optional[MutationEngine] = None,
    ):
        self.repository = repository
        self.proposal_source = proposal_source
        self.interpreter = interpreter
        self.mutation_engine = mutation_engine or MutationEngine()

        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        # execution_id -> cancel event, for runs in flight
        self._active_runs: Dict[str, asyncio.Event] = {}

    def _lock_for(self, workflow_id: str) -> asyncio.Lock:
        lock = self._locks.get(workflow_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[workflow_id] = lock
        return lock

    @staticmethod
    def _graph_payload(graph: Graph) -> Dict[str, Any]:
        return {
            "workflowId": graph.workflow_id,
            "nodes": [n.to_dict() for n in graph.nodes],
            "edges": [e.to_dict() for e in graph.edges],
        }

    # =========================================================================
    # Generation and mutation
    # =========================================================================

    async def generate(self, prompt: str, owner_id: str) -> Dict[str, Any]:
        """Create a new workflow from a prompt.

        Raises:
            ProposalError / GraphValidationError: The proposal was rejected;
                nothing is stored.
        """
        start_time = time.time()
        delta = await self.proposal_source.propose_delta(prompt, None)

        empty = Graph(workflow_id=str(uuid.uuid4()), owner_id=owner_id)
        result = self.mutation_engine.merge(empty, delta)
        saved = await self.repository.create(result.graph)

        log_execution_time(logger, "workflow_generate", start_time, time.time(),
                           workflow_id=saved.workflow_id, nodes=len(saved.nodes))
        return {
            **self._graph_payload(result.graph),
            "nodesAdded": result.nodes_added,
            "version": saved.version,
        }

    async def mutate(self, prompt: str, workflow_id: str, owner_id: str) -> Dict[str, Any]:
        """Ask the proposal source for a change to an existing workflow and apply it."""
        graph = await self.repository.load(workflow_id, owner_id)
        try:
            delta = await self.proposal_source.propose_delta(prompt, graph)
        except GraphValidationError as e:
            return self._rejected(graph, e)
        return await self.apply_delta(workflow_id, owner_id, delta)

    async def apply_delta(self, workflow_id: str, owner_id: str, delta: Delta) -> Dict[str, Any]:
        """Merge a delta into the stored workflow, all or nothing.

        Returns:
            {"success": True, nodes, edges, nodesAdded, ...} when stored, or
            {"success": False, unchanged nodes/edges, error, violations} when rejected

        Raises:
            WorkflowNotFoundError: Unknown workflow for this owner.
            ConcurrentModificationError: Another process saved in between.
        """
        async with self._lock_for(workflow_id):
            graph = await self.repository.load(workflow_id, owner_id)
            try:
                result = self.mutation_engine.merge(graph, delta)
            except GraphValidationError as e:
                return self._rejected(graph, e)

            saved = await self.repository.save(result.graph, expected_version=graph.version)

        logger.info("Workflow mutated", workflow_id=workflow_id, version=saved.version,
                    nodes_added=result.nodes_added, edges_added=result.edges_added)
        return {
            "success": True,
            **self._graph_payload(result.graph),
            "nodesAdded": result.nodes_added,
            "edgesAdded": result.edges_added,
            "droppedEdges": [e.to_dict() for e in result.dropped_edges],
            "version": saved.version,
        }

    def _rejected(self, graph: Graph, error: GraphValidationError) -> Dict[str, Any]:
        logger.info("Mutation rejected", workflow_id=graph.workflow_id, error=str(error))
        return {
            "success": False,
            **self._graph_payload(graph),
            "nodesAdded": 0,
            "error": str(error),
            "kind": error.kind,
            "violations": error.violation_dicts(),
            "version": graph.version,
        }

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute(self, workflow_id: str, owner_id: str,
                      input_data: Optional[Dict[str, Any]] = None,
                      headers: Optional[Dict[str, str]] = None,
                      execution_id: Optional[str] = None) -> Dict[str, Any]:
        """Run a stored workflow; failures come back as success=False, not exceptions.

        Raises:
            WorkflowNotFoundError: Unknown workflow for this owner.
            ExecutionConflictError: execution_id belongs to a run still in flight.
        """
        graph = await self.repository.load(workflow_id, owner_id)
        return await self._run(graph, input_data, headers, execution_id)

    async def execute_inline(self, graph_data: Dict[str, Any], owner_id: str,
                             input_data: Optional[Dict[str, Any]] = None,
                             headers: Optional[Dict[str, str]] = None,
                             execution_id: Optional[str] = None) -> Dict[str, Any]:
        """Run a posted graph without storing it.

        The graph must pass Graph.validate() before any step runs.

        Raises:
            ProposalError: Malformed node or edge.
            GraphValidationError: Structurally invalid graph.
            ExecutionConflictError: execution_id belongs to a run still in flight.
        """
        parsed = Delta.from_dict(graph_data)
        graph = Graph(workflow_id=INLINE_WORKFLOW_ID, owner_id=owner_id,
                      nodes=parsed.nodes, edges=parsed.edges)

        validation = graph.validate()
        if not validation.is_valid:
            raise GraphValidationError(
                f"Invalid workflow: {len(validation.violations)} violation(s)",
                validation.violations,
            )
        return await self._run(graph, input_data, headers, execution_id)

    async def _run(self, graph: Graph, input_data: Optional[Dict[str, Any]],
                   headers: Optional[Dict[str, str]],
                   execution_id: Optional[str]) -> Dict[str, Any]:
        execution_id = execution_id or str(uuid.uuid4())
        if execution_id in self._active_runs:
            raise ExecutionConflictError(execution_id)
        cancel_event = asyncio.Event()
        self._active_runs[execution_id] = cancel_event
        try:
            result = await self.interpreter.run(graph, input_data or {}, headers or {},
                                                execution_id=execution_id,
                                                cancel_event=cancel_event)
        finally:
            self._active_runs.pop(execution_id, None)

        try:
            await self.repository.save_execution(result)
        except Exception as e:
            # The run already happened; report it even if the record is lost
            logger.error("Failed to store execution record",
                         execution_id=execution_id, error=str(e))

        return result.to_dict()

    def cancel_execution(self, execution_id: str) -> bool:
        """Stop dispatching further steps of a running execution.

        Raises:
            ExecutionNotFoundError: No such execution is running.
        """
        event = self._active_runs.get(execution_id)
        if event is None:
            raise ExecutionNotFoundError(execution_id)
        event.set()
        logger.info("Execution cancellation requested", execution_id=execution_id)
        return True

    async def get_execution(self, execution_id: str) -> Dict[str, Any]:
        return await self.repository.get_execution(execution_id)

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_workflow(self, workflow_id: str, owner_id: str) -> Dict[str, Any]:
        """Stored graph; isNew marks are cleared on the copy returned."""
        graph = await self.repository.load(workflow_id, owner_id)
        for node in graph.nodes:
            node.is_new = False
        return graph.to_dict()

    async def list_workflows(self, owner_id: str) -> List[Dict[str, Any]]:
        graphs = await self.repository.list(owner_id)
        return [
            {
                "workflowId": g.workflow_id,
                "nodeCount": len(g.nodes),
                "hasResponse": g.response_node() is not None,
                "version": g.version,
                "createdAt": g.created_at.isoformat(),
                "updatedAt": g.updated_at.isoformat(),
            }
            for g in graphs
        ]

    async def delete_workflow(self, workflow_id: str, owner_id: str) -> None:
        async with self._lock_for(workflow_id):
            await self.repository.delete(workflow_id, owner_id)

    def list_tools(self) -> List[Dict[str, Any]]:
        return get_tool_catalog()
