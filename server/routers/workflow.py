"""Workflow routes: generate, mutate, edit, execute and query workflows."""

from typing import Dict, Any, List, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, Field

from core.container import container
from core.logging import get_logger
from services.graph import Delta
from services.workflow import WorkflowService

logger = get_logger(__name__)
router = APIRouter(prefix="/api", tags=["workflow"])


class GenerateRequest(BaseModel):
    prompt: str = Field(..., min_length=1)
    owner_id: str = Field(..., min_length=1)


class MutateRequest(BaseModel):
    prompt: str = Field(..., min_length=1)
    owner_id: str = Field(..., min_length=1)


class DeltaRequest(BaseModel):
    """Explicit user edit: nodes and edges to merge into the stored graph."""
    owner_id: str = Field(..., min_length=1)
    nodes: List[Any] = []
    edges: List[Any] = []


class ExecuteRequest(BaseModel):
    owner_id: str = Field(..., min_length=1)
    input: Dict[str, Any] = {}
    # Lets a client open /ws/executions/{id} before starting the run
    execution_id: Optional[str] = None


class RunRequest(BaseModel):
    """A graph to run as posted, without storing it."""
    owner_id: str = Field(..., min_length=1)
    nodes: List[Dict[str, Any]] = []
    edges: List[Dict[str, Any]] = []
    input: Dict[str, Any] = {}
    execution_id: Optional[str] = None


def _mutation_response(result: Dict[str, Any]) -> ORJSONResponse:
    """A rejected mutation is a 422 that still carries the unchanged graph."""
    return ORJSONResponse(status_code=200 if result.get("success") else 422, content=result)


# =============================================================================
# Workflows
# =============================================================================

@router.post("/workflows/generate")
async def generate_workflow(
    request: GenerateRequest,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    """Create a new workflow from a natural-language prompt."""
    result = await workflow_service.generate(request.prompt, request.owner_id)
    return {"success": True, **result}


@router.post("/workflows/run")
async def run_inline_workflow(
    request: RunRequest,
    http_request: Request,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    """Validate and run a posted graph. An invalid graph is a 422 and runs nothing."""
    return await workflow_service.execute_inline(
        {"nodes": request.nodes, "edges": request.edges},
        request.owner_id,
        input_data=request.input,
        headers=dict(http_request.headers),
        execution_id=request.execution_id,
    )


@router.get("/workflows")
async def list_workflows(
    owner_id: str,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    workflows = await workflow_service.list_workflows(owner_id)
    return {"success": True, "workflows": workflows}


@router.get("/workflows/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    owner_id: str,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    workflow = await workflow_service.get_workflow(workflow_id, owner_id)
    return {"success": True, "workflow": workflow}


@router.delete("/workflows/{workflow_id}")
async def delete_workflow(
    workflow_id: str,
    owner_id: str,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    await workflow_service.delete_workflow(workflow_id, owner_id)
    return {"success": True, "workflowId": workflow_id}


@router.post("/workflows/{workflow_id}/mutate")
async def mutate_workflow(
    workflow_id: str,
    request: MutateRequest,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    """Ask the proposal source for a change and merge it into the workflow."""
    result = await workflow_service.mutate(request.prompt, workflow_id, request.owner_id)
    return _mutation_response(result)


@router.post("/workflows/{workflow_id}/delta")
async def apply_workflow_delta(
    workflow_id: str,
    request: DeltaRequest,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    """Merge an explicit set of nodes and edges into the workflow."""
    delta = Delta.from_dict({"nodes": request.nodes, "edges": request.edges})
    result = await workflow_service.apply_delta(workflow_id, request.owner_id, delta)
    return _mutation_response(result)


@router.post("/workflows/{workflow_id}/execute")
async def execute_workflow(
    workflow_id: str,
    request: ExecuteRequest,
    http_request: Request,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    """Run the workflow. A failed run is still a 200 with success=false."""
    logger.debug("Execution requested", workflow_id=workflow_id, owner_id=request.owner_id)
    return await workflow_service.execute(
        workflow_id,
        request.owner_id,
        input_data=request.input,
        headers=dict(http_request.headers),
        execution_id=request.execution_id,
    )


# =============================================================================
# Executions
# =============================================================================

@router.get("/executions/{execution_id}")
async def get_execution(
    execution_id: str,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    """Stored record of a finished execution, including its full log."""
    execution = await workflow_service.get_execution(execution_id)
    return {"success": True, "execution": execution}


@router.post("/executions/{execution_id}/cancel")
async def cancel_execution(
    execution_id: str,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    workflow_service.cancel_execution(execution_id)
    return {"success": True, "executionId": execution_id}


# =============================================================================
# Tools
# =============================================================================

@router.get("/tools")
async def list_tools(
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    """Node-type catalog with the JSON schema of each type's fields."""
    return {"success": True, "tools": workflow_service.list_tools()}
