"""Workflow proposal sources.

A proposal source turns a prompt (and optionally the current graph) into a
Delta. Its output is untrusted: the Delta is parsed strictly here and merged and
validated by the MutationEngine before anything is stored.
"""

import re
from typing import Dict, Any, List, Optional, Protocol

import httpx
import orjson

from core.config import Settings
from core.logging import get_logger
from models.nodes import get_tool_catalog
from services.errors import ConfigurationError, HandlerError, ProposalError
from services.graph.models import Graph, Violation
from services.graph.mutation import Delta

logger = get_logger(__name__)

CODE_FENCE_PATTERN = re.compile(r'```(?:json)?', re.IGNORECASE)

# Unquoted object key after "{" or ",": {nodes: [...]} -> {"nodes": [...]}
UNQUOTED_KEY_PATTERN = re.compile(r'([{,]\s*)([A-Za-z0-9_]+)\s*:')


def repair_json(text: str) -> str:
    """Quote bare object keys, the most common defect in model-written JSON."""
    return UNQUOTED_KEY_PATTERN.sub(r'\1"\2":', text)


def _malformed(message: str) -> ProposalError:
    return ProposalError(message, [Violation("malformed_proposal", message)])


def extract_json(text: str) -> Dict[str, Any]:
    """Extract the JSON object from model output that may carry markdown or prose.

    Takes everything from the first "{" to the last "}". Text that does not
    parse is retried once after repair_json().

    Raises:
        ProposalError: No object found or it does not parse.
    """
    cleaned = CODE_FENCE_PATTERN.sub("", text or "").strip()
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end == -1 or end < start:
        raise _malformed("No JSON object found in proposal")

    candidate = cleaned[start:end + 1]
    try:
        data = orjson.loads(candidate)
    except orjson.JSONDecodeError as e:
        try:
            data = orjson.loads(repair_json(candidate))
        except orjson.JSONDecodeError:
            raise _malformed(f"Proposal is not valid JSON: {e}") from e
        logger.info("Repaired malformed proposal JSON")
    if not isinstance(data, dict):
        raise _malformed("Proposal must be a JSON object")
    return data


class ProposalSource(Protocol):
    """Produces a delta for a prompt (enables duck typing)."""

    async def propose_delta(self, prompt: str, graph: Optional[Graph] = None) -> Delta:
        ...


class LLMProposalSource:
    """Asks an OpenAI-compatible chat completions endpoint for a workflow delta."""

    def __init__(self, base_url: str, api_key: Optional[str], model: str,
                 timeout: float = 60.0, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "LLMProposalSource":
        return cls(settings.llm_base_url, settings.llm_api_key, settings.llm_model,
                   timeout=float(settings.llm_timeout))

    def build_messages(self, prompt: str, graph: Optional[Graph]) -> List[Dict[str, str]]:
        catalog = [
            {"type": tool["type"], "description": tool["description"],
             "requiredFields": tool["requiredFields"]}
            for tool in get_tool_catalog()
        ]
        system = (
            "You design backend API workflows as graphs of typed nodes. "
            "Reply with one JSON object {\"nodes\": [...], \"edges\": [...]} and nothing else. "
            "Each node is {\"id\", \"type\", \"data\": {\"label\", \"fields\"}}; "
            "each edge is {\"id\", \"source\", \"target\"}. "
            "Available node types: " + orjson.dumps(catalog).decode()
        )
        messages = [{"role": "system", "content": system}]
        if graph is not None:
            current = {"nodes": [n.to_dict() for n in graph.nodes],
                       "edges": [e.to_dict() for e in graph.edges]}
            messages.append({
                "role": "system",
                "content": "Current workflow (reuse ids to change existing nodes, "
                           "return only new or changed nodes and new edges): "
                           + orjson.dumps(current).decode(),
            })
        messages.append({"role": "user", "content": prompt})
        return messages

    async def _complete(self, messages: List[Dict[str, str]]) -> str:
        payload = {"model": self.model, "messages": messages, "temperature": 0.2}
        headers = {"Authorization": f"Bearer {self.api_key}"}
        url = f"{self.base_url}/chat/completions"

        if self._client is not None:
            response = await self._client.post(url, json=payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload, headers=headers)

        response.raise_for_status()
        data = response.json()
        return data["choices"][0]["message"]["content"] or ""

    async def propose_delta(self, prompt: str, graph: Optional[Graph] = None) -> Delta:
        """Ask the model and parse its answer into a Delta.

        Raises:
            ConfigurationError: No API key configured.
            HandlerError: The endpoint failed or returned an unexpected shape.
            ProposalError: The answer is not a well-formed delta.
        """
        if not self.api_key:
            raise ConfigurationError("LLM API key is not configured (set LLM_API_KEY)")

        messages = self.build_messages(prompt, graph)
        try:
            text = await self._complete(messages)
        except httpx.HTTPError as e:
            logger.error("Proposal request failed", model=self.model, error=str(e))
            raise HandlerError(f"Proposal source request failed: {e}") from e
        except (KeyError, IndexError, TypeError, ValueError) as e:
            logger.error("Unexpected proposal response shape", model=self.model, error=str(e))
            raise HandlerError(f"Unexpected proposal response: {e}") from e

        delta = Delta.from_dict(extract_json(text))
        logger.info("Proposal received", model=self.model,
                    nodes=len(delta.nodes), edges=len(delta.edges))
        return delta
