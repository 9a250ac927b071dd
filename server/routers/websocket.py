"""WebSocket router for live execution logs.

A client subscribes to one execution id, receives the entries already buffered
for it, then every new entry as {"type": "execution_log", "data": {...}}.
Clients may also send small JSON requests:
- {"type": "ping"}
- {"type": "get_recent", "limit": 50}
- {"type": "cancel"}: stop the execution after its current step
"""

import time
from typing import Dict, Any, Awaitable, Callable

import orjson
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from core.container import container
from core.logging import get_logger
from services.errors import ExecutionNotFoundError

logger = get_logger(__name__)

router = APIRouter(tags=["websocket"])

MessageHandler = Callable[[str, Dict[str, Any]], Awaitable[Dict[str, Any]]]


# ============================================================================
# Message Handlers
# ============================================================================

async def handle_ping(execution_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "pong", "timestamp": time.time()}


async def handle_get_recent(execution_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Entries still held in the broadcaster's ring buffer for this execution."""
    limit = data.get("limit", 100)
    if not isinstance(limit, int) or limit < 0:
        return {"type": "error", "message": "limit must be a non-negative integer"}
    entries = container.broadcaster().recent(execution_id, limit=limit)
    return {"type": "recent_logs", "data": [e.to_dict() for e in entries]}


async def handle_cancel(execution_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    try:
        container.workflow_service().cancel_execution(execution_id)
    except ExecutionNotFoundError as e:
        return {"type": "error", "message": str(e)}
    return {"type": "cancel_requested", "executionId": execution_id}


MESSAGE_HANDLERS: Dict[str, MessageHandler] = {
    "ping": handle_ping,
    "get_recent": handle_get_recent,
    "cancel": handle_cancel,
}


async def _reply(websocket: WebSocket, message: Dict[str, Any]) -> None:
    await websocket.send_text(orjson.dumps(message).decode())


@router.websocket("/ws/executions/{execution_id}")
async def execution_log_endpoint(websocket: WebSocket, execution_id: str):
    """Stream the log of one execution to this client."""
    broadcaster = container.broadcaster()
    await broadcaster.subscribe(execution_id, websocket)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = orjson.loads(raw)
            except orjson.JSONDecodeError:
                await _reply(websocket, {"type": "error", "message": "Invalid JSON"})
                continue
            if not isinstance(data, dict):
                await _reply(websocket, {"type": "error", "message": "Message must be an object"})
                continue

            handler = MESSAGE_HANDLERS.get(data.get("type"))
            if handler is None:
                await _reply(websocket, {"type": "error",
                                         "message": f"Unknown message type: {data.get('type')}"})
                continue
            await _reply(websocket, await handler(execution_id, data))
    except WebSocketDisconnect:
        logger.debug("Execution log client disconnected", execution_id=execution_id)
    finally:
        await broadcaster.unsubscribe(execution_id, websocket)
