"""Execution log broadcaster.

Log sink for the interpreter: append() only enqueues, and a background task
owned by the application lifespan fans entries out to the WebSocket clients
subscribed to that execution. A slow or broken client never slows a run.
"""

import asyncio
from collections import deque
from typing import Deque, Dict, Any, List, Optional, Set, Tuple

import orjson
from fastapi import WebSocket

from core.logging import get_logger
from services.execution.models import ExecutionLogEntry

logger = get_logger(__name__)


class ExecutionBroadcaster:
    """Streams execution log entries to per-execution WebSocket subscribers."""

    def __init__(self, queue_size: int = 10000, buffer_size: int = 1000):
        self._queue_size = queue_size
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        # Each subscriber maps to the last sequence number it has already been sent
        self._subscribers: Dict[str, Dict[WebSocket, int]] = {}
        self._lock = asyncio.Lock()
        self._seq = 0
        # Ring buffer of the most recent (seq, entry) pairs across all executions
        self._recent: Deque[Tuple[int, ExecutionLogEntry]] = deque(maxlen=buffer_size)
        self.dropped = 0

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def startup(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self._queue_size)
        self._task = asyncio.create_task(self._fan_out_loop(), name="execution-broadcaster")
        logger.info("Execution broadcaster started", queue_size=self._queue_size)

    async def shutdown(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._queue = None

        async with self._lock:
            connections = [ws for subs in self._subscribers.values() for ws in subs]
            self._subscribers.clear()
        for websocket in connections:
            try:
                await websocket.close()
            except Exception as e:
                logger.debug("Closing subscriber failed", error=str(e))
        logger.info("Execution broadcaster stopped", dropped=self.dropped)


    # =========================================================================
    # Log sink
    # =========================================================================

    def append(self, entry: ExecutionLogEntry) -> None:
        """Record an entry and queue it for subscribers. Never waits."""
        self._seq += 1
        item = (self._seq, entry)
        self._recent.append(item)
        if self._queue is None:
            return
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Broadcast queue full, dropping log entry",
                           execution_id=entry.execution_id, step_index=entry.step_index,
                           dropped=self.dropped)

    def recent(self, execution_id: Optional[str] = None, limit: int = 100) -> List[ExecutionLogEntry]:
        """Most recent entries, newest last, optionally for one execution."""
        entries = [e for _, e in self._recent
                   if execution_id is None or e.execution_id == execution_id]
        return entries[-limit:] if limit > 0 else []

    # =========================================================================
    # Subscribers
    # =========================================================================

    async def subscribe(self, execution_id: str, websocket: WebSocket) -> None:
        """Accept a client and replay what is already buffered for the execution.

        Replay and registration happen under the lock, so the fan-out loop
        cannot interleave; it skips every entry at or below the replay cutoff.
        """
        await websocket.accept()
        async with self._lock:
            cutoff = self._seq
            replay = [e for _, e in self._recent if e.execution_id == execution_id]
            for entry in replay:
                await websocket.send_text(orjson.dumps(self._message(entry)).decode())
            self._subscribers.setdefault(execution_id, {})[websocket] = cutoff
            count = len(self._subscribers[execution_id])
        logger.info("Execution subscriber connected", execution_id=execution_id,
                    subscribers=count, replayed=len(replay))

    async def unsubscribe(self, execution_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            subscribers = self._subscribers.get(execution_id)
            if subscribers is not None:
                subscribers.pop(websocket, None)
                if not subscribers:
                    del self._subscribers[execution_id]
        logger.info("Execution subscriber disconnected", execution_id=execution_id)

    def subscriber_count(self, execution_id: Optional[str] = None) -> int:
        if execution_id is not None:
            return len(self._subscribers.get(execution_id, ()))
        return sum(len(s) for s in self._subscribers.values())

    # =========================================================================
    # Fan-out
    # =========================================================================

    @staticmethod
    def _message(entry: ExecutionLogEntry) -> Dict[str, Any]:
        return {"type": "execution_log", "data": entry.to_dict()}

    async def _fan_out_loop(self) -> None:
        queue = self._queue
        while True:
            seq, entry = await queue.get()
            try:
                await self._broadcast(seq, entry)
            except Exception as e:
                logger.warning("Broadcast failed", execution_id=entry.execution_id, error=str(e))
            finally:
                queue.task_done()

    async def _broadcast(self, seq: int, entry: ExecutionLogEntry) -> None:
        """Send one entry to every subscriber of its execution using TaskGroup."""
        async with self._lock:
            subscribers = self._subscribers.get(entry.execution_id, {})
            # Entries already replayed to a subscriber are not sent again
            connections = [ws for ws, cutoff in subscribers.items() if cutoff < seq]
        if not connections:
            return

        message = orjson.dumps(self._message(entry)).decode()
        disconnected: Set[WebSocket] = set()

        async def send_to_client(connection: WebSocket):
            try:
                await connection.send_text(message)
            except Exception as e:
                logger.warning("Subscriber send failed", execution_id=entry.execution_id, error=str(e))
                disconnected.add(connection)

        async with asyncio.TaskGroup() as tg:
            for connection in connections:
                tg.create_task(send_to_client(connection))

        if disconnected:
            async with self._lock:
                subscribers = self._subscribers.get(entry.execution_id)
                if subscribers is not None:
                    for connection in disconnected:
                        subscribers.pop(connection, None)
