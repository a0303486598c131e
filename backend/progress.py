"""
Progress Emitter - fire-and-forget status events for long-running commands.

``emit`` never blocks and is never awaited: events are queued and a single pump
task writes them to the channel in emission order. Per command id the stream
follows ``started -> in_progress* -> completed | error``; nothing is sent after
the terminal event and the percentage never goes backwards. ``error`` is the
only status accepted for an id that has not ``started``, so fail-fast
validation can still report on the stream.

Finished commands keep their history only while they are among the most
recent ``retain`` released ids.
"""

import asyncio
import json
import logging
import time
from collections import OrderedDict
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Set

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

MESSAGE_TYPE_COMMAND_PROGRESS = "command_progress"


class ProgressStatus(str, Enum):
    STARTED = "started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({ProgressStatus.COMPLETED, ProgressStatus.ERROR})


class ProgressEvent(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: Literal["command_progress"] = MESSAGE_TYPE_COMMAND_PROGRESS
    command_id: str
    command_type: str
    status: ProgressStatus
    progress: int
    total_items: int
    processed_items: int
    current_chunk: Optional[int] = None
    total_chunks: Optional[int] = None
    chunk_size: Optional[int] = None
    message: str
    payload: Optional[Dict[str, Any]] = None
    timestamp: int

    def to_envelope(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ProgressEmitter:
    """Queues progress envelopes and pushes them through ``send`` in order."""

    def __init__(self, send: Optional[Callable[[str], Awaitable[None]]] = None, retain: int = 64):
        self._send = send
        self._queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
        self._pump: Optional[asyncio.Task] = None
        self._retain = max(1, retain)
        self._last_progress: Dict[str, int] = {}
        self._terminated: Set[str] = set()
        self._history: Dict[str, List[ProgressEvent]] = {}
        self._released: "OrderedDict[str, None]" = OrderedDict()

    def attach(self, send: Optional[Callable[[str], Awaitable[None]]]) -> None:
        self._send = send

    def start(self) -> None:
        if self._pump is None or self._pump.done():
            self._pump = asyncio.get_running_loop().create_task(self._drain())

    async def stop(self) -> None:
        if self._pump is None:
            return
        await self.flush()
        self._pump.cancel()
        try:
            await self._pump
        except asyncio.CancelledError:
            pass
        self._pump = None

    async def flush(self) -> None:
        """Wait until every queued event has been handed to the channel."""
        if self._pump is not None and not self._pump.done():
            await self._queue.join()

    def is_terminated(self, command_id: str) -> bool:
        return command_id in self._terminated

    def history(self, command_id: str) -> List[ProgressEvent]:
        return list(self._history.get(command_id, []))

    def active_commands(self) -> List[str]:
        """Ids that have started and not yet been released."""
        return list(self._last_progress)

    def release(self, command_id: str) -> None:
        """Mark a command as done; only the most recent released ids keep their history."""
        if command_id not in self._last_progress and command_id not in self._history:
            return
        self._last_progress.pop(command_id, None)
        self._released[command_id] = None
        self._released.move_to_end(command_id)
        while len(self._released) > self._retain:
            oldest, _ = self._released.popitem(last=False)
            self._history.pop(oldest, None)
            self._terminated.discard(oldest)

    def forget(self, command_id: str) -> None:
        self._history.pop(command_id, None)
        self._last_progress.pop(command_id, None)
        self._terminated.discard(command_id)
        self._released.pop(command_id, None)

    def emit(
        self,
        command_id: str,
        command_type: str,
        status: ProgressStatus,
        progress: float,
        total_items: int,
        processed_items: int,
        message: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Optional[ProgressEvent]:
        status = ProgressStatus(status)
        if command_id in self._terminated:
            logger.warning(f"⚠️ Dropping {status.value} progress for finished command {command_id}")
            return None
        if status in (ProgressStatus.IN_PROGRESS, ProgressStatus.COMPLETED) and command_id not in self._last_progress:
            logger.warning(f"⚠️ Dropping {status.value} progress for {command_id}: command never started")
            return None

        percent = max(0, min(100, int(round(progress))))
        percent = max(percent, self._last_progress.get(command_id, 0))
        if status == ProgressStatus.COMPLETED:
            percent = 100

        chunk_fields: Dict[str, Any] = {}
        if payload and payload.get("currentChunk") is not None and payload.get("totalChunks") is not None:
            chunk_fields = {
                "current_chunk": payload["currentChunk"],
                "total_chunks": payload["totalChunks"],
                "chunk_size": payload.get("chunkSize"),
            }

        event = ProgressEvent(
            command_id=command_id,
            command_type=command_type,
            status=status,
            progress=percent,
            total_items=total_items,
            processed_items=processed_items,
            message=message,
            payload=payload,
            timestamp=int(time.time() * 1000),
            **chunk_fields,
        )
        self._last_progress[command_id] = percent
        self._history.setdefault(command_id, []).append(event)
        if status in TERMINAL_STATUSES:
            self._terminated.add(command_id)
            self.release(command_id)
        self._queue.put_nowait(event.to_envelope())
        logger.info(f"📈 Progress {command_type} [{command_id}]: {status.value} - {percent}% - {message}")
        return event

    async def _drain(self) -> None:
        while True:
            envelope = await self._queue.get()
            try:
                if self._send is not None:
                    await self._send(json.dumps(envelope, ensure_ascii=False))
            except Exception as e:
                logger.warning(f"📡 Failed to deliver progress event for {envelope.get('commandId')}: {e}")
            finally:
                self._queue.task_done()
