"""
Chunked Batch Processor - runs a work list in bounded slices.

Chunks execute strictly in order. Items inside one chunk are started together
and jointly awaited; one item's failure never aborts its siblings and is
captured in the report instead of raised. Progress is streamed through the
ProgressEmitter, and a configurable pause between chunks hands control back to
the event loop so the host can service other traffic (cancel requests,
reads) while a long batch runs.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from command_errors import ErrorKind, ValidationError, error_kind_of
from progress import ProgressEmitter, ProgressStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

PLANNING_PROGRESS = 5
PROCESSING_SPAN = 90


def chunk_count(total: int, chunk_size: int) -> int:
    if chunk_size < 1:
        raise ValidationError(f"Chunk size must be at least 1, got {chunk_size}")
    return math.ceil(total / chunk_size)


def chunked(items: Sequence[T], chunk_size: int) -> List[Sequence[T]]:
    chunk_count(len(items), chunk_size)
    return [items[i:i + chunk_size] for i in range(0, len(items), chunk_size)]


def chunk_progress(completed_chunks: int, total_chunks: int) -> int:
    """Linear 5% -> 95% across the processing phase."""
    if total_chunks <= 0:
        return PLANNING_PROGRESS + PROCESSING_SPAN
    return round(PLANNING_PROGRESS + (completed_chunks / total_chunks) * PROCESSING_SPAN)


class CancellationToken:
    """Cooperative stop flag, only honoured between chunks."""

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self._cancelled = True
        self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class ItemResult:
    index: int
    item: Any
    success: bool
    value: Any = None
    error: Optional[str] = None
    kind: Optional[ErrorKind] = None

    def as_dict(self) -> Dict[str, Any]:
        if self.success:
            if isinstance(self.value, dict):
                return {"success": True, **self.value}
            return {"success": True, "value": self.value}
        data: Dict[str, Any] = {"success": False, "error": self.error}
        if self.kind is not None:
            data["errorKind"] = self.kind.value
        if isinstance(self.value, dict):
            data.update({k: v for k, v in self.value.items() if k not in data})
        return data


@dataclass
class BatchReport:
    total_requested: int
    succeeded: int = 0
    failed: int = 0
    results: List[ItemResult] = field(default_factory=list)
    chunks: int = 0
    cancelled: bool = False

    @property
    def success(self) -> bool:
        # Availability over atomicity: one applied item makes the batch a success
        return self.succeeded > 0

    @property
    def processed(self) -> int:
        return self.succeeded + self.failed

    def as_dict(self) -> Dict[str, Any]:
        return {
            "totalRequested": self.total_requested,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "chunks": self.chunks,
            "cancelled": self.cancelled,
            "results": [result.as_dict() for result in self.results],
        }


Worker = Callable[[Any], Awaitable[Any]]


class ChunkedBatchProcessor:
    def __init__(self, emitter: ProgressEmitter, chunk_size: int = 5, inter_chunk_delay: float = 1.0):
        chunk_count(0, chunk_size)
        self.emitter = emitter
        self.chunk_size = chunk_size
        self.inter_chunk_delay = inter_chunk_delay

    async def run(
        self,
        command_id: str,
        command_type: str,
        items: Sequence[Any],
        worker: Worker,
        *,
        describe: Optional[Callable[[Any], Optional[Dict[str, Any]]]] = None,
        token: Optional[CancellationToken] = None,
        started_message: Optional[str] = None,
        noun: str = "items",
    ) -> BatchReport:
        """Execute ``worker`` over ``items`` chunk by chunk and return the aggregate report.

        ``describe`` maps a failed item to extra fields kept next to its error
        (e.g. the node id), so failures stay addressable in the report.
        """
        total = len(items)
        chunks = chunked(items, self.chunk_size)
        total_chunks = len(chunks)
        report = BatchReport(total_requested=total, chunks=0)
        emit = self.emitter.emit

        emit(
            command_id, command_type, ProgressStatus.STARTED, 0, total, 0,
            started_message or f"Starting {command_type} for {total} {noun}",
            {"totalItems": total},
        )
        emit(
            command_id, command_type, ProgressStatus.IN_PROGRESS, PLANNING_PROGRESS, total, 0,
            f"Preparing to process {total} {noun} using {total_chunks} chunks",
            {"totalItems": total, "totalChunks": total_chunks, "chunkSize": self.chunk_size},
        )
        logger.info(f"🧩 {command_type} [{command_id}]: {total} {noun} in {total_chunks} chunks of {self.chunk_size}")

        offset = 0
        for chunk_index, chunk in enumerate(chunks):
            if token is not None and token.cancelled:
                self._skip_remaining(report, items, offset, describe, token.reason or "cancelled")
                report.cancelled = True
                logger.info(f"🛑 {command_type} [{command_id}] cancelled before chunk {chunk_index + 1}/{total_chunks}")
                emit(
                    command_id, command_type, ProgressStatus.ERROR,
                    chunk_progress(chunk_index, total_chunks), total, report.processed,
                    f"Cancelled after {chunk_index}/{total_chunks} chunks: "
                    f"{report.succeeded} successful, {report.failed} failed",
                    {"cancelled": True, **report.as_dict()},
                )
                return report

            logger.debug(f"🧩 Processing chunk {chunk_index + 1}/{total_chunks} with {len(chunk)} {noun}")
            outcomes = await asyncio.gather(*(worker(item) for item in chunk), return_exceptions=True)

            chunk_results: List[ItemResult] = []
            for position, (item, outcome) in enumerate(zip(chunk, outcomes)):
                index = offset + position
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        logger.warning(f"⚠️ Item {index} of {command_id} was interrupted: {outcome!r}")
                    result = ItemResult(
                        index=index,
                        item=item,
                        success=False,
                        value=describe(item) if describe else None,
                        error=str(outcome) or outcome.__class__.__name__,
                        kind=error_kind_of(outcome),
                    )
                    report.failed += 1
                else:
                    result = ItemResult(index=index, item=item, success=True, value=outcome)
                    report.succeeded += 1
                chunk_results.append(result)
            report.results.extend(chunk_results)
            report.chunks += 1
            offset += len(chunk)

            emit(
                command_id, command_type, ProgressStatus.IN_PROGRESS,
                chunk_progress(chunk_index + 1, total_chunks), total, report.processed,
                f"Completed chunk {chunk_index + 1}/{total_chunks}. "
                f"{report.succeeded} successful, {report.failed} failed so far.",
                {
                    "currentChunk": chunk_index + 1,
                    "totalChunks": total_chunks,
                    "chunkSize": self.chunk_size,
                    "successCount": report.succeeded,
                    "failureCount": report.failed,
                    "chunkResults": [result.as_dict() for result in chunk_results],
                },
            )

            if chunk_index < total_chunks - 1 and self.inter_chunk_delay > 0:
                await asyncio.sleep(self.inter_chunk_delay)

        emit(
            command_id, command_type, ProgressStatus.COMPLETED, 100, total, report.processed,
            f"{command_type} complete: {report.succeeded} successful, {report.failed} failed",
            report.as_dict(),
        )
        logger.info(f"✅ {command_type} [{command_id}] done: {report.succeeded} ok, {report.failed} failed")
        return report

    @staticmethod
    def _skip_remaining(report: BatchReport, items: Sequence[Any], offset: int, describe, reason: str) -> None:
        for index in range(offset, len(items)):
            item = items[index]
            report.results.append(
                ItemResult(
                    index=index,
                    item=item,
                    success=False,
                    value=describe(item) if describe else None,
                    error=f"Skipped: batch {reason}",
                    kind=ErrorKind.CANCELLED,
                )
            )
            report.failed += 1
