"""
Figma Communicator - RPC Communication Layer

This module provides the communication layer between the Python agent
and the document host via WebSocket tool calls and responses.

Each outbound call gets a unique id and a pending entry with its own timer.
Exactly one of three things settles an entry: the matching response, the
timer, or loss of the channel. Whichever comes first wins; the others find
the entry gone and do nothing. A timeout only abandons the wait - the host
may still finish the work.
"""

import asyncio
import json
import uuid
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Any, Optional

from command_errors import CommandTimeoutError, ConnectionLost, ErrorKind

logger = logging.getLogger(__name__)

MESSAGE_TYPE_TOOL_CALL = "tool_call"

DEFAULT_TIMEOUT = 30.0
# Ceilings per command weight; a streamed progress event re-arms the timer
COMMAND_TIMEOUTS: Dict[str, float] = {
    "get_document_info": 8.0,
    "get_node_info": 8.0,
    "get_styled_text_segments": 8.0,
    "load_font_async": 8.0,
    "cancel_command": 8.0,
    "set_text_content": 30.0,
    "set_range_font_name": 30.0,
    "scan_text_nodes": 60.0,
    "set_multiple_text_contents": 60.0,
}


class ToolExecutionError(Exception):
    """
    Specialized exception for tool execution failures.

    Carries a structured payload allowing the agent to self-correct.
    Expected payload shape: { code: str, message: str, details?: dict }
    """

    def __init__(self, payload: Any, command: str | None = None, params: Dict[str, Any] | None = None):
        self.command = command
        self.params = params

        if isinstance(payload, dict):
            self.code: str = str(payload.get("code", ErrorKind.INTERNAL.value))
            self.message: str = str(payload.get("message", ""))
            self.details: Dict[str, Any] = payload.get("details", {}) or {}
            normalized_payload = payload
        else:
            self.code = ErrorKind.INTERNAL.value
            self.message = str(payload)
            self.details = {}
            normalized_payload = {"code": self.code, "message": self.message, "details": self.details}

        self.kind: ErrorKind = ErrorKind.from_code(self.code)
        self.payload = normalized_payload

        text = self.message if self.message else self.code
        super().__init__(text)


def _retrieve_outcome(future: asyncio.Future) -> None:
    # A cancelled caller leaves the shielded future unread; mark its exception as retrieved
    if not future.cancelled() and future.exception() is not None:
        logger.debug(f"Request settled with {type(future.exception()).__name__}")


@dataclass
class PendingRequest:
    future: asyncio.Future
    command: str
    params: Dict[str, Any]
    timeout: float
    started_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    timer: Optional[asyncio.TimerHandle] = None


class FigmaCommunicator:
    """
    Handles RPC communication with the document host.

    This class manages:
    - Sending tool_call messages to the host
    - Tracking pending requests with unique IDs
    - Resolving futures when tool_response messages arrive
    - Timeouts, activity refresh from progress events, and channel loss
    """

    def __init__(self, websocket, timeout: float = DEFAULT_TIMEOUT, command_timeouts: Optional[Dict[str, float]] = None):
        """
        Initialize the communicator.

        Args:
            websocket: The WebSocket connection to send messages through
            timeout: Default timeout in seconds for commands without a ceiling of their own
            command_timeouts: Per-command ceilings overriding COMMAND_TIMEOUTS
        """
        self.websocket = websocket
        self.timeout = timeout
        self.command_timeouts: Dict[str, float] = {**COMMAND_TIMEOUTS, **(command_timeouts or {})}
        self.pending_requests: Dict[str, PendingRequest] = {}

    def generate_id(self) -> str:
        """Generate a unique ID for tool calls."""
        return str(uuid.uuid4())

    def timeout_for(self, command: str) -> float:
        return self.command_timeouts.get(command, self.timeout)

    async def send_command(self, command: str, params: Dict[str, Any] = None, timeout: Optional[float] = None) -> Any:
        """
        Send a command to the host and wait for the response.

        Args:
            command: The command name (e.g., "set_multiple_text_contents")
            params: Optional parameters for the command
            timeout: Optional ceiling in seconds overriding the per-command default

        Returns:
            The result from the host

        Raises:
            CommandTimeoutError: If no response (or progress) arrives within the ceiling
            ConnectionLost: If the channel drops while the request is pending
            ToolExecutionError: If the host returns an error
        """
        if not self.websocket:
            raise ConnectionLost("WebSocket connection not available")

        request_id = self.generate_id()
        limit = timeout if timeout is not None else self.timeout_for(command)
        # The host tags progress events with commandId, so pass our id through
        payload_params = {**(params or {}), "commandId": request_id}
        tool_call_message = {
            "type": MESSAGE_TYPE_TOOL_CALL,
            "id": request_id,
            "command": command,
            "params": payload_params,
        }

        loop = asyncio.get_running_loop()
        entry = PendingRequest(future=loop.create_future(), command=command, params=params or {}, timeout=limit)
        entry.future.add_done_callback(_retrieve_outcome)
        self.pending_requests[request_id] = entry
        self._arm_timer(request_id, entry)
        logger.debug(f"📝 Added to pending requests: {request_id} (total: {len(self.pending_requests)})")

        try:
            logger.info(f"🚀 Sending tool_call: {command} with ID: {request_id} (timeout: {limit}s)")
            await self.websocket.send(json.dumps(tool_call_message))
        except Exception as e:
            self._discard(request_id)
            logger.error(f"Tool call {command} (ID: {request_id}) could not be sent: {e}")
            raise ConnectionLost(f"Failed to send '{command}' to the host: {e}")

        # Shield so cancelling the caller leaves settlement to response/timer/loss
        return await asyncio.shield(entry.future)

    def _arm_timer(self, request_id: str, entry: PendingRequest) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
        loop = asyncio.get_running_loop()
        entry.timer = loop.call_later(entry.timeout, self._on_timeout, request_id)

    def _on_timeout(self, request_id: str) -> None:
        entry = self.pending_requests.pop(request_id, None)
        if entry is None or entry.future.done():
            return
        elapsed = time.time() - entry.started_at
        logger.error(f"⏰ Tool call {entry.command} (ID: {request_id}) timed out after {elapsed:.3f}s (limit: {entry.timeout}s)")
        entry.future.set_exception(CommandTimeoutError(
            f"Tool call '{entry.command}' timed out after {elapsed:.1f} seconds",
            {"command": entry.command, "id": request_id, "elapsed_ms": int(elapsed * 1000)},
        ))

    def _discard(self, request_id: str) -> Optional[PendingRequest]:
        entry = self.pending_requests.pop(request_id, None)
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()
        return entry

    def record_activity(self, request_id: Optional[str]) -> bool:
        """Re-arm the timer of a pending request that reported progress."""
        entry = self.pending_requests.get(request_id) if request_id else None
        if entry is None:
            return False
        entry.last_activity = time.time()
        self._arm_timer(request_id, entry)
        return True

    def handle_tool_response(self, message: Dict[str, Any]) -> None:
        """
        Handle incoming tool_response messages from the host.

        Args:
            message: The tool_response message from the host
        """
        request_id = message.get("id")
        if not request_id:
            logger.warning("❌ Received tool_response without ID")
            return

        entry = self._discard(request_id)
        if entry is None:
            # Late (after timeout / connection loss) or foreign response
            logger.warning(f"❌ Received tool_response for unknown or expired ID: {request_id}")
            return

        future = entry.future
        if future.done():
            logger.debug(f"⚠️ Future already completed for {request_id}")
            return

        cmd, params = entry.command, entry.params
        elapsed = time.time() - entry.started_at

        if isinstance(message.get("error_structured"), dict):
            error_payload = message["error_structured"]
            logger.error(f"❌ Tool call {request_id} failed after {elapsed:.3f}s: code={error_payload.get('code')}, message={error_payload.get('message')}")
            future.set_exception(ToolExecutionError(error_payload, command=cmd, params=params))
            return

        if "error" in message:
            error_val = message.get("error")
            logger.error(f"❌ Tool call {request_id} failed after {elapsed:.3f}s: {error_val}")
            if isinstance(error_val, dict):
                tool_error = ToolExecutionError(error_val, command=cmd, params=params)
            else:
                tool_error = ToolExecutionError({"code": ErrorKind.INTERNAL.value, "message": str(error_val)}, command=cmd, params=params)
            future.set_exception(tool_error)
            return

        result = message.get("result", {})
        # Treat structured result with success=false as an error
        if isinstance(result, dict) and result.get("success") is False:
            err_text = result.get("message") or "Tool reported failure"
            logger.error(f"❌ Tool call {request_id} reported failure after {elapsed:.3f}s: {err_text}")
            future.set_exception(ToolExecutionError({"code": "plugin_reported_failure", "message": str(err_text), "details": {"result": result}}, command=cmd, params=params))
            return

        logger.info(f"✅ Tool call {request_id} completed successfully after {elapsed:.3f}s")
        future.set_result(result)

    def fail_all_pending(self, reason: str = "connection lost") -> int:
        """Reject every pending request with ConnectionLost and clear the table."""
        entries = list(self.pending_requests.items())
        self.pending_requests.clear()
        failed = 0
        for request_id, entry in entries:
            if entry.timer is not None:
                entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(ConnectionLost(
                    f"Connection to the host was lost before '{entry.command}' completed ({reason})",
                    {"command": entry.command, "id": request_id},
                ))
                failed += 1
        if failed:
            logger.warning(f"📡 Failed {failed} pending request(s): {reason}")
        return failed

    def cleanup_pending_requests(self) -> None:
        """Settle all pending requests (called on shutdown)."""
        self.fail_all_pending("shutdown")


# Global communicator instance (will be set by main.py)
_communicator: Optional[FigmaCommunicator] = None

def set_communicator(communicator: FigmaCommunicator) -> None:
    """Set the global communicator instance."""
    global _communicator
    _communicator = communicator

def get_communicator() -> FigmaCommunicator:
    """Get the global communicator instance."""
    if _communicator is None:
        raise RuntimeError("Communicator not initialized. Call set_communicator() first.")
    return _communicator

async def send_command(command: str, params: Dict[str, Any] = None, timeout: Optional[float] = None) -> Any:
    """
    Convenience function to send a command using the global communicator.

    Args:
        command: The command name
        params: Optional parameters
        timeout: Optional ceiling in seconds

    Returns:
        The result from the host
    """
    communicator = get_communicator()
    return await communicator.send_command(command, params, timeout=timeout)
