"""
Host Executor - runs the document host on the bridge channel.

Joins the bridge as the ``plugin`` role, executes every inbound ``tool_call``
through the HostSession and answers with a ``tool_response``. Commands run as
background tasks on the one event loop, so a cancel request or a cheap read
can be serviced during the pauses of a long batch.
"""

import asyncio
import json
import logging
import signal
import sys
from typing import Any, Dict, Optional

import websockets

from host_session import MESSAGE_TYPE_TOOL_CALL, HostSession, HostSettings

logging.basicConfig(
    level=logging.INFO,
    format='[%(asctime)s] [host] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%dT%H:%M:%S'
)
logger = logging.getLogger(__name__)

MESSAGE_TYPE_JOIN = "join"
MESSAGE_TYPE_PING = "ping"
MESSAGE_TYPE_PONG = "pong"
MESSAGE_TYPE_SYSTEM = "system"
MESSAGE_TYPE_ERROR = "error"


class HostExecutor:
    def __init__(self, settings: HostSettings, session: Optional[HostSession] = None):
        self.settings = settings
        self.session = session or HostSession(settings)
        self.websocket = None
        self.running = True
        self.reconnect_delay = 1  # Start with 1 second
        self.max_reconnect_delay = 30  # Max 30 seconds
        self._command_tasks: set[asyncio.Task] = set()

    async def _send_json(self, payload: Dict[str, Any]) -> None:
        if not self.websocket:
            raise RuntimeError("WebSocket not connected")
        await self.websocket.send(json.dumps(payload, ensure_ascii=False))

    async def _send_raw(self, raw: str) -> None:
        if not self.websocket:
            raise RuntimeError("WebSocket not connected")
        await self.websocket.send(raw)

    async def connect(self) -> bool:
        """Connect to the bridge and join as the plugin side of the channel."""
        try:
            logger.info(f"Connecting to bridge at {self.settings.bridge_url}")
            self.websocket = await websockets.connect(
                self.settings.bridge_url, max_size=None, ping_interval=30, ping_timeout=10
            )
            await self._send_json({"type": MESSAGE_TYPE_JOIN, "role": "plugin", "channel": self.settings.channel})
            logger.info(f"Sent join message for channel: {self.settings.channel}")
            await self.session.open(self._send_raw)
            self.reconnect_delay = 1
            return True
        except Exception as e:
            logger.error(f"Failed to connect: {e}")
            return False

    async def handle_message(self, message: Dict[str, Any]) -> None:
        msg_type = message.get("type")
        if msg_type == MESSAGE_TYPE_TOOL_CALL:
            task = asyncio.create_task(self._run_command(message))
            self._command_tasks.add(task)
            task.add_done_callback(self._command_tasks.discard)
        elif msg_type == MESSAGE_TYPE_PING:
            await self._send_json({"type": MESSAGE_TYPE_PONG})
        elif msg_type == MESSAGE_TYPE_SYSTEM:
            logger.info(f"🔧 System message: {message.get('message')}")
        elif msg_type == MESSAGE_TYPE_ERROR:
            logger.error(f"Bridge error: {message.get('message', 'Unknown error')}")
        else:
            logger.debug(f"Ignoring message type: {msg_type}")

    async def _run_command(self, message: Dict[str, Any]) -> None:
        response = await self.session.execute(message)
        # The terminal progress event must reach the wire before the response settles the caller
        await self.session.emitter.flush()
        try:
            await self._send_json(response)
        except Exception as e:
            # The caller's correlator times out on its own; nothing to retry here
            logger.error(f"❌ Failed to deliver response for {message.get('id')}: {e}")

    async def listen(self) -> None:
        logger.info("🎧 Listening for tool calls from bridge")
        try:
            async for raw_message in self.websocket:
                if not raw_message:
                    continue
                try:
                    message = json.loads(raw_message)
                except json.JSONDecodeError as e:
                    logger.error(f"❌ Failed to decode message: {e}")
                    continue
                if not isinstance(message, dict):
                    logger.warning("📡 Ignoring non-object message")
                    continue
                await self.handle_message(message)
        except websockets.ConnectionClosed as e:
            logger.warning(f"📡 Bridge connection closed: {e}")
        finally:
            await self._drain_commands()

    async def _drain_commands(self) -> None:
        # In-flight batches cannot be preempted; let the current chunk finish, then stop at its boundary
        if not self._command_tasks:
            return
        self.session.cancel_all("connection lost")
        await asyncio.gather(*self._command_tasks, return_exceptions=True)

    async def run_with_reconnect(self) -> None:
        while self.running:
            try:
                if await self.connect():
                    logger.info("🌉 Connected to bridge successfully")
                    await self.listen()
                else:
                    logger.warning("Failed to connect to bridge")
            except Exception as e:
                logger.error(f"Unexpected error: {e}")

            if self.running:
                logger.info(f"Reconnecting in {self.reconnect_delay} seconds...")
                await asyncio.sleep(self.reconnect_delay)
                self.reconnect_delay = min(self.reconnect_delay * 2, self.max_reconnect_delay)

    async def shutdown(self) -> None:
        logger.info("Shutting down host executor")
        self.running = False
        await self._drain_commands()
        await self.session.close()
        if self.websocket is not None:
            await self.websocket.close()
            self.websocket = None


def main():
    settings = HostSettings.from_env()
    logger.info("Starting document host executor")
    logger.info(f"Bridge URL: {settings.bridge_url}")
    logger.info(f"Channel: {settings.channel}")
    logger.info(f"Document: {settings.document_path or '(empty)'}")

    executor = HostExecutor(settings)

    async def runner():
        loop = asyncio.get_running_loop()
        stop = asyncio.Event()
        for signum in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(signum, stop.set)
            except NotImplementedError:
                pass
        main_task = asyncio.create_task(executor.run_with_reconnect())
        await stop.wait()
        logger.info("Received shutdown signal")
        main_task.cancel()
        await asyncio.gather(main_task, return_exceptions=True)
        await executor.shutdown()

    try:
        asyncio.run(runner())
    except KeyboardInterrupt:
        logger.info("Host interrupted")
        sys.exit(0)


if __name__ == "__main__":
    main()
