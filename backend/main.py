import json
import os
import sys
import signal
import logging
import asyncio
from typing import Dict, Any, List, Optional
import websockets
from dotenv import load_dotenv
from system_prompt import SYSTEM_PROMPT

# Load environment variables from .env file
load_dotenv()


# Import agents SDK - required, no fallback
from agents import Agent, Runner, ModelSettings
from agents.extensions.models.litellm_model import LitellmModel

from agents.tracing import set_tracing_disabled
set_tracing_disabled(True)


# Import tools and communicator
from figma_communicator import FigmaCommunicator, set_communicator
from figma_tools import TEXT_TOOLS

# Configure logging with INFO level (DEBUG was too verbose)
logging.basicConfig(
    level=logging.INFO,
    format='[%(asctime)s] [agent] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%dT%H:%M:%S'
)
logger = logging.getLogger(__name__)

# Message type constants to avoid stringly-typed conditionals
MESSAGE_TYPE_JOIN = "join"
MESSAGE_TYPE_PING = "ping"
MESSAGE_TYPE_PONG = "pong"
MESSAGE_TYPE_SYSTEM = "system"
MESSAGE_TYPE_PROGRESS_UPDATE = "progress_update"
MESSAGE_TYPE_COMMAND_PROGRESS = "command_progress"
MESSAGE_TYPE_USER_PROMPT = "user_prompt"
MESSAGE_TYPE_TOOL_RESPONSE = "tool_response"
MESSAGE_TYPE_ERROR = "error"
MESSAGE_TYPE_NEW_CHAT = "new_chat"


class FigmaAgent:
    def __init__(self, bridge_url: str, channel: str, model: str, api_key: str):
        self.bridge_url = bridge_url
        self.channel = channel
        self.websocket = None
        self.running = True
        self.reconnect_delay = 1  # Start with 1 second
        self.max_reconnect_delay = 30  # Max 30 seconds
        self._background_tasks: set[asyncio.Task] = set()  # Track streaming tasks for cancellation
        self._cancel_lock = asyncio.Lock()

        self.communicator: Optional[FigmaCommunicator] = None
        self.model_name: str = model
        # Running input list for the Runner; cleared on new_chat
        self.history: List[Dict[str, Any]] = []

        self.tool_names = [t.name for t in TEXT_TOOLS]
        logger.info(f"🧰 Tools enabled: {', '.join(self.tool_names)}")

        self.agent = Agent(
            name="FigmaTextRelay",
            instructions=SYSTEM_PROMPT,
            model=LitellmModel(model=model, api_key=api_key),
            model_settings=ModelSettings(include_usage=True),
            tools=list(TEXT_TOOLS),
        )

        try:
            self.max_turns = int(os.getenv("AGENT_MAX_TURNS", os.getenv("MAX_TURNS", "10")))
        except ValueError:
            self.max_turns = 10
        logger.info(f"🧮 Max turns configured: {self.max_turns}")

    async def _send_json(self, payload: Dict[str, Any]) -> None:
        """Safely send a JSON-serializable payload over the websocket if connected."""
        if not self.websocket:
            raise RuntimeError("WebSocket not connected")
        await self.websocket.send(json.dumps(payload, ensure_ascii=False))

    async def connect(self) -> bool:
        """Connect to the bridge and join as agent"""
        try:
            logger.info(f"Connecting to bridge at {self.bridge_url}")
            # Library-level pings keep the connection alive
            self.websocket = await websockets.connect(
                self.bridge_url, max_size=None, ping_interval=30, ping_timeout=10
            )

            join_message = {
                "type": MESSAGE_TYPE_JOIN,
                "role": "agent",
                "channel": self.channel
            }
            await self._send_json(join_message)
            logger.info(f"Sent join message for channel: {self.channel}")

            await self._send_json({"type": MESSAGE_TYPE_PING})
            logger.info("🏓 Sent ping message to test WebSocket bidirectional communication")

            # Initialize communicator for tool calls with configurable default timeout
            tool_timeout = float(os.getenv("FIGMA_TOOL_TIMEOUT", "30.0"))
            self.communicator = FigmaCommunicator(self.websocket, timeout=tool_timeout)
            set_communicator(self.communicator)
            logger.info(f"Initialized FigmaCommunicator for tool calls (default timeout: {tool_timeout}s)")
            try:
                await self._send_json({
                    "type": MESSAGE_TYPE_PROGRESS_UPDATE,
                    "message": {
                        "status": "tools_loaded",
                        "message": f"Loaded {len(self.tool_names)} tools",
                        "data": {"tools": self.tool_names}
                    }
                })
            except Exception as e:
                logger.warning(f"Failed to send tools_loaded progress update: {e}")

            # Reset reconnect delay on successful connection
            self.reconnect_delay = 1
            return True

        except Exception as e:
            logger.error(f"Failed to connect: {e}")
            return False

    async def handle_message(self, message: Dict[str, Any]) -> None:
        """Handle incoming messages from the bridge via a clean async dispatch."""
        msg_type = message.get("type")
        logger.debug(f"🔍 Raw message received - Type: '{msg_type}', Keys: {list(message.keys())}")

        handlers = {
            MESSAGE_TYPE_SYSTEM: self._handle_system,
            MESSAGE_TYPE_PONG: self._handle_pong,
            MESSAGE_TYPE_PROGRESS_UPDATE: self._handle_progress_update,
            MESSAGE_TYPE_COMMAND_PROGRESS: self._handle_command_progress,
            MESSAGE_TYPE_USER_PROMPT: self._handle_user_prompt,
            MESSAGE_TYPE_TOOL_RESPONSE: self._handle_tool_response,
            MESSAGE_TYPE_NEW_CHAT: self._handle_new_chat,
            MESSAGE_TYPE_ERROR: self._handle_bridge_error,
        }

        handler = handlers.get(msg_type, self._handle_unknown)
        await handler(message)

    async def _handle_system(self, message: Dict[str, Any]) -> None:
        sys_msg = message.get('message')
        logger.info(f"🔧 System message: {sys_msg}")
        if isinstance(sys_msg, str) and 'disconnected' in sys_msg.lower() and 'plugin' in sys_msg.lower():
            await self.cancel_active_operations(reason="plugin_disconnected")

    async def _handle_pong(self, _: Dict[str, Any]) -> None:
        logger.info("🏓 Received pong response - WebSocket bidirectional communication WORKING!")

    async def _handle_progress_update(self, message: Dict[str, Any]) -> None:
        logger.info(f"📈 Progress update received: {message.get('message') or {}}")

    async def _handle_command_progress(self, message: Dict[str, Any]) -> None:
        command_id = message.get("commandId")
        refreshed = self.communicator.record_activity(command_id) if self.communicator else False
        chunk = ""
        if message.get("currentChunk") is not None:
            chunk = f" chunk {message.get('currentChunk')}/{message.get('totalChunks')}"
        logger.info(
            f"📊 {message.get('commandType')} {message.get('status')} {message.get('progress')}%{chunk}"
            f" - {message.get('message')}" + ("" if refreshed else " (no pending request)")
        )

    async def _handle_user_prompt(self, message: Dict[str, Any]) -> None:
        prompt = message.get("prompt", "")
        logger.info(f"💬 Received user prompt: {prompt}")
        logger.info("🚀 Starting agent stream in background task")
        task = asyncio.create_task(self._run_stream(prompt))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _handle_tool_response(self, message: Dict[str, Any]) -> None:
        logger.info(f"📨 Received tool_response: {message.get('id', 'no-id')}")
        if self.communicator:
            self.communicator.handle_tool_response(message)
        else:
            logger.warning("Received tool_response but communicator not initialized")

    async def _handle_bridge_error(self, message: Dict[str, Any]) -> None:
        error_msg = message.get("message", "Unknown error")
        logger.error(f"Bridge error: {error_msg}")

    async def _handle_unknown(self, message: Dict[str, Any]) -> None:
        msg_type = message.get("type")
        logger.debug(f"Ignoring unknown message type: {msg_type}")

    async def _handle_new_chat(self, _: Dict[str, Any]) -> None:
        """Clear conversation memory for a fresh session."""
        await self.cancel_active_operations("new_chat")
        self.history = []
        logger.info("🧼 Cleared conversation history for new chat")

    async def _run_stream(self, user_prompt: str) -> None:
        try:
            await self.stream_agent_response(user_prompt)
        except asyncio.CancelledError:
            logger.info("🛑 Streaming task cancelled")
            raise
        except Exception as e:
            logger.error(f"❌ Agent stream failed: {e}")
            if self.websocket:
                await self._send_json({
                    "type": "agent_response",
                    "prompt": f"I'm having trouble processing your request right now. Error: {str(e)}",
                    "is_final": True
                })

    async def stream_agent_response(self, user_prompt: str) -> None:
        """Stream response using OpenAI Agents SDK"""
        input_items = self.history + [{"role": "user", "content": user_prompt or ""}]
        stream_result = Runner.run_streamed(
            self.agent,
            input=input_items,
            max_turns=self.max_turns,
        )

        full_response = ""
        async for event in stream_result.stream_events():
            # Handle text delta events for streaming
            if event.type == "raw_response_event" and hasattr(event, 'data') and hasattr(event.data, 'delta'):
                chunk_text = event.data.delta
                full_response += chunk_text
                if self.websocket:
                    await self._send_json({
                        "type": "agent_response_chunk",
                        "chunk": chunk_text,
                        "is_partial": True
                    })
            else:
                logger.debug(f"🧰 Stream event: {getattr(event, 'type', 'unknown')}")

        self.history = stream_result.to_input_list()

        if self.websocket:
            await self._send_json({
                "type": "agent_response",
                "prompt": full_response.strip(),
                "is_final": True
            })
            logger.info(f"✨ Sent final response with length: {len(full_response)} chars")

    async def cancel_active_operations(self, reason: str = "") -> None:
        """Cancel all in-flight streaming tasks and pending tool calls."""
        async with self._cancel_lock:
            if self._background_tasks:
                logger.info(f"🧹 Cancelling {len(self._background_tasks)} active streaming task(s) ({reason})")
                for task in list(self._background_tasks):
                    if not task.done():
                        task.cancel()
                # Allow cancelled tasks to process cancellation
                await asyncio.sleep(0)
            if self.communicator:
                self.communicator.fail_all_pending(reason or "cancelled")

    async def listen(self) -> None:
        """Listen for messages from the bridge"""
        logger.info("🎧 Starting to listen for messages from bridge")
        try:
            async for raw_message in self.websocket:
                if not raw_message:
                    logger.warning("📡 Received empty WebSocket message")
                    continue
                try:
                    message = json.loads(raw_message)
                except json.JSONDecodeError as e:
                    logger.error(f"❌ Failed to decode message: {e}, Raw: {raw_message}")
                    continue
                if not isinstance(message, dict):
                    logger.warning("📡 Ignoring non-object message")
                    continue
                await self.handle_message(message)
        except websockets.ConnectionClosed as e:
            logger.warning(f"📡 Bridge connection closed: {e}")
        finally:
            # Every pending call learns about the lost channel instead of waiting out its timer
            if self.communicator:
                self.communicator.fail_all_pending("connection lost")

    async def run_with_reconnect(self) -> None:
        """Main loop with reconnection logic"""
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

                # Exponential backoff up to max delay
                self.reconnect_delay = min(self.reconnect_delay * 2, self.max_reconnect_delay)

    def shutdown(self) -> None:
        """Graceful shutdown"""
        logger.info("Shutting down agent")
        self.running = False

        if self.communicator:
            self.communicator.cleanup_pending_requests()
            logger.info("Cleaned up pending tool calls")
        self.websocket = None


def get_config():
    """Get configuration from environment variables or CLI args"""
    bridge_url = os.getenv("BRIDGE_URL", "ws://localhost:3055")
    channel = os.getenv("FIGMA_CHANNEL")
    model = os.getenv("LITELLM_MODEL", "gpt-4.1-nano")
    api_key = os.getenv("LITELLM_API_KEY")

    # Parse CLI args for overrides
    for arg in sys.argv[1:]:
        if arg.startswith("--channel="):
            channel = arg.split("=", 1)[1]
        elif arg.startswith("--bridge-url="):
            bridge_url = arg.split("=", 1)[1]
        elif arg.startswith("--model="):
            model = arg.split("=", 1)[1]
        elif arg.startswith("--api-key="):
            api_key = arg.split("=", 1)[1]

    if not channel:
        channel = "figma-copilot-default"
        logger.info(f"No channel specified, using default: {channel}")

    if not api_key:
        logger.error("LITELLM_API_KEY environment variable is required")
        sys.exit(1)

    return bridge_url, channel, model, api_key


def main():
    bridge_url, channel, model, api_key = get_config()

    logger.info("Starting Figma text relay agent (Agents SDK, streaming)")
    logger.info(f"Bridge URL: {bridge_url}")
    logger.info(f"Channel: {channel}")
    logger.info(f"LiteLLM Model: {model}")

    agent = FigmaAgent(bridge_url, channel, model, api_key)

    # Handle shutdown signals
    def signal_handler(signum, frame):
        logger.info("Received shutdown signal")
        agent.shutdown()
        sys.exit(0)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        asyncio.run(agent.run_with_reconnect())
    except KeyboardInterrupt:
        logger.info("Agent interrupted")
    finally:
        agent.shutdown()


if __name__ == "__main__":
    main()
