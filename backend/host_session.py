"""
Host Session - explicit lifecycle for everything the host executor owns.

A session holds the document, the font registry, the progress emitter, the
command router and the cancellation tokens of in-flight batches. It is opened
against a channel ``send`` coroutine and closed explicitly; handlers receive
it by reference instead of reading process-wide globals.
"""

import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from dotenv import load_dotenv
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from batch_processor import CancellationToken, ChunkedBatchProcessor
from command_errors import ErrorKind, HostError, ValidationError
from command_router import CommandRouter
from document_model import Document
from font_registry import DEFAULT_FALLBACK_FONT, FontName, FontRegistry, parse_font_list, parse_font_spec
from host_commands import HighlightHold, register_host_commands
from progress import ProgressEmitter

logger = logging.getLogger(__name__)

MESSAGE_TYPE_TOOL_CALL = "tool_call"
MESSAGE_TYPE_TOOL_RESPONSE = "tool_response"

DEFAULT_AVAILABLE_FONTS = "Inter:Regular,Inter:Medium,Inter:Bold,Roboto:Regular,Roboto:Bold"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ Ignoring non-integer {name}={raw!r}, using {default}")
        return default


def _env_ms(name: str, default_ms: int) -> float:
    return max(0, _env_int(name, default_ms)) / 1000.0


@dataclass
class HostSettings:
    bridge_url: str = "ws://localhost:3055"
    channel: str = "figma-copilot-default"
    document_path: Optional[str] = None
    save_on_close: bool = False
    batch_chunk_size: int = 5
    scan_chunk_size: int = 10
    # Pauses between chunks are tuned by observation, not derived; keep them configurable
    inter_chunk_delay: float = 1.0
    scan_inter_chunk_delay: float = 0.05
    highlight_seconds: float = 0.0
    fallback_font: FontName = DEFAULT_FALLBACK_FONT
    available_fonts: List[FontName] = field(default_factory=lambda: parse_font_list(DEFAULT_AVAILABLE_FONTS))
    default_text_strategy: str = "first"

    @classmethod
    def from_env(cls, argv: Optional[Sequence[str]] = None) -> "HostSettings":
        """Read settings from the environment (and .env), then apply --key=value CLI overrides."""
        load_dotenv()
        settings = cls(
            bridge_url=os.getenv("BRIDGE_URL", "ws://localhost:3055"),
            channel=os.getenv("FIGMA_CHANNEL") or "figma-copilot-default",
            document_path=os.getenv("HOST_DOCUMENT_PATH") or None,
            save_on_close=os.getenv("HOST_SAVE_ON_CLOSE", "").lower() in ("1", "true", "yes"),
            batch_chunk_size=_env_int("BATCH_CHUNK_SIZE", 5),
            scan_chunk_size=_env_int("SCAN_CHUNK_SIZE", 10),
            inter_chunk_delay=_env_ms("INTER_CHUNK_DELAY_MS", 1000),
            scan_inter_chunk_delay=_env_ms("SCAN_INTER_CHUNK_DELAY_MS", 50),
            highlight_seconds=_env_ms("HIGHLIGHT_MS", 0),
            fallback_font=parse_font_spec(os.getenv("FALLBACK_FONT", "Inter:Regular")),
            available_fonts=parse_font_list(os.getenv("AVAILABLE_FONTS", DEFAULT_AVAILABLE_FONTS)),
            default_text_strategy=os.getenv("TEXT_STRATEGY", "first"),
        )

        for arg in (sys.argv[1:] if argv is None else argv):
            if arg.startswith("--channel="):
                settings.channel = arg.split("=", 1)[1]
            elif arg.startswith("--bridge-url="):
                settings.bridge_url = arg.split("=", 1)[1]
            elif arg.startswith("--document="):
                settings.document_path = arg.split("=", 1)[1]
            elif arg.startswith("--strategy="):
                settings.default_text_strategy = arg.split("=", 1)[1]
            elif arg == "--save-on-close":
                settings.save_on_close = True
        return settings


class CommandRequest(BaseModel):
    id: str = Field(min_length=1)
    command: str = Field(min_length=1)
    params: Dict[str, Any] = Field(default_factory=dict)


SendFn = Callable[[str], Awaitable[None]]


class HostSession:
    def __init__(self, settings: Optional[HostSettings] = None, document: Optional[Document] = None,
                 fonts: Optional[FontRegistry] = None):
        self.settings = settings or HostSettings()
        self.document = document
        self.fonts = fonts or FontRegistry(self.settings.available_fonts, self.settings.fallback_font)
        self.emitter = ProgressEmitter()
        self.batch_processor = ChunkedBatchProcessor(
            self.emitter,
            chunk_size=self.settings.batch_chunk_size,
            inter_chunk_delay=self.settings.inter_chunk_delay,
        )
        self.router = CommandRouter()
        register_host_commands(self.router, self)
        self._tokens: Dict[str, CancellationToken] = {}
        self.highlights: Dict[str, HighlightHold] = {}
        self.is_open = False

    async def open(self, send: Optional[SendFn] = None) -> "HostSession":
        if self.is_open:
            return self
        if self.document is None:
            if self.settings.document_path and os.path.exists(self.settings.document_path):
                self.document = Document.load(self.settings.document_path)
            else:
                self.document = Document()
                logger.info("📄 Started with an empty document")
        self.emitter.attach(send)
        self.emitter.start()
        self.is_open = True
        logger.info(f"🟢 Host session open ({len(self.router.commands())} commands)")
        return self

    async def close(self) -> None:
        if not self.is_open:
            return
        self.cancel_all("session closed")
        await self.emitter.stop()
        if self.settings.save_on_close and self.settings.document_path and self.document is not None:
            self.document.save(self.settings.document_path)
        self.is_open = False
        logger.info("🔴 Host session closed")

    async def __aenter__(self) -> "HostSession":
        return await self.open()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def scan_processor(self, chunk_size: int) -> ChunkedBatchProcessor:
        return ChunkedBatchProcessor(self.emitter, chunk_size=chunk_size,
                                     inter_chunk_delay=self.settings.scan_inter_chunk_delay)

    # --- cooperative cancellation ------------------------------------------

    def begin_batch(self, command_id: str) -> CancellationToken:
        token = CancellationToken()
        self._tokens[command_id] = token
        return token

    def end_batch(self, command_id: str) -> None:
        self._tokens.pop(command_id, None)

    def cancel_all(self, reason: str) -> int:
        return sum(1 for command_id in list(self._tokens) if self.cancel(command_id, reason))

    def cancel(self, command_id: str, reason: str = "cancelled") -> bool:
        token = self._tokens.get(command_id)
        if token is None:
            return False
        token.cancel(reason)
        logger.info(f"🛑 Cancellation requested for {command_id} ({reason})")
        return True

    # --- envelopes -----------------------------------------------------------

    async def execute(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """Run one command envelope and build its response envelope."""
        request_id = message.get("id") if isinstance(message, dict) else None
        command = message.get("command") if isinstance(message, dict) else None
        try:
            if not self.is_open:
                raise HostError("Host session is not open")
            try:
                request = CommandRequest.model_validate(message)
            except PydanticValidationError:
                raise ValidationError("Command envelope must carry a non-empty id and command")
            logger.info(f"🛠️ Executing {request.command} (ID: {request.id})")
            try:
                result = await self.router.dispatch(request.command, request.params)
            finally:
                command_id = request.params.get("commandId")
                if isinstance(command_id, str):
                    self.emitter.release(command_id)
            return {"type": MESSAGE_TYPE_TOOL_RESPONSE, "id": request_id, "result": result}
        except HostError as e:
            logger.error(f"❌ Command {command} (ID: {request_id}) failed: {e.message}")
            return _error_envelope(request_id, e.message, e.to_payload())
        except Exception as e:
            logger.exception(f"💥 Unexpected failure in {command} (ID: {request_id})")
            text = f"Error executing {command}: {e}"
            return _error_envelope(request_id, text, {"code": ErrorKind.INTERNAL.value, "message": text, "details": {}})


def _error_envelope(request_id: Optional[str], text: str, structured: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": MESSAGE_TYPE_TOOL_RESPONSE, "id": request_id, "error": text, "error_structured": structured}
