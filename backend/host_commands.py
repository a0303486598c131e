"""
Host Commands - the handlers behind the command channel.

Each handler takes the open HostSession and the raw params dict, validates
fail-fast, and either mutates the document directly or drives the Tree Walker
and the Chunked Batch Processor for operations that touch many nodes.
"""

import asyncio
import copy
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from functools import partial
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from command_errors import HostError, NotFoundError, ValidationError
from command_router import CommandRouter
from document_model import Capability, DocumentNode, TextNode, require_capability
from font_registry import MIXED, FontName
from progress import ProgressStatus
from text_mutation import TextStrategy, set_characters
from tree_walker import WalkEntry, format_path, walk

if TYPE_CHECKING:
    from host_session import HostSession

logger = logging.getLogger(__name__)

HIGHLIGHT_FILL = {"type": "SOLID", "color": {"r": 1, "g": 0.5, "b": 0}, "opacity": 0.3}
STYLED_SEGMENT_PROPERTIES = ("fontName",)


class TextReplacement(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    node_id: str = Field(alias="nodeId", min_length=1)
    text: str


def generate_command_id() -> str:
    return f"cmd_{uuid.uuid4().hex}"


def _font_dict(font: Any) -> Any:
    return "MIXED" if font is MIXED else font.model_dump()


def _require_text_node(session: "HostSession", node_id: Any) -> TextNode:
    node = session.document.require_node(node_id)
    require_capability(node, Capability.TEXT)
    return node


def _fail(session: "HostSession", command_id: str, command_type: str, error: HostError) -> HostError:
    """Report a fail-fast error on the progress stream, then hand it back for raising."""
    session.emitter.emit(command_id, command_type, ProgressStatus.ERROR, 0, 0, 0, error.message,
                         {"error": error.message})
    return error


@dataclass
class HighlightHold:
    original_fills: List[Dict[str, Any]]
    holders: int = 0


@asynccontextmanager
async def _highlighted(session: "HostSession", node: DocumentNode, seconds: float) -> AsyncIterator[None]:
    """Flash a highlight fill on ``node`` around a mutation, then restore its fills.

    Overlapping holders of one node share a single saved copy of its fills, which
    is put back when the last of them exits.
    """
    if seconds <= 0 or not node.can(Capability.FILLS):
        yield
        return
    hold = session.highlights.get(node.id)
    if hold is None:
        hold = session.highlights[node.id] = HighlightHold(copy.deepcopy(node.fills))
        node.fills = [dict(HIGHLIGHT_FILL)]
    hold.holders += 1
    try:
        yield
        await asyncio.sleep(seconds)
    finally:
        hold.holders -= 1
        if hold.holders == 0:
            del session.highlights[node.id]
            node.fills = hold.original_fills


def _text_node_summary(entry: WalkEntry) -> Dict[str, Any]:
    node = entry.node
    font = node.font_name
    return {
        "id": node.id,
        "name": node.name or "Text",
        "type": node.type.value,
        "characters": node.characters,
        "fontSize": node.font_size,
        "fontFamily": "" if font is MIXED else font.family,
        "fontStyle": "" if font is MIXED else font.style,
        "x": node.x,
        "y": node.y,
        "width": node.width,
        "height": node.height,
        "path": format_path(entry.path),
        "depth": entry.depth,
    }


# ============================================
# =========== Document inspection ============
# ============================================

async def get_document_info(session: "HostSession", params: Dict[str, Any]) -> Dict[str, Any]:
    document = session.document
    page = document.current_page
    return {
        "name": page.name,
        "id": page.id,
        "type": page.type.value,
        "children": [{"id": c.id, "name": c.name, "type": c.type.value} for c in page.children],
        "currentPage": {"id": page.id, "name": page.name, "childCount": len(page.children)},
        "pages": [{"id": p.id, "name": p.name, "childCount": len(p.children)} for p in document.pages],
    }


async def get_node_info(session: "HostSession", params: Dict[str, Any]) -> Dict[str, Any]:
    node = session.document.require_node(params.get("nodeId"))
    return session.document.to_dict(node)


async def get_styled_text_segments(session: "HostSession", params: Dict[str, Any]) -> Dict[str, Any]:
    node_id = params.get("nodeId")
    prop = params.get("property")
    if not node_id or not prop:
        raise ValidationError("Missing nodeId or property")
    if prop not in STYLED_SEGMENT_PROPERTIES:
        raise ValidationError(f"Invalid property. Must be one of: {', '.join(STYLED_SEGMENT_PROPERTIES)}")
    node = _require_text_node(session, node_id)
    return {"id": node.id, "name": node.name, "property": prop, "segments": node.styled_segments()}


# ============================================
# ============== Text scanning ===============
# ============================================

async def scan_text_nodes(session: "HostSession", params: Dict[str, Any]) -> Dict[str, Any]:
    command_type = "scan_text_nodes"
    node_id = params.get("nodeId")
    command_id = params.get("commandId") or generate_command_id()
    use_chunking = params.get("useChunking", True)
    chunk_size = params.get("chunkSize") or session.settings.scan_chunk_size

    node = session.document.get_node_by_id(node_id) if isinstance(node_id, str) else None
    if node is None:
        raise _fail(session, command_id, command_type, NotFoundError(f"Node with ID {node_id} not found"))
    if not isinstance(chunk_size, int) or chunk_size < 1:
        raise _fail(session, command_id, command_type,
                    ValidationError(f"chunkSize must be a positive integer, got {chunk_size!r}"))

    if not use_chunking:
        session.emitter.emit(command_id, command_type, ProgressStatus.STARTED, 0, 1, 0,
                             f'Starting scan of node "{node.name or node_id}" without chunking')
        text_nodes = [_text_node_summary(entry) for entry in walk(node) if isinstance(entry.node, TextNode)]
        session.emitter.emit(command_id, command_type, ProgressStatus.COMPLETED, 100,
                             len(text_nodes), len(text_nodes),
                             f"Scan complete. Found {len(text_nodes)} text nodes.", {"textNodes": text_nodes})
        return {
            "success": True,
            "message": f"Scanned {len(text_nodes)} text nodes.",
            "count": len(text_nodes),
            "textNodes": text_nodes,
            "commandId": command_id,
        }

    # Collection phase: nothing is touched until every node is planned
    entries = list(walk(node))
    highlight = session.settings.highlight_seconds

    async def scan_entry(entry: WalkEntry) -> Optional[Dict[str, Any]]:
        if not isinstance(entry.node, TextNode):
            return None
        async with _highlighted(session, entry.node, highlight):
            return _text_node_summary(entry)

    token = session.begin_batch(command_id)
    try:
        report = await session.scan_processor(chunk_size).run(
            command_id, command_type, entries, scan_entry,
            token=token,
            started_message=f'Starting chunked scan of node "{node.name or node_id}"',
            noun="nodes",
            describe=lambda entry: {"nodeId": entry.node.id},
        )
    finally:
        session.end_batch(command_id)

    text_nodes = [result.value for result in report.results if result.success and result.value]
    return {
        "success": True,
        "message": f"Chunked scan complete. Found {len(text_nodes)} text nodes.",
        "totalNodes": len(text_nodes),
        "processedNodes": report.processed,
        "chunks": report.chunks,
        "cancelled": report.cancelled,
        "textNodes": text_nodes,
        "commandId": command_id,
    }


# ============================================
# ============ Text replacement ==============
# ============================================

async def set_text_content(session: "HostSession", params: Dict[str, Any]) -> Dict[str, Any]:
    node_id = params.get("nodeId")
    text = params.get("text")
    if not node_id:
        raise ValidationError("Missing nodeId parameter")
    if text is None:
        raise ValidationError("Missing text parameter")
    node = _require_text_node(session, node_id)
    strategy = params.get("strategy") or session.settings.default_text_strategy

    mutation = await set_characters(node, text, session.fonts, strategy, session.settings.fallback_font)
    return {
        "id": node.id,
        "name": node.name,
        "characters": node.characters,
        "fontName": _font_dict(node.font_name),
        "strategy": mutation.strategy.value,
        "substitutions": [s.as_dict() for s in mutation.substitutions],
    }


def _describe_replacement(item: Any) -> Dict[str, Any]:
    node_id = item.get("nodeId") if isinstance(item, dict) else None
    return {"nodeId": node_id or "unknown"}


async def set_multiple_text_contents(session: "HostSession", params: Dict[str, Any]) -> Dict[str, Any]:
    command_type = "set_multiple_text_contents"
    node_id = params.get("nodeId")
    replacements = params.get("text")
    command_id = params.get("commandId") or generate_command_id()

    if not node_id or not isinstance(replacements, list):
        raise _fail(session, command_id, command_type,
                    ValidationError("Missing required parameters: nodeId and text array"))
    try:
        strategy = TextStrategy.parse(params.get("strategy") or session.settings.default_text_strategy)
    except ValidationError as e:
        raise _fail(session, command_id, command_type, e)
    if session.document.get_node_by_id(node_id) is None:
        raise _fail(session, command_id, command_type, NotFoundError(f"Node not found with ID: {node_id}"))

    fonts = session.fonts
    fallback = session.settings.fallback_font
    highlight = session.settings.highlight_seconds

    async def replace_one(item: Any) -> Dict[str, Any]:
        try:
            replacement = TextReplacement.model_validate(item)
        except PydanticValidationError:
            raise ValidationError("Missing nodeId or text in replacement entry")
        node = _require_text_node(session, replacement.node_id)
        original_text = node.characters
        async with _highlighted(session, node, highlight):
            mutation = await set_characters(node, replacement.text, fonts, strategy, fallback)
        return {
            "nodeId": node.id,
            "originalText": original_text,
            "translatedText": replacement.text,
            "substitutions": [s.as_dict() for s in mutation.substitutions],
        }

    logger.info(f"✏️ Starting text replacement under {node_id} with {len(replacements)} replacements")
    token = session.begin_batch(command_id)
    try:
        report = await session.batch_processor.run(
            command_id, command_type, replacements, replace_one,
            describe=_describe_replacement,
            token=token,
            started_message=f"Starting text replacement for {len(replacements)} nodes",
            noun="replacements",
        )
    finally:
        session.end_batch(command_id)

    return {
        "success": report.success,
        "message": f"Text replacement complete: {report.succeeded} successful, {report.failed} failed",
        "nodeId": node_id,
        "replacementsApplied": report.succeeded,
        "replacementsFailed": report.failed,
        "totalReplacements": report.total_requested,
        "results": [result.as_dict() for result in report.results],
        "completedInChunks": report.chunks,
        "cancelled": report.cancelled,
        "commandId": command_id,
    }


# ============================================
# ============ Fonts and ranges ==============
# ============================================

async def set_range_font_name(session: "HostSession", params: Dict[str, Any]) -> Dict[str, Any]:
    node_id = params.get("nodeId")
    family = params.get("family")
    if not node_id or not family:
        raise ValidationError("Missing nodeId or family")
    node = _require_text_node(session, node_id)
    start, end = params.get("start"), params.get("end")
    node.validate_range(start, end)

    font = FontName(family=family, style=params.get("style") or "Regular")
    await session.fonts.load(font)
    node.set_range_font_name(start, end, font, session.fonts)
    return {"id": node.id, "name": node.name, "start": start, "end": end, "fontName": font.model_dump()}


async def load_font_async(session: "HostSession", params: Dict[str, Any]) -> Dict[str, Any]:
    family = params.get("family")
    if not family:
        raise ValidationError("Missing font family")
    font = FontName(family=family, style=params.get("style") or "Regular")
    await session.fonts.load(font)
    return {
        "success": True,
        "family": font.family,
        "style": font.style,
        "message": f"Successfully loaded {font.family} {font.style}",
    }


async def cancel_command(session: "HostSession", params: Dict[str, Any]) -> Dict[str, Any]:
    target = params.get("targetCommandId")
    if not target:
        raise ValidationError("Missing targetCommandId parameter")
    cancelled = session.cancel(target, params.get("reason") or "cancelled by caller")
    message = (f"Cancellation requested for {target}; it stops at the next chunk boundary"
               if cancelled else f"No running batch with ID {target}")
    return {"commandId": target, "cancelled": cancelled, "message": message}


HOST_COMMANDS = {
    "get_document_info": get_document_info,
    "get_node_info": get_node_info,
    "get_styled_text_segments": get_styled_text_segments,
    "scan_text_nodes": scan_text_nodes,
    "set_text_content": set_text_content,
    "set_multiple_text_contents": set_multiple_text_contents,
    "set_range_font_name": set_range_font_name,
    "load_font_async": load_font_async,
    "cancel_command": cancel_command,
}


def register_host_commands(router: CommandRouter, session: "HostSession") -> List[str]:
    for name, handler in HOST_COMMANDS.items():
        router.register(name, partial(handler, session))
    return list(HOST_COMMANDS)
