"""
Figma Tools - OpenAI Agent Tools

This module defines the tools that the OpenAI Agent can use to inspect and
rewrite text in the document through the host via the figma_communicator.

Every tool validates its arguments, sends exactly one command, and returns
the host result as a JSON string. Structured host errors are re-raised as
ToolExecutionError so the agent can self-correct.
"""


import logging
import json
from typing import Optional, List, Any, Dict
from pydantic import BaseModel
from agents import function_tool
from command_errors import HostError
from figma_communicator import send_command, ToolExecutionError

logger = logging.getLogger(__name__)

TEXT_STRATEGIES = ("first", "prevail", "strict", "smart", "experimental")


# ============================================
# ============ INTERNAL HELPERS ==============
# ============================================

def _to_json_string(result: Any) -> str:
    """Convert host result to a JSON string for model reasoning."""
    if isinstance(result, str):
        # Assume host already returned a JSON/string payload
        return result
    try:
        return json.dumps(result, ensure_ascii=False)
    except (TypeError, ValueError):
        # Fallback: wrap as string field
        return json.dumps({"result": str(result)}, ensure_ascii=False)


def _check_strategy(strategy: Optional[str]) -> None:
    if strategy is not None and strategy not in TEXT_STRATEGIES:
        raise ToolExecutionError({
            "code": "validation",
            "message": f"Unknown text strategy '{strategy}'. Use one of: {', '.join(TEXT_STRATEGIES)}",
            "details": {"strategy": strategy},
        })


async def _call(command: str, params: Dict[str, Any]) -> str:
    """Send one command and normalize every failure into ToolExecutionError."""
    try:
        result = await send_command(command, params)
        return _to_json_string(result)
    except ToolExecutionError as te:
        logger.error(f"❌ Tool {command} failed: {getattr(te, 'message', str(te))}")
        # Re-raise structured tool error for agent self-correction
        raise
    except HostError as e:
        # Timeouts and connection loss keep their kind as the error code
        logger.error(f"❌ Tool {command} did not complete: {e.message}")
        raise ToolExecutionError(e.to_payload(), command=command, params=params)
    except Exception as e:
        logger.error(f"❌ Communication/system error in {command}: {str(e)}")
        raise ToolExecutionError({
            "code": "communication_error",
            "message": f"Failed to communicate with host: {str(e)}",
            "details": {"command": command},
        }, command=command, params=params)


# ============================================
# == PYDANTIC MODELS FOR COMPLEX PARAMETERS ==
# ============================================

class TextReplacement(BaseModel):
    node_id: str
    text: str


# ============================================
# ===============  TOOLS  ====================
# ============================================

# ============================================
# === Category 1: Scoping & Orientation ======
# ============================================

@function_tool
async def get_document_info() -> str:
    """Return a compact summary of the current page and the document's pages.

    Purpose & Use Case
    --------------------
    The starting point of nearly every task. It lists the top-level nodes on
    the current page so you can pick a scope for `scan_text_nodes`.

    Returns
    -------
    (str): JSON string:
        - `id`, `name`, `type`: the current page.
        - `children`: [{ "id", "name", "type" }] top-level nodes on the page.
        - `pages`: [{ "id", "name", "childCount" }].

    Raises (Errors & Pitfalls)
    --------------------------
    ToolExecutionError: `timeout`, `connection_lost`, `communication_error`.
    """
    logger.info("🧭 Getting document info")
    return await _call("get_document_info", {})


@function_tool
async def get_node_info(node_id: str) -> str:
    """Return a REST-like export of a single node, including its children.

    Parameters (Args)
    ------------------
    node_id (str): The node to export.

    Returns
    -------
    (str): JSON string with `id`, `name`, `type`, geometry, fills and, for TEXT
        nodes, `characters`, `fontSize`, `fontName` ("MIXED" for multi-font text)
        and `styleRuns`.

    Raises (Errors & Pitfalls)
    --------------------------
    ToolExecutionError: `validation` (missing id), `not_found`.
    """
    if not isinstance(node_id, str) or not node_id:
        raise ToolExecutionError({"code": "validation", "message": "'node_id' must be a non-empty string", "details": {"node_id": node_id}})
    logger.info(f"🔎 get_node_info: node_id={node_id}")
    return await _call("get_node_info", {"nodeId": node_id})


# ============================================
# === Category 2: Observation & Inspection ===
# ============================================

@function_tool
async def scan_text_nodes(node_id: str, use_chunking: bool = True, chunk_size: Optional[int] = None) -> str:
    """Find every visible TEXT node under a node.

    Purpose & Use Case
    --------------------
    Collects the text content of a whole subtree before rewriting it. Hidden
    nodes and everything beneath them are skipped. Large subtrees are scanned
    in chunks; the host streams progress while it works, which keeps the
    request alive.

    Parameters (Args)
    ------------------
    node_id (str): Root of the subtree to scan.
    use_chunking (bool, optional): Scan in chunks with progress updates. Defaults to True.
    chunk_size (int, optional): Nodes per chunk. Defaults to the host setting (10).

    Returns
    -------
    (str): JSON string:
        - `textNodes`: [{ "id", "name", "characters", "fontSize", "fontFamily",
          "fontStyle", "x", "y", "width", "height", "path", "depth" }].
          `path` is the ancestor chain joined with " > ".
        - `totalNodes`, `processedNodes`, `chunks`, `cancelled`, `commandId`.

    Raises (Errors & Pitfalls)
    --------------------------
    ToolExecutionError: `not_found` (bad node_id), `validation` (bad chunk_size),
        `timeout` if the host goes silent.

    Agent Guidance
    --------------
    When to Use: Before `set_multiple_text_contents`, to learn node ids and current text.
    """
    if not isinstance(node_id, str) or not node_id:
        raise ToolExecutionError({"code": "validation", "message": "'node_id' must be a non-empty string", "details": {"node_id": node_id}})
    if chunk_size is not None and (not isinstance(chunk_size, int) or chunk_size < 1):
        raise ToolExecutionError({"code": "validation", "message": "'chunk_size' must be a positive integer", "details": {"chunk_size": chunk_size}})

    logger.info(f"📚 scan_text_nodes: node_id={node_id} chunking={use_chunking}")
    params: Dict[str, Any] = {"nodeId": node_id, "useChunking": bool(use_chunking)}
    if chunk_size is not None:
        params["chunkSize"] = chunk_size
    return await _call("scan_text_nodes", params)


@function_tool
async def get_styled_text_segments(node_id: str) -> str:
    """List the font runs of a TEXT node.

    Returns
    -------
    (str): JSON string with `segments`: [{ "characters", "start", "end", "fontName" }].
        Use this to understand how a multi-font label is styled before
        choosing a replacement strategy.

    Raises (Errors & Pitfalls)
    --------------------------
    ToolExecutionError: `not_found`, `unsupported` (not a TEXT node).
    """
    if not isinstance(node_id, str) or not node_id:
        raise ToolExecutionError({"code": "validation", "message": "'node_id' must be a non-empty string", "details": {"node_id": node_id}})
    logger.info(f"🔤 get_styled_text_segments: node_id={node_id}")
    return await _call("get_styled_text_segments", {"nodeId": node_id, "property": "fontName"})


# ============================================
# ======== Category 3: Text Mutation =========
# ============================================

@function_tool
async def set_text_content(node_id: str, text: str, strategy: Optional[str] = None) -> str:
    """Replace the characters of a single TEXT node, keeping its styling where possible.

    Parameters (Args)
    ------------------
    node_id (str): Target TEXT node id.
    text (str): Replacement characters.
    strategy (str, optional): How to restyle a multi-font node:
        - `first`: the whole string takes the font of the first character (default).
        - `prevail`: the whole string takes the most common font.
        - `strict`: the original runs are re-applied by character index.
        - `smart` (alias `experimental`): fonts are re-applied at line and word boundaries.

    Returns
    -------
    (str): JSON string: { "id", "characters", "fontName", "strategy", "substitutions" }.
        `substitutions` lists fonts that could not be loaded and were replaced
        by the fallback font.

    Raises (Errors & Pitfalls)
    --------------------------
    ToolExecutionError: `not_found`, `unsupported` (not a TEXT node),
        `resource_load` (no usable font, fallback included), `validation`.
    """
    if not isinstance(node_id, str) or not node_id:
        raise ToolExecutionError({"code": "validation", "message": "'node_id' must be a non-empty string", "details": {"node_id": node_id}})
    if not isinstance(text, str):
        raise ToolExecutionError({"code": "validation", "message": "'text' must be a string", "details": {"text": text}})
    _check_strategy(strategy)

    logger.info(f"✏️ set_text_content: node_id={node_id}")
    params: Dict[str, Any] = {"nodeId": node_id, "text": text}
    if strategy:
        params["strategy"] = strategy
    return await _call("set_text_content", params)


@function_tool
async def set_multiple_text_contents(node_id: str, text: List[TextReplacement], strategy: Optional[str] = None) -> str:
    """Replace the text of many TEXT nodes in one chunked batch.

    Purpose & Use Case
    --------------------
    Bulk rewrites such as translating a screen. The host applies the
    replacements five at a time with a short pause between chunks and streams
    progress. One failing replacement never aborts the others.

    Parameters (Args)
    ------------------
    node_id (str): The scope node the replacements belong to (usually the one you scanned).
    text (List[TextReplacement]): [{ "node_id": str, "text": str }] replacements.
    strategy (str, optional): Same choices as `set_text_content`.

    Returns
    -------
    (str): JSON string: { "replacementsApplied", "replacementsFailed",
        "totalReplacements", "results": [{ "nodeId", "success", "error"?, "errorKind"? }],
        "completedInChunks", "cancelled", "commandId" }.

    Raises (Errors & Pitfalls)
    --------------------------
    ToolExecutionError:
        - `validation` / `not_found`: nothing was changed.
        - `plugin_reported_failure`: every replacement failed; inspect `details.result.results`.

    Agent Guidance
    --------------
    A partial failure is a success response: check `replacementsFailed` and retry only the failed ids.
    """
    if not isinstance(node_id, str) or not node_id:
        raise ToolExecutionError({"code": "validation", "message": "'node_id' must be a non-empty string", "details": {"node_id": node_id}})
    if not isinstance(text, list) or len(text) == 0:
        raise ToolExecutionError({"code": "validation", "message": "Provide a non-empty 'text' array", "details": {"text": text}})
    _check_strategy(strategy)

    replacements = [
        {"nodeId": item.node_id, "text": item.text} if isinstance(item, TextReplacement) else item
        for item in text
    ]
    logger.info(f"✏️ set_multiple_text_contents: node_id={node_id} replacements={len(replacements)}")
    params: Dict[str, Any] = {"nodeId": node_id, "text": replacements}
    if strategy:
        params["strategy"] = strategy
    return await _call("set_multiple_text_contents", params)


@function_tool
async def set_range_font_name(node_id: str, start: int, end: int, family: str, style: Optional[str] = None) -> str:
    """Apply a font to the character range [start, end) of a TEXT node.

    Raises (Errors & Pitfalls)
    --------------------------
    ToolExecutionError: `validation` (range outside the text), `resource_load`
        (font unavailable), `unsupported`, `not_found`.
    """
    if not isinstance(node_id, str) or not node_id:
        raise ToolExecutionError({"code": "validation", "message": "'node_id' must be a non-empty string", "details": {"node_id": node_id}})
    if not isinstance(family, str) or not family:
        raise ToolExecutionError({"code": "validation", "message": "'family' must be a non-empty string", "details": {"family": family}})

    logger.info(f"🅰️ set_range_font_name: node_id={node_id} [{start}, {end}) {family} {style or 'Regular'}")
    params: Dict[str, Any] = {"nodeId": node_id, "start": start, "end": end, "family": family}
    if style:
        params["style"] = style
    return await _call("set_range_font_name", params)


@function_tool
async def load_font_async(family: str, style: Optional[str] = None) -> str:
    """Make a font available to the host before using it."""
    if not isinstance(family, str) or not family:
        raise ToolExecutionError({"code": "validation", "message": "'family' must be a non-empty string", "details": {"family": family}})
    logger.info(f"🔠 load_font_async: {family} {style or 'Regular'}")
    params: Dict[str, Any] = {"family": family}
    if style:
        params["style"] = style
    return await _call("load_font_async", params)


@function_tool
async def cancel_command(command_id: str, reason: Optional[str] = None) -> str:
    """Ask the host to stop a running batch at its next chunk boundary.

    Parameters (Args)
    ------------------
    command_id (str): The `commandId` of the running batch.
    reason (str, optional): Recorded in the cancelled items' errors.

    Returns
    -------
    (str): JSON string: { "commandId", "cancelled": bool, "message" }. Chunks
        already started still finish; only the remaining items are skipped.
    """
    if not isinstance(command_id, str) or not command_id:
        raise ToolExecutionError({"code": "validation", "message": "'command_id' must be a non-empty string", "details": {"command_id": command_id}})
    logger.info(f"🛑 cancel_command: {command_id}")
    params: Dict[str, Any] = {"targetCommandId": command_id}
    if reason:
        params["reason"] = reason
    return await _call("cancel_command", params)


TEXT_TOOLS: List[Any] = [
    get_document_info,
    get_node_info,
    scan_text_nodes,
    get_styled_text_segments,
    set_text_content,
    set_multiple_text_contents,
    set_range_font_name,
    load_font_async,
    cancel_command,
]
