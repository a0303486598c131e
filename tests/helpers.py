"""Shared builders and fakes for the test-suite."""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from document_model import Document, DocumentNode, NodeType, TextNode, TextRun
from font_registry import FontName, FontRegistry
from host_session import HostSession, HostSettings

INTER = FontName(family="Inter", style="Regular")
INTER_BOLD = FontName(family="Inter", style="Bold")
ROBOTO = FontName(family="Roboto", style="Regular")
COMIC = FontName(family="Comic Sans", style="Regular")


class FakeWebSocket:
    """Records outbound frames and replays scripted inbound ones."""

    def __init__(self, incoming: Optional[Iterable[str]] = None):
        self.sent: List[str] = []
        self.incoming = list(incoming or [])
        self.closed = False

    async def send(self, raw: str) -> None:
        if self.closed:
            raise ConnectionError("socket closed")
        self.sent.append(raw)

    async def close(self) -> None:
        self.closed = True

    def messages(self) -> List[Dict[str, Any]]:
        return [json.loads(raw) for raw in self.sent]

    def of_type(self, msg_type: str) -> List[Dict[str, Any]]:
        return [message for message in self.messages() if message.get("type") == msg_type]

    def __aiter__(self):
        return self._replay()

    async def _replay(self):
        for raw in self.incoming:
            yield raw


def make_text(node_id: str, parts: Sequence[Tuple[str, FontName]], name: str = "", visible: bool = True) -> TextNode:
    characters = "".join(text for text, _ in parts)
    runs: List[TextRun] = []
    position = 0
    for text, font in parts:
        runs.append(TextRun(position, position + len(text), font))
        position += len(text)
    return TextNode(id=node_id, name=name, visible=visible, characters=characters, runs=runs)


def make_registry(*extra: FontName) -> FontRegistry:
    return FontRegistry([INTER, INTER_BOLD, ROBOTO, *extra], fallback=INTER)


def run_spans(node: TextNode) -> List[Tuple[int, int, FontName]]:
    return [(run.start, run.end, run.font) for run in node.runs]


def build_screen() -> Document:
    """A page holding one frame with visible, hidden and unnamed content.

    Screen (1:10)
      Title (1:11)              "Welcome back"
      Hidden group (1:12, invisible)
        Card (1:13) > Inner (1:14) > Secret (1:15)
      <unnamed frame> (1:16)
        Label (1:17)            "Sign " bold + "in" regular
        Caption (1:18)          "Forgot password?"
    """
    document = Document(name="Test file")
    page = document.current_page
    screen = document.append_child(page, DocumentNode(id="1:10", type=NodeType.FRAME, name="Screen"))
    document.append_child(screen, make_text("1:11", [("Welcome back", INTER)], name="Title"))

    hidden = document.append_child(screen, DocumentNode(id="1:12", type=NodeType.GROUP, name="Hidden group", visible=False))
    card = document.append_child(hidden, DocumentNode(id="1:13", type=NodeType.FRAME, name="Card"))
    inner = document.append_child(card, DocumentNode(id="1:14", type=NodeType.FRAME, name="Inner"))
    document.append_child(inner, make_text("1:15", [("Secret", INTER)], name="Secret"))

    unnamed = document.append_child(screen, DocumentNode(id="1:16", type=NodeType.FRAME, name=""))
    document.append_child(unnamed, make_text("1:17", [("Sign ", INTER_BOLD), ("in", INTER)], name="Label"))
    document.append_child(unnamed, make_text("1:18", [("Forgot password?", ROBOTO)], name="Caption"))
    return document


def quick_settings(**overrides: Any) -> HostSettings:
    values: Dict[str, Any] = {
        "batch_chunk_size": 2,
        "scan_chunk_size": 3,
        "inter_chunk_delay": 0.0,
        "scan_inter_chunk_delay": 0.0,
        "available_fonts": [INTER, INTER_BOLD, ROBOTO],
    }
    values.update(overrides)
    return HostSettings(**values)


async def open_session(document: Optional[Document] = None, **overrides: Any) -> Tuple[HostSession, FakeWebSocket]:
    websocket = FakeWebSocket()
    session = HostSession(quick_settings(**overrides), document=document or build_screen())
    await session.open(websocket.send)
    return session, websocket
