"""
Document Model - the tree-shaped vector document owned by the host executor.

Nodes form a strict tree: a parent exclusively owns its children and removing
a node destroys its whole subtree. What a node can do is decided by a closed
capability table keyed on its type, checked before any command touches it.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Union

from command_errors import NotFoundError, ResourceLoadError, UnsupportedOperationError, ValidationError
from font_registry import DEFAULT_FALLBACK_FONT, MIXED, FontName, FontRegistry

logger = logging.getLogger(__name__)


class NodeType(str, Enum):
    DOCUMENT = "DOCUMENT"
    PAGE = "PAGE"
    FRAME = "FRAME"
    GROUP = "GROUP"
    SECTION = "SECTION"
    COMPONENT = "COMPONENT"
    INSTANCE = "INSTANCE"
    RECTANGLE = "RECTANGLE"
    ELLIPSE = "ELLIPSE"
    VECTOR = "VECTOR"
    LINE = "LINE"
    TEXT = "TEXT"


class Capability(str, Enum):
    CHILDREN = "children"
    TEXT = "text"
    GEOMETRY = "geometry"
    FILLS = "fills"


_CONTAINER = frozenset({Capability.CHILDREN, Capability.GEOMETRY, Capability.FILLS})
_SHAPE = frozenset({Capability.GEOMETRY, Capability.FILLS})

CAPABILITIES: Dict[NodeType, FrozenSet[Capability]] = {
    NodeType.DOCUMENT: frozenset({Capability.CHILDREN}),
    NodeType.PAGE: frozenset({Capability.CHILDREN}),
    NodeType.FRAME: _CONTAINER,
    NodeType.GROUP: frozenset({Capability.CHILDREN, Capability.GEOMETRY}),
    NodeType.SECTION: _CONTAINER,
    NodeType.COMPONENT: _CONTAINER,
    NodeType.INSTANCE: _CONTAINER,
    NodeType.RECTANGLE: _SHAPE,
    NodeType.ELLIPSE: _SHAPE,
    NodeType.VECTOR: _SHAPE,
    NodeType.LINE: frozenset({Capability.GEOMETRY}),
    NodeType.TEXT: frozenset({Capability.TEXT, Capability.GEOMETRY, Capability.FILLS}),
}

_CAPABILITY_LABELS = {
    Capability.CHILDREN: "a container node",
    Capability.TEXT: "a text node",
    Capability.GEOMETRY: "a positioned node",
    Capability.FILLS: "a node with fills",
}


def has_capability(node_type: NodeType, capability: Capability) -> bool:
    return capability in CAPABILITIES.get(node_type, frozenset())


def require_capability(node: "DocumentNode", capability: Capability) -> None:
    if not has_capability(node.type, capability):
        raise UnsupportedOperationError(
            f"Node is not {_CAPABILITY_LABELS[capability]}: {node.id} (type: {node.type.value})",
            {"node_id": node.id, "type": node.type.value, "capability": capability.value},
        )


@dataclass(eq=False)
class DocumentNode:
    id: str
    type: NodeType = NodeType.FRAME
    name: str = ""
    visible: bool = True
    x: float = 0.0
    y: float = 0.0
    width: float = 100.0
    height: float = 100.0
    fills: List[Dict[str, Any]] = field(default_factory=list)
    children: List["DocumentNode"] = field(default_factory=list, repr=False)
    parent: Optional["DocumentNode"] = field(default=None, repr=False)

    @property
    def display_name(self) -> str:
        return self.name or f"Unnamed-{self.type.value}"

    def can(self, capability: Capability) -> bool:
        return has_capability(self.type, capability)

    def iter_subtree(self) -> Iterator["DocumentNode"]:
        yield self
        for child in self.children:
            yield from child.iter_subtree()

    def summary(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "type": self.type.value, "visible": self.visible}


@dataclass(eq=False)
class TextRun:
    start: int
    end: int
    font: FontName

    def as_dict(self) -> Dict[str, Any]:
        return {"start": self.start, "end": self.end, "fontName": self.font.model_dump()}


@dataclass(eq=False)
class TextNode(DocumentNode):
    """A text leaf: a character string plus font runs that partition it."""

    type: NodeType = NodeType.TEXT
    characters: str = ""
    runs: List[TextRun] = field(default_factory=list)
    font_size: float = 12.0

    def __post_init__(self) -> None:
        if not self.runs:
            self.runs = [TextRun(0, len(self.characters), DEFAULT_FALLBACK_FONT)]
        self._normalize()
        if not self.runs_are_valid():
            raise ValidationError(f"Style runs of text node {self.id} do not cover its characters exactly")

    # --- reading -----------------------------------------------------------

    @property
    def font_name(self) -> Union[FontName, Any]:
        """The node's font, or MIXED when more than one font is in use."""
        fonts = {run.font for run in self.runs}
        if len(fonts) == 1:
            return self.runs[0].font
        return MIXED

    def font_at(self, index: int) -> FontName:
        for run in self.runs:
            if run.start <= index < run.end:
                return run.font
        return self.runs[-1].font

    def character_fonts(self) -> List[FontName]:
        fonts: List[FontName] = []
        for run in self.runs:
            fonts.extend([run.font] * (run.end - run.start))
        return fonts

    def get_range_all_font_names(self, start: int, end: int) -> List[FontName]:
        if start >= end:
            return [self.font_at(start)]
        seen: Dict[str, FontName] = {}
        for run in self.runs:
            if run.end > start and run.start < end:
                seen.setdefault(run.font.key, run.font)
        return list(seen.values())

    def get_range_font_name(self, start: int, end: int) -> Union[FontName, Any]:
        fonts = self.get_range_all_font_names(start, end)
        return fonts[0] if len(fonts) == 1 else MIXED

    def styled_segments(self) -> List[Dict[str, Any]]:
        return [
            {
                "characters": self.characters[run.start:run.end],
                "start": run.start,
                "end": run.end,
                "fontName": run.font.model_dump(),
            }
            for run in self.runs
        ]

    def validate_range(self, start: Any, end: Any) -> None:
        if start is None or end is None:
            raise ValidationError("Missing start or end range parameter")
        if not isinstance(start, int) or not isinstance(end, int):
            raise ValidationError("Range start and end must be integers")
        length = len(self.characters)
        if start < 0 or end <= start or end > length:
            raise ValidationError(f"Invalid range [{start}, {end}) for text length {length}")

    def runs_are_valid(self) -> bool:
        if not self.runs:
            return False
        length = len(self.characters)
        if self.runs[0].start != 0 or self.runs[-1].end != length:
            return False
        if length == 0:
            return len(self.runs) == 1
        for previous, current in zip(self.runs, self.runs[1:]):
            if previous.end != current.start:
                return False
        return all(run.start < run.end for run in self.runs)

    # --- host API constraints ----------------------------------------------

    def _require_loaded(self, font: FontName, fonts: FontRegistry) -> None:
        if not fonts.is_loaded(font):
            raise ResourceLoadError(
                f'Font "{font}" must be loaded before it is assigned to text node {self.id}',
                {"family": font.family, "style": font.style},
            )

    def set_font_name(self, font: FontName, fonts: FontRegistry) -> None:
        self._require_loaded(font, fonts)
        self.runs = [TextRun(0, len(self.characters), font)]

    def set_characters(self, characters: str, fonts: FontRegistry) -> None:
        """Replace the whole string; only allowed while the node has one loaded font."""
        font = self.font_name
        if font is MIXED:
            raise UnsupportedOperationError(
                f"Cannot replace characters of text node {self.id} while it carries mixed fonts",
                {"node_id": self.id},
            )
        self._require_loaded(font, fonts)
        self.characters = characters
        self.runs = [TextRun(0, len(characters), font)]

    def set_range_font_name(self, start: int, end: int, font: FontName, fonts: FontRegistry) -> None:
        self.validate_range(start, end)
        self._require_loaded(font, fonts)
        pieces: List[TextRun] = []
        for run in self.runs:
            if run.end <= start or run.start >= end:
                pieces.append(run)
                continue
            if run.start < start:
                pieces.append(TextRun(run.start, start, run.font))
            if run.end > end:
                pieces.append(TextRun(end, run.end, run.font))
        pieces.append(TextRun(start, end, font))
        pieces.sort(key=lambda run: run.start)
        self.runs = pieces
        self._normalize()

    def _normalize(self) -> None:
        merged: List[TextRun] = []
        for run in self.runs:
            if merged and merged[-1].font == run.font and merged[-1].end == run.start:
                merged[-1] = TextRun(merged[-1].start, run.end, run.font)
            else:
                merged.append(run)
        self.runs = merged


class Document:
    """The host document: a root node, its pages, and an id index."""

    def __init__(self, root: Optional[DocumentNode] = None, name: str = "Untitled"):
        self.root = root or DocumentNode(id="0:0", type=NodeType.DOCUMENT, name=name)
        self._index: Dict[str, DocumentNode] = {}
        self._next_serial = 1
        self._index_subtree(self.root)
        if not self.pages:
            self.append_child(self.root, DocumentNode(id=self.new_id(), type=NodeType.PAGE, name="Page 1"))
        self.current_page: DocumentNode = self.pages[0]

    @property
    def pages(self) -> List[DocumentNode]:
        return [child for child in self.root.children if child.type == NodeType.PAGE]

    def new_id(self) -> str:
        while True:
            candidate = f"1:{self._next_serial}"
            self._next_serial += 1
            if candidate not in self._index:
                return candidate

    def get_node_by_id(self, node_id: str) -> Optional[DocumentNode]:
        return self._index.get(node_id)

    def require_node(self, node_id: Any) -> DocumentNode:
        if not isinstance(node_id, str) or not node_id:
            raise ValidationError("Missing nodeId parameter")
        node = self._index.get(node_id)
        if node is None:
            raise NotFoundError(f"Node not found with ID: {node_id}", {"node_id": node_id})
        return node

    def append_child(self, parent: DocumentNode, node: DocumentNode) -> DocumentNode:
        require_capability(parent, Capability.CHILDREN)
        for descendant in node.iter_subtree():
            owner = self._index.get(descendant.id)
            if owner is not None and owner is not descendant:
                raise ValidationError(f"Duplicate node id: {descendant.id}")
        if node.parent is not None:
            node.parent.children.remove(node)
        node.parent = parent
        parent.children.append(node)
        self._index_subtree(node)
        return node

    def remove_node(self, node: DocumentNode) -> None:
        if node is self.root:
            raise UnsupportedOperationError("The document root cannot be removed")
        if node.parent is not None:
            node.parent.children.remove(node)
            node.parent = None
        for descendant in list(node.iter_subtree()):
            self._index.pop(descendant.id, None)

    def _index_subtree(self, node: DocumentNode) -> None:
        for descendant in node.iter_subtree():
            self._index[descendant.id] = descendant
            for child in descendant.children:
                child.parent = descendant

    # --- serialization -------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Document":
        root = node_from_dict(data)
        if root.type != NodeType.DOCUMENT:
            root = DocumentNode(id="0:0", type=NodeType.DOCUMENT, name="Untitled", children=[root])
        return cls(root=root, name=root.name)

    def to_dict(self, node: Optional[DocumentNode] = None) -> Dict[str, Any]:
        return node_to_dict(node or self.root)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "Document":
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
        document = cls.from_dict(data)
        logger.info(f"📄 Loaded document '{document.root.name}' from {path} ({len(document._index)} nodes)")
        return document

    def save(self, path: Union[str, Path]) -> None:
        with open(path, "w", encoding="utf-8") as handle:
            json.dump(self.to_dict(), handle, ensure_ascii=False, indent=2)
        logger.info(f"💾 Saved document to {path}")


def node_from_dict(data: Dict[str, Any]) -> DocumentNode:
    if not isinstance(data, dict):
        raise ValidationError("Node description must be an object")
    node_id = data.get("id")
    if not isinstance(node_id, str) or not node_id:
        raise ValidationError("Node description is missing an id")
    try:
        node_type = NodeType(str(data.get("type", "FRAME")).upper())
    except ValueError:
        raise ValidationError(f"Unknown node type '{data.get('type')}' for node {node_id}")

    common = {
        "id": node_id,
        "name": str(data.get("name") or ""),
        "visible": bool(data.get("visible", True)),
        "x": float(data.get("x", 0.0)),
        "y": float(data.get("y", 0.0)),
        "width": float(data.get("width", 100.0)),
        "height": float(data.get("height", 100.0)),
        "fills": list(data.get("fills") or []),
    }
    if node_type == NodeType.TEXT:
        characters = str(data.get("characters") or "")
        runs = [
            TextRun(int(raw["start"]), int(raw["end"]), FontName.coerce(raw.get("fontName")))
            for raw in data.get("styleRuns") or []
        ]
        if not runs:
            font = FontName.coerce(data["fontName"]) if data.get("fontName") else DEFAULT_FALLBACK_FONT
            runs = [TextRun(0, len(characters), font)]
        return TextNode(characters=characters, runs=runs, font_size=float(data.get("fontSize", 12.0)), **common)

    node = DocumentNode(type=node_type, **common)
    for raw_child in data.get("children") or []:
        child = node_from_dict(raw_child)
        child.parent = node
        node.children.append(child)
    return node


def node_to_dict(node: DocumentNode) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": node.id,
        "name": node.name,
        "type": node.type.value,
        "visible": node.visible,
    }
    if node.can(Capability.GEOMETRY):
        data.update({"x": node.x, "y": node.y, "width": node.width, "height": node.height})
    if node.can(Capability.FILLS):
        data["fills"] = json.loads(json.dumps(node.fills))
    if isinstance(node, TextNode):
        font = node.font_name
        data["characters"] = node.characters
        data["fontSize"] = node.font_size
        data["fontName"] = "MIXED" if font is MIXED else font.model_dump()
        data["styleRuns"] = [run.as_dict() for run in node.runs]
    if node.can(Capability.CHILDREN):
        data["children"] = [node_to_dict(child) for child in node.children]
    return data
