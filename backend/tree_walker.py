"""
Tree Walker - depth-first, pre-order traversal of the document tree.

Hidden nodes are pruned together with their whole subtree. Each entry carries
the display-name path from the walk root down to (and including) the node.
"""

from dataclasses import dataclass
from typing import Iterator, List, Sequence

from document_model import DocumentNode

PATH_SEPARATOR = " > "


@dataclass(frozen=True)
class WalkEntry:
    node: DocumentNode
    path: Sequence[str]
    depth: int


def walk(root: DocumentNode) -> Iterator[WalkEntry]:
    # Explicit stack so very deep documents do not hit the recursion limit
    stack: List[WalkEntry] = []
    if root.visible:
        stack.append(WalkEntry(root, (root.display_name,), 0))
    while stack:
        entry = stack.pop()
        yield entry
        for child in reversed(entry.node.children):
            if not child.visible:
                continue
            stack.append(WalkEntry(child, (*entry.path, child.display_name), entry.depth + 1))


def format_path(path: Sequence[str]) -> str:
    return PATH_SEPARATOR.join(path)
