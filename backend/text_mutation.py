"""
Styled-Text Mutation Engine - replace a text node's characters without
flattening its styling more than necessary.

The host only accepts a new string while the node carries one uniform, loaded
font, and every font must be loaded before it is assigned to a range. Four
strategies trade fidelity for cost when the node is mixed:

* ``first``   - first character's font for the whole new string.
* ``prevail`` - most frequent font across the original string.
* ``strict``  - record exact runs, write with the fallback, replay the runs on
                the same numeric ranges of the new string (by index, not by
                content).
* ``smart``   - record (delimiter, font) transitions along newlines (and spaces
                inside mixed lines), then replay them against the delimiters
                found in the new string.

A font that cannot be loaded is replaced by the fallback font; the mutation
goes on and the substitution is reported.
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from command_errors import ResourceLoadError, ValidationError
from document_model import TextNode, TextRun
from font_registry import MIXED, FontName, FontRegistry

logger = logging.getLogger(__name__)

LINE_DELIMITER = "\n"
WORD_DELIMITER = " "


class TextStrategy(str, Enum):
    FIRST = "first"
    PREVAIL = "prevail"
    STRICT = "strict"
    SMART = "smart"

    @classmethod
    def parse(cls, value: Any) -> "TextStrategy":
        if value is None or value == "":
            return cls.FIRST
        if isinstance(value, TextStrategy):
            return value
        name = str(value).strip().lower()
        if name == "experimental":
            return cls.SMART
        try:
            return cls(name)
        except ValueError:
            allowed = ", ".join(s.value for s in cls)
            raise ValidationError(f"Unknown text strategy '{value}'. Must be one of: {allowed}")


@dataclass
class FontSubstitution:
    requested: FontName
    fallback: FontName
    reason: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "requested": self.requested.model_dump(),
            "fallback": self.fallback.model_dump(),
            "reason": self.reason,
        }


@dataclass(frozen=True)
class Transition:
    delimiter: str
    font: FontName


@dataclass
class TextMutationResult:
    strategy: TextStrategy
    characters: str
    applied_runs: List[TextRun] = field(default_factory=list)
    substitutions: List[FontSubstitution] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "characters": self.characters,
            "runs": [run.as_dict() for run in self.applied_runs],
            "substitutions": [s.as_dict() for s in self.substitutions],
        }


class _FontResolver:
    """Loads requested fonts, falling back (once per font) when one is unavailable."""

    def __init__(self, fonts: FontRegistry, fallback: FontName):
        self.fonts = fonts
        self.fallback = fallback
        self.substitutions: List[FontSubstitution] = []
        self._resolved: Dict[str, FontName] = {}

    async def ensure_fallback(self) -> FontName:
        # No further fallback exists; a failure here aborts the mutation
        return await self.fonts.load(self.fallback)

    async def resolve(self, font: FontName) -> FontName:
        if font.key in self._resolved:
            return self._resolved[font.key]
        try:
            resolved = await self.fonts.load(font)
        except ResourceLoadError as e:
            logger.warning(f'🔤 Failed to load "{font}", replaced with fallback "{self.fallback}": {e}')
            resolved = await self.ensure_fallback()
            self.substitutions.append(FontSubstitution(font, resolved, e.message))
        self._resolved[font.key] = resolved
        return resolved

    async def resolve_all(self, fonts: List[FontName]) -> Dict[str, FontName]:
        unique = list({font.key: font for font in fonts}.values())
        resolved = await asyncio.gather(*(self.resolve(font) for font in unique))
        return {font.key: target for font, target in zip(unique, resolved)}


# --- analysis helpers --------------------------------------------------------

def prevailing_font(node: TextNode) -> FontName:
    """Most frequent font by character count; ties go to the earliest font."""
    counts: Counter = Counter()
    by_key: Dict[str, FontName] = {}
    for font in node.character_fonts():
        counts[font.key] += 1
        by_key.setdefault(font.key, font)
    if not counts:
        return node.font_at(0)
    key, _ = counts.most_common(1)[0]
    return by_key[key]


def strict_runs(node: TextNode) -> List[TextRun]:
    """Maximal same-font runs of the current string, in one pass."""
    fonts = node.character_fonts()
    runs: List[TextRun] = []
    start = 0
    for index in range(1, len(fonts) + 1):
        if index == len(fonts) or fonts[index] != fonts[start]:
            runs.append(TextRun(start, index, fonts[start]))
            start = index
    return runs


def delimiter_segments(text: str, delimiter: str, start: int = 0, end: Optional[int] = None) -> List[Tuple[int, int]]:
    """Non-empty [start, end) spans of ``text`` between occurrences of ``delimiter``."""
    end = len(text) if end is None else end
    segments: List[Tuple[int, int]] = []
    segment_start = start
    for index in range(start, end):
        if text[index] == delimiter:
            if index > segment_start:
                segments.append((segment_start, index))
            segment_start = index + 1
    if segment_start < end:
        segments.append((segment_start, end))
    return segments


def build_linear_order(node: TextNode) -> List[Transition]:
    text = node.characters
    transitions: List[Transition] = []
    for line_start, line_end in delimiter_segments(text, LINE_DELIMITER):
        line_font = node.get_range_font_name(line_start, line_end)
        if line_font is not MIXED:
            transitions.append(Transition(LINE_DELIMITER, line_font))
            continue
        for word_start, word_end in delimiter_segments(text, WORD_DELIMITER, line_start, line_end):
            word_font = node.get_range_font_name(word_start, word_end)
            if word_font is MIXED:
                word_font = node.font_at(word_start)
            transitions.append(Transition(WORD_DELIMITER, word_font))
    return transitions


# --- mutation ----------------------------------------------------------------

async def set_characters(
    node: TextNode,
    characters: str,
    fonts: FontRegistry,
    strategy: Any = TextStrategy.FIRST,
    fallback: Optional[FontName] = None,
) -> TextMutationResult:
    """Replace ``node.characters`` with ``characters`` using ``strategy`` for mixed fonts."""
    if not isinstance(characters, str):
        raise ValidationError("Text must be a string")
    strategy = TextStrategy.parse(strategy)
    resolver = _FontResolver(fonts, fallback or fonts.fallback)

    current = node.font_name
    if current is MIXED:
        if strategy == TextStrategy.STRICT:
            return await _set_with_strict_match(node, characters, resolver)
        if strategy == TextStrategy.SMART:
            return await _set_with_smart_match(node, characters, resolver)
        target = prevailing_font(node) if strategy == TextStrategy.PREVAIL else node.font_at(0)
    else:
        target = current

    chosen = await resolver.resolve(target)
    node.set_font_name(chosen, fonts)
    node.set_characters(characters, fonts)
    return TextMutationResult(
        strategy=strategy,
        characters=characters,
        applied_runs=list(node.runs),
        substitutions=resolver.substitutions,
    )


async def _set_with_strict_match(node: TextNode, characters: str, resolver: _FontResolver) -> TextMutationResult:
    fonts = resolver.fonts
    recorded = strict_runs(node)
    fallback = await resolver.ensure_fallback()
    resolved = await resolver.resolve_all([run.font for run in recorded])

    node.set_font_name(fallback, fonts)
    node.set_characters(characters, fonts)

    length = len(characters)
    applied: List[TextRun] = []
    for run in recorded:
        if run.start >= length:
            logger.debug(f"✂️ Dropping run [{run.start}, {run.end}) beyond new length {length}")
            continue
        end = min(run.end, length)
        font = resolved[run.font.key]
        node.set_range_font_name(run.start, end, font, fonts)
        applied.append(TextRun(run.start, end, font))
    return TextMutationResult(TextStrategy.STRICT, characters, applied, resolver.substitutions)


async def _set_with_smart_match(node: TextNode, characters: str, resolver: _FontResolver) -> TextMutationResult:
    fonts = resolver.fonts
    transitions = build_linear_order(node)
    fallback = await resolver.ensure_fallback()
    resolved = await resolver.resolve_all([t.font for t in transitions])

    node.set_font_name(fallback, fonts)
    node.set_characters(characters, fonts)

    length = len(characters)
    cursor = 0
    applied: List[TextRun] = []
    for transition in transitions:
        if cursor >= length:
            break
        found = characters.find(transition.delimiter, cursor)
        # A delimiter right at the cursor (or none at all) hands the rest of the string to this transition
        end = found if found > cursor else length
        font = resolved[transition.font.key]
        node.set_range_font_name(cursor, end, font, fonts)
        applied.append(TextRun(cursor, end, font))
        cursor = end + 1
    if cursor < length:
        # TODO: decide whether an unmatched tail should inherit the last transition's font instead of the fallback
        logger.info(f"🔤 Smart match left [{cursor}, {length}) of node {node.id} on fallback font {fallback}")
    return TextMutationResult(TextStrategy.SMART, characters, applied, resolver.substitutions)
