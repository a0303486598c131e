"""
Font Registry - explicit font loading for the host document.

A font must be loaded before it can be assigned to any text run. Loading is
asynchronous, idempotent and cached by (family, style).
"""

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict

from command_errors import ResourceLoadError, ValidationError

logger = logging.getLogger(__name__)


class FontName(BaseModel):
    model_config = ConfigDict(extra='forbid', frozen=True)
    family: str
    style: str = "Regular"

    @property
    def key(self) -> str:
        return f"{self.family}::{self.style}"

    def __str__(self) -> str:
        return f"{self.family} {self.style}"

    @classmethod
    def coerce(cls, value: Any) -> "FontName":
        """Accept a FontName, a {family, style} mapping or a 'family:style' spec."""
        if isinstance(value, FontName):
            return value
        if isinstance(value, dict):
            family = value.get("family")
            if not isinstance(family, str) or not family:
                raise ValidationError("Font is missing a family name", {"font": value})
            style = value.get("style") or "Regular"
            return cls(family=family, style=str(style))
        if isinstance(value, str):
            return parse_font_spec(value)
        raise ValidationError(f"Cannot interpret {value!r} as a font name")


class _Mixed:
    """Marker returned when a text range spans more than one font."""

    _instance: Optional["_Mixed"] = None

    def __new__(cls) -> "_Mixed":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MIXED"


MIXED = _Mixed()

DEFAULT_FALLBACK_FONT = FontName(family="Inter", style="Regular")


def parse_font_spec(spec: str) -> FontName:
    spec = spec.strip()
    if not spec:
        raise ValidationError("Empty font specification")
    family, _, style = spec.partition(":")
    family = family.strip()
    if not family:
        raise ValidationError(f"Font specification '{spec}' has no family")
    return FontName(family=family, style=style.strip() or "Regular")


def parse_font_list(raw: str) -> List[FontName]:
    return [parse_font_spec(part) for part in raw.split(",") if part.strip()]


class FontRegistry:
    """Tracks which fonts the host can provide and which are already loaded."""

    def __init__(self, available: Iterable[FontName] = (), fallback: FontName = DEFAULT_FALLBACK_FONT):
        self.fallback = fallback
        self._available: Dict[str, FontName] = {font.key: font for font in available}
        self._available[fallback.key] = fallback
        self._loaded: Dict[str, FontName] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self.load_count = 0

    def is_available(self, font: FontName) -> bool:
        return font.key in self._available

    def is_loaded(self, font: FontName) -> bool:
        return font.key in self._loaded

    def loaded(self) -> List[FontName]:
        return list(self._loaded.values())

    def register(self, font: FontName) -> None:
        """Make an additional font available to later loads."""
        self._available[font.key] = font

    async def load(self, font: FontName) -> FontName:
        if font.key in self._loaded:
            return font
        if font.key not in self._available:
            logger.warning(f"🔤 Font unavailable: {font}")
            raise ResourceLoadError(
                f'Font "{font}" is not available on this host',
                {"family": font.family, "style": font.style},
            )
        task = self._inflight.get(font.key)
        if task is None:
            task = asyncio.ensure_future(self._load_fresh(font))
            self._inflight[font.key] = task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done():
                self._inflight.pop(font.key, None)

    async def _load_fresh(self, font: FontName) -> FontName:
        # Suspension point: another coroutine may run while the asset "loads"
        await asyncio.sleep(0)
        self._loaded[font.key] = font
        self.load_count += 1
        logger.debug(f"🔤 Loaded font {font}")
        return font
