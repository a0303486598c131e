import asyncio

import pytest

from command_errors import ResourceLoadError, ValidationError
from font_registry import FontName, FontRegistry, parse_font_list, parse_font_spec

from helpers import INTER, ROBOTO


def test_parse_font_specs():
    assert parse_font_spec("Roboto:Bold") == FontName(family="Roboto", style="Bold")
    assert parse_font_spec(" Inter ") == INTER
    assert parse_font_list("Inter:Regular,,Roboto") == [INTER, ROBOTO]
    with pytest.raises(ValidationError):
        parse_font_spec(":Bold")


def test_coerce_accepts_mappings_and_specs():
    assert FontName.coerce({"family": "Roboto"}) == ROBOTO
    assert FontName.coerce("Roboto:Regular") == ROBOTO
    with pytest.raises(ValidationError):
        FontName.coerce({"style": "Bold"})


@pytest.mark.asyncio
async def test_loading_is_cached_and_concurrent_loads_share_one_fetch():
    fonts = FontRegistry([ROBOTO])
    await asyncio.gather(fonts.load(ROBOTO), fonts.load(ROBOTO), fonts.load(ROBOTO))
    await fonts.load(ROBOTO)
    assert fonts.load_count == 1
    assert fonts.is_loaded(ROBOTO)
    assert fonts.loaded() == [ROBOTO]


@pytest.mark.asyncio
async def test_unavailable_font_fails_and_fallback_is_always_available():
    fonts = FontRegistry([], fallback=INTER)
    with pytest.raises(ResourceLoadError):
        await fonts.load(ROBOTO)
    assert await fonts.load(INTER) == INTER

    fonts.register(ROBOTO)
    assert await fonts.load(ROBOTO) == ROBOTO
