import asyncio

import pytest

from document_model import TextNode
from progress import ProgressStatus

from helpers import INTER, INTER_BOLD, ROBOTO, open_session, run_spans


def _call(command, params, request_id="req-1"):
    return {"type": "tool_call", "id": request_id, "command": command, "params": params}


@pytest.mark.asyncio
async def test_document_info_lists_the_current_page():
    session, _ = await open_session()
    response = await session.execute(_call("get_document_info", {}))
    result = response["result"]
    assert result["type"] == "PAGE"
    assert result["children"] == [{"id": "1:10", "name": "Screen", "type": "FRAME"}]
    assert result["pages"][0]["childCount"] == 1
    await session.close()


@pytest.mark.asyncio
async def test_unknown_command_leaves_the_document_alone():
    session, _ = await open_session()
    before = session.document.to_dict()

    response = await session.execute(_call("delete_node", {"nodeId": "1:11"}))

    assert response["type"] == "tool_response"
    assert response["id"] == "req-1"
    assert response["error"] == "Unknown command: delete_node"
    assert response["error_structured"]["code"] == "unknown_command"
    assert session.document.to_dict() == before
    await session.close()


@pytest.mark.asyncio
async def test_envelope_without_command_is_a_validation_error():
    session, _ = await open_session()
    response = await session.execute({"type": "tool_call", "id": "req-9", "params": {}})
    assert response["error_structured"]["code"] == "validation"
    assert response["id"] == "req-9"
    await session.close()


@pytest.mark.asyncio
async def test_scan_reports_only_visible_text_with_paths():
    session, websocket = await open_session()

    response = await session.execute(_call("scan_text_nodes", {"nodeId": "1:10", "commandId": "cmd_scan", "chunkSize": 2}))
    result = response["result"]

    assert [n["id"] for n in result["textNodes"]] == ["1:11", "1:17", "1:18"]
    label = result["textNodes"][1]
    assert label["path"] == "Screen > Unnamed-FRAME > Label"
    assert label["fontFamily"] == "" and label["fontStyle"] == ""
    assert result["textNodes"][2]["fontFamily"] == "Roboto"
    assert result["chunks"] == 3
    assert result["commandId"] == "cmd_scan"

    await session.emitter.flush()
    progress = [m for m in websocket.of_type("command_progress") if m["commandId"] == "cmd_scan"]
    assert progress[0]["status"] == "started"
    assert progress[-1]["status"] == "completed"
    assert [m["progress"] for m in progress] == sorted(m["progress"] for m in progress)
    await session.close()


@pytest.mark.asyncio
async def test_scan_without_chunking():
    session, _ = await open_session()
    response = await session.execute(_call("scan_text_nodes", {"nodeId": "1:16", "commandId": "cmd_flat", "useChunking": False}))
    assert response["result"]["count"] == 2
    statuses = [e.status for e in session.emitter.history("cmd_flat")]
    assert statuses == [ProgressStatus.STARTED, ProgressStatus.COMPLETED]
    await session.close()


@pytest.mark.asyncio
async def test_scan_of_a_missing_node_reports_an_error_event():
    session, _ = await open_session()
    response = await session.execute(_call("scan_text_nodes", {"nodeId": "9:9", "commandId": "cmd_missing"}))
    assert response["error_structured"]["code"] == "not_found"
    [event] = session.emitter.history("cmd_missing")
    assert event.status is ProgressStatus.ERROR
    await session.close()


@pytest.mark.asyncio
async def test_batch_replacement_isolates_failures():
    session, websocket = await open_session()
    params = {
        "nodeId": "1:10",
        "commandId": "cmd_batch",
        "text": [
            {"nodeId": "1:11", "text": "Bon retour"},
            {"nodeId": "9:99", "text": "Nowhere"},
            {"nodeId": "1:16", "text": "Not a text node"},
            {"nodeId": "1:18", "text": "Mot de passe oublié ?"},
        ],
    }

    response = await session.execute(_call("set_multiple_text_contents", params))
    result = response["result"]

    assert result["success"] is True
    assert result["replacementsApplied"] == 2
    assert result["replacementsFailed"] == 2
    assert result["totalReplacements"] == 4
    assert result["completedInChunks"] == 2
    kinds = {r["nodeId"]: r.get("errorKind") for r in result["results"]}
    assert kinds == {"1:11": None, "9:99": "not_found", "1:16": "unsupported", "1:18": None}
    assert result["results"][0]["originalText"] == "Welcome back"

    document = session.document
    assert document.require_node("1:11").characters == "Bon retour"
    assert run_spans(document.require_node("1:18")) == [(0, 21, ROBOTO)]

    await session.emitter.flush()
    progress = [m for m in websocket.of_type("command_progress") if m["commandId"] == "cmd_batch"]
    chunk_events = [m for m in progress if "currentChunk" in m]
    assert [m["currentChunk"] for m in chunk_events] == [1, 2]
    assert progress[-1]["status"] == "completed"
    assert progress[-1]["progress"] == 100
    await session.close()


@pytest.mark.asyncio
async def test_batch_where_everything_fails_is_not_a_success():
    session, _ = await open_session()
    params = {"nodeId": "1:10", "commandId": "cmd_bad", "text": [{"nodeId": "9:1", "text": "x"}, {"text": "no id"}]}
    result = (await session.execute(_call("set_multiple_text_contents", params)))["result"]
    assert result["success"] is False
    assert [r["errorKind"] for r in result["results"]] == ["not_found", "validation"]
    await session.close()


@pytest.mark.asyncio
async def test_batch_validation_fails_fast_with_an_error_event():
    session, _ = await open_session()
    before = session.document.to_dict()

    response = await session.execute(_call("set_multiple_text_contents", {"nodeId": "1:10", "commandId": "cmd_v"}))

    assert response["error"] == "Missing required parameters: nodeId and text array"
    [event] = session.emitter.history("cmd_v")
    assert event.status is ProgressStatus.ERROR
    assert session.document.to_dict() == before

    response = await session.execute(_call(
        "set_multiple_text_contents",
        {"nodeId": "1:10", "commandId": "cmd_s", "strategy": "fancy", "text": [{"nodeId": "1:11", "text": "x"}]},
    ))
    assert response["error_structured"]["code"] == "validation"
    assert session.document.require_node("1:11").characters == "Welcome back"
    await session.close()


@pytest.mark.asyncio
async def test_batch_uses_the_requested_strategy_for_mixed_labels():
    session, _ = await open_session()
    params = {"nodeId": "1:16", "commandId": "cmd_strict", "strategy": "strict", "text": [{"nodeId": "1:17", "text": "Login"}]}
    await session.execute(_call("set_multiple_text_contents", params))
    label = session.document.require_node("1:17")
    assert label.characters == "Login"
    assert run_spans(label) == [(0, 5, INTER_BOLD)]
    await session.close()


@pytest.mark.asyncio
async def test_cancel_command_stops_a_running_batch():
    session, _ = await open_session(batch_chunk_size=1, inter_chunk_delay=0.5)
    params = {
        "nodeId": "1:10",
        "commandId": "cmd_long",
        "text": [{"nodeId": node_id, "text": "x"} for node_id in ("1:11", "1:17", "1:18")],
    }

    batch = asyncio.create_task(session.execute(_call("set_multiple_text_contents", params, "req-batch")))
    await asyncio.sleep(0.1)
    cancel = await session.execute(_call("cancel_command", {"targetCommandId": "cmd_long"}, "req-cancel"))
    assert cancel["result"]["cancelled"] is True

    result = (await batch)["result"]
    assert result["cancelled"] is True
    assert result["replacementsApplied"] == 1
    assert [r.get("errorKind") for r in result["results"]] == [None, "cancelled", "cancelled"]
    assert session.document.require_node("1:18").characters == "Forgot password?"
    assert session.emitter.history("cmd_long")[-1].status is ProgressStatus.ERROR
    await session.close()


@pytest.mark.asyncio
async def test_cancel_of_an_unknown_batch_is_reported():
    session, _ = await open_session()
    response = await session.execute(_call("cancel_command", {"targetCommandId": "cmd_nope"}))
    assert response["result"]["cancelled"] is False
    await session.close()


@pytest.mark.asyncio
async def test_set_text_content_and_styled_segments():
    session, _ = await open_session()
    response = await session.execute(_call("set_text_content", {"nodeId": "1:17", "text": "Log in", "strategy": "prevail"}))
    assert response["result"]["fontName"] == INTER_BOLD.model_dump()

    segments = (await session.execute(_call("get_styled_text_segments", {"nodeId": "1:17", "property": "fontName"})))["result"]
    assert segments["segments"] == [{"characters": "Log in", "start": 0, "end": 6, "fontName": INTER_BOLD.model_dump()}]

    response = await session.execute(_call("get_styled_text_segments", {"nodeId": "1:17", "property": "fontSize"}))
    assert response["error_structured"]["code"] == "validation"

    response = await session.execute(_call("set_text_content", {"nodeId": "1:10", "text": "x"}))
    assert response["error"] == "Node is not a text node: 1:10 (type: FRAME)"
    await session.close()


@pytest.mark.asyncio
async def test_set_range_font_name_surfaces_range_and_font_errors():
    session, _ = await open_session()

    response = await session.execute(_call("set_range_font_name", {"nodeId": "1:11", "start": 0, "end": 7, "family": "Roboto"}))
    assert response["result"]["fontName"] == ROBOTO.model_dump()
    node = session.document.require_node("1:11")
    assert isinstance(node, TextNode)
    assert run_spans(node) == [(0, 7, ROBOTO), (7, 12, INTER)]

    response = await session.execute(_call("set_range_font_name", {"nodeId": "1:11", "start": 5, "end": 50, "family": "Roboto"}))
    assert response["error_structured"]["code"] == "validation"

    response = await session.execute(_call("set_range_font_name", {"nodeId": "1:11", "start": 0, "end": 2, "family": "Papyrus"}))
    assert response["error_structured"]["code"] == "resource_load"
    await session.close()


@pytest.mark.asyncio
async def test_load_font_async():
    session, _ = await open_session()
    response = await session.execute(_call("load_font_async", {"family": "Roboto"}))
    assert response["result"]["success"] is True
    assert session.fonts.is_loaded(ROBOTO)

    response = await session.execute(_call("load_font_async", {"family": "Papyrus", "style": "Bold"}))
    assert response["error_structured"]["code"] == "resource_load"
    await session.close()


@pytest.mark.asyncio
async def test_get_node_info_exports_text_runs():
    session, _ = await open_session()
    result = (await session.execute(_call("get_node_info", {"nodeId": "1:17"})))["result"]
    assert result["fontName"] == "MIXED"
    assert result["styleRuns"][0] == {"start": 0, "end": 5, "fontName": INTER_BOLD.model_dump()}
    assert result["x"] == 0.0
    await session.close()


@pytest.mark.asyncio
async def test_repeated_node_in_one_chunk_gets_its_fills_back():
    session, _ = await open_session(highlight_seconds=0.01)
    title = session.document.require_node("1:11")
    black = [{"type": "SOLID", "color": {"r": 0, "g": 0, "b": 0}}]
    title.fills = [dict(fill) for fill in black]
    params = {
        "nodeId": "1:10",
        "commandId": "cmd_twice",
        "text": [{"nodeId": "1:11", "text": "x"}, {"nodeId": "1:11", "text": "y"}],
    }

    result = (await session.execute(_call("set_multiple_text_contents", params)))["result"]

    assert result["replacementsApplied"] == 2
    assert title.fills == black
    assert session.highlights == {}
    await session.close()


@pytest.mark.asyncio
async def test_finished_commands_do_not_keep_progress_state():
    session, _ = await open_session()
    for index in range(3):
        params = {"nodeId": "1:10", "commandId": f"cmd_{index}", "text": [{"nodeId": "1:11", "text": f"v{index}"}]}
        await session.execute(_call("set_multiple_text_contents", params, f"req-{index}"))
    await session.execute(_call("scan_text_nodes", {"nodeId": "1:10", "commandId": "cmd_scan"}))

    assert session.emitter.active_commands() == []
    assert session.emitter.is_terminated("cmd_scan")
    await session.close()
