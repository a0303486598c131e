import asyncio
import gc

import pytest

from command_errors import CommandTimeoutError, ConnectionLost, ErrorKind
from figma_communicator import (
    COMMAND_TIMEOUTS,
    FigmaCommunicator,
    ToolExecutionError,
    get_communicator,
    send_command,
    set_communicator,
)

from helpers import FakeWebSocket


async def _start(communicator, command, params=None, timeout=None):
    task = asyncio.create_task(communicator.send_command(command, params, timeout=timeout))
    await asyncio.sleep(0)
    return task


@pytest.mark.asyncio
async def test_request_carries_its_id_as_command_id():
    websocket = FakeWebSocket()
    communicator = FigmaCommunicator(websocket)

    task = await _start(communicator, "scan_text_nodes", {"nodeId": "1:10"})
    [envelope] = websocket.messages()
    assert envelope["type"] == "tool_call"
    assert envelope["command"] == "scan_text_nodes"
    assert envelope["params"] == {"nodeId": "1:10", "commandId": envelope["id"]}

    communicator.handle_tool_response({"type": "tool_response", "id": envelope["id"], "result": {"textNodes": []}})
    assert await task == {"textNodes": []}
    assert communicator.pending_requests == {}


@pytest.mark.asyncio
async def test_per_command_timeouts():
    communicator = FigmaCommunicator(FakeWebSocket(), timeout=12.0)
    assert communicator.timeout_for("get_document_info") == COMMAND_TIMEOUTS["get_document_info"] == 8.0
    assert communicator.timeout_for("set_multiple_text_contents") == 60.0
    assert communicator.timeout_for("something_else") == 12.0


@pytest.mark.asyncio
async def test_timeout_settles_once_and_late_responses_are_ignored():
    websocket = FakeWebSocket()
    communicator = FigmaCommunicator(websocket)

    with pytest.raises(CommandTimeoutError) as info:
        await communicator.send_command("get_node_info", {"nodeId": "1:1"}, timeout=0.05)
    assert info.value.kind is ErrorKind.TIMEOUT
    assert communicator.pending_requests == {}

    request_id = websocket.messages()[0]["id"]
    communicator.handle_tool_response({"type": "tool_response", "id": request_id, "result": {}})
    assert communicator.pending_requests == {}


@pytest.mark.asyncio
async def test_progress_activity_keeps_a_long_request_alive():
    websocket = FakeWebSocket()
    communicator = FigmaCommunicator(websocket)

    task = await _start(communicator, "set_multiple_text_contents", {"nodeId": "1:10", "text": []}, timeout=0.3)
    request_id = websocket.messages()[0]["id"]

    await asyncio.sleep(0.2)
    assert communicator.record_activity(request_id)
    await asyncio.sleep(0.2)
    assert not task.done()

    communicator.handle_tool_response({"type": "tool_response", "id": request_id, "result": {"success": True}})
    assert await task == {"success": True}
    assert not communicator.record_activity(request_id)


@pytest.mark.asyncio
async def test_connection_loss_rejects_every_pending_request():
    communicator = FigmaCommunicator(FakeWebSocket())
    first = await _start(communicator, "scan_text_nodes", {"nodeId": "1:10"})
    second = await _start(communicator, "get_document_info")

    assert communicator.fail_all_pending("connection lost") == 2
    for task in (first, second):
        with pytest.raises(ConnectionLost):
            await task
    assert communicator.pending_requests == {}
    assert communicator.fail_all_pending("again") == 0


@pytest.mark.asyncio
async def test_failure_after_the_caller_gave_up_is_not_reported_as_unretrieved():
    loop = asyncio.get_running_loop()
    reported = []
    previous_handler = loop.get_exception_handler()
    loop.set_exception_handler(lambda _loop, context: reported.append(context))
    try:
        communicator = FigmaCommunicator(FakeWebSocket())
        task = await _start(communicator, "scan_text_nodes", {"nodeId": "1:10"})
        [entry] = communicator.pending_requests.values()
        future = entry.future

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert communicator.fail_all_pending("connection lost") == 1
        await asyncio.sleep(0)

        assert future.done() and not future.cancelled()
        del task, entry, future
        gc.collect()
    finally:
        loop.set_exception_handler(previous_handler)

    assert not [c for c in reported if "never retrieved" in c.get("message", "")]


@pytest.mark.asyncio
async def test_send_failure_is_a_connection_loss():
    websocket = FakeWebSocket()
    websocket.closed = True
    communicator = FigmaCommunicator(websocket)

    with pytest.raises(ConnectionLost):
        await communicator.send_command("get_document_info")
    assert communicator.pending_requests == {}


@pytest.mark.asyncio
async def test_structured_errors_become_tool_execution_errors():
    websocket = FakeWebSocket()
    communicator = FigmaCommunicator(websocket)
    task = await _start(communicator, "get_node_info", {"nodeId": "9:9"})
    request_id = websocket.messages()[0]["id"]

    communicator.handle_tool_response({
        "type": "tool_response",
        "id": request_id,
        "error": "Node not found with ID: 9:9",
        "error_structured": {"code": "not_found", "message": "Node not found with ID: 9:9", "details": {"node_id": "9:9"}},
    })

    with pytest.raises(ToolExecutionError) as info:
        await task
    assert info.value.kind is ErrorKind.NOT_FOUND
    assert info.value.details == {"node_id": "9:9"}
    assert info.value.command == "get_node_info"


@pytest.mark.asyncio
async def test_plain_error_text_is_internal():
    websocket = FakeWebSocket()
    communicator = FigmaCommunicator(websocket)
    task = await _start(communicator, "get_node_info", {"nodeId": "1:1"})
    communicator.handle_tool_response({"type": "tool_response", "id": websocket.messages()[0]["id"], "error": "Error executing get_node_info: boom"})

    with pytest.raises(ToolExecutionError) as info:
        await task
    assert info.value.code == "internal"
    assert str(info.value) == "Error executing get_node_info: boom"


@pytest.mark.asyncio
async def test_reported_failure_result_is_an_error():
    websocket = FakeWebSocket()
    communicator = FigmaCommunicator(websocket)
    task = await _start(communicator, "set_multiple_text_contents", {"nodeId": "1:10", "text": []})
    communicator.handle_tool_response({
        "type": "tool_response",
        "id": websocket.messages()[0]["id"],
        "result": {"success": False, "message": "Text replacement complete: 0 successful, 2 failed"},
    })

    with pytest.raises(ToolExecutionError) as info:
        await task
    assert info.value.code == "plugin_reported_failure"
    assert info.value.details["result"]["success"] is False


@pytest.mark.asyncio
async def test_module_level_helper_uses_the_registered_communicator():
    websocket = FakeWebSocket()
    communicator = FigmaCommunicator(websocket)
    set_communicator(communicator)
    assert get_communicator() is communicator

    task = asyncio.create_task(send_command("get_document_info"))
    await asyncio.sleep(0)
    communicator.handle_tool_response({"type": "tool_response", "id": websocket.messages()[0]["id"], "result": {"name": "Page 1"}})
    assert await task == {"name": "Page 1"}
