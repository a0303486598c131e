import json

import pytest

from progress import ProgressEmitter, ProgressStatus


def test_envelope_uses_wire_field_names():
    emitter = ProgressEmitter()
    event = emitter.emit("cmd_1", "scan_text_nodes", ProgressStatus.STARTED, 0, 10, 0, "Starting")
    envelope = event.to_envelope()

    assert envelope["type"] == "command_progress"
    assert envelope["commandId"] == "cmd_1"
    assert envelope["commandType"] == "scan_text_nodes"
    assert envelope["status"] == "started"
    assert envelope["totalItems"] == 10
    assert envelope["processedItems"] == 0
    assert isinstance(envelope["timestamp"], int)
    assert "payload" not in envelope
    assert "currentChunk" not in envelope


def test_chunk_fields_are_lifted_from_payload():
    emitter = ProgressEmitter()
    emitter.emit("cmd_1", "set_multiple_text_contents", ProgressStatus.STARTED, 0, 12, 0, "Starting")
    event = emitter.emit(
        "cmd_1", "set_multiple_text_contents", ProgressStatus.IN_PROGRESS, 35, 12, 5, "Completed chunk 1/3",
        {"currentChunk": 1, "totalChunks": 3, "chunkSize": 5},
    )
    envelope = event.to_envelope()
    assert (envelope["currentChunk"], envelope["totalChunks"], envelope["chunkSize"]) == (1, 3, 5)
    assert envelope["payload"]["currentChunk"] == 1


def test_nothing_follows_a_terminal_event():
    emitter = ProgressEmitter()
    emitter.emit("cmd_1", "scan", ProgressStatus.STARTED, 0, 1, 0, "go")
    emitter.emit("cmd_1", "scan", ProgressStatus.COMPLETED, 100, 1, 1, "done")

    assert emitter.is_terminated("cmd_1")
    assert emitter.emit("cmd_1", "scan", ProgressStatus.IN_PROGRESS, 50, 1, 1, "late") is None
    assert emitter.emit("cmd_1", "scan", ProgressStatus.ERROR, 0, 1, 1, "late") is None
    assert [e.status for e in emitter.history("cmd_1")] == [ProgressStatus.STARTED, ProgressStatus.COMPLETED]


def test_progress_never_goes_backwards_and_is_clamped():
    emitter = ProgressEmitter()
    emitter.emit("cmd_1", "scan", ProgressStatus.STARTED, 0, 4, 0, "go")
    emitter.emit("cmd_2", "scan", ProgressStatus.STARTED, 0, 4, 0, "go")
    assert emitter.emit("cmd_1", "scan", ProgressStatus.IN_PROGRESS, 50, 4, 2, "half").progress == 50
    assert emitter.emit("cmd_1", "scan", ProgressStatus.IN_PROGRESS, 30, 4, 3, "regress").progress == 50
    assert emitter.emit("cmd_1", "scan", ProgressStatus.IN_PROGRESS, 250, 4, 4, "over").progress == 100
    assert emitter.emit("cmd_2", "scan", ProgressStatus.IN_PROGRESS, -5, 4, 0, "under").progress == 0


def test_completed_is_always_one_hundred():
    emitter = ProgressEmitter()
    emitter.emit("cmd_1", "scan", ProgressStatus.STARTED, 0, 0, 0, "go")
    assert emitter.emit("cmd_1", "scan", ProgressStatus.COMPLETED, 42, 0, 0, "done").progress == 100


def test_error_may_be_the_first_event():
    emitter = ProgressEmitter()
    event = emitter.emit("cmd_1", "set_multiple_text_contents", ProgressStatus.ERROR, 0, 0, 0, "Missing nodeId")
    assert event.status is ProgressStatus.ERROR
    assert emitter.is_terminated("cmd_1")


def test_forget_allows_an_id_to_be_reused():
    emitter = ProgressEmitter()
    emitter.emit("cmd_1", "scan", ProgressStatus.STARTED, 0, 0, 0, "go")
    emitter.emit("cmd_1", "scan", ProgressStatus.COMPLETED, 100, 0, 0, "done")
    emitter.forget("cmd_1")
    assert emitter.emit("cmd_1", "scan", ProgressStatus.STARTED, 0, 0, 0, "again") is not None


def test_only_error_may_precede_started():
    emitter = ProgressEmitter()
    assert emitter.emit("cmd_1", "scan", ProgressStatus.IN_PROGRESS, 50, 4, 2, "half") is None
    assert emitter.emit("cmd_1", "scan", ProgressStatus.COMPLETED, 100, 4, 4, "done") is None
    assert emitter.history("cmd_1") == []
    assert not emitter.is_terminated("cmd_1")


def test_finished_commands_release_their_state():
    emitter = ProgressEmitter(retain=2)
    for command_id in ("cmd_1", "cmd_2", "cmd_3"):
        emitter.emit(command_id, "scan", ProgressStatus.STARTED, 0, 1, 0, "go")
        emitter.emit(command_id, "scan", ProgressStatus.COMPLETED, 100, 1, 1, "done")

    assert emitter.active_commands() == []
    assert emitter.history("cmd_1") == []
    assert not emitter.is_terminated("cmd_1")
    assert [e.status for e in emitter.history("cmd_3")] == [ProgressStatus.STARTED, ProgressStatus.COMPLETED]
    assert emitter.emit("cmd_3", "scan", ProgressStatus.IN_PROGRESS, 50, 1, 1, "late") is None


def test_released_command_without_terminal_event_accepts_nothing_more():
    emitter = ProgressEmitter()
    emitter.emit("cmd_1", "scan", ProgressStatus.STARTED, 0, 2, 0, "go")
    assert emitter.active_commands() == ["cmd_1"]

    emitter.release("cmd_1")
    emitter.release("cmd_unknown")

    assert emitter.active_commands() == []
    assert emitter.emit("cmd_1", "scan", ProgressStatus.IN_PROGRESS, 50, 2, 1, "late") is None
    assert len(emitter.history("cmd_1")) == 1


@pytest.mark.asyncio
async def test_pump_sends_events_in_emission_order():
    sent = []

    async def send(raw):
        sent.append(json.loads(raw))

    emitter = ProgressEmitter(send)
    emitter.start()
    emitter.emit("cmd_1", "scan", ProgressStatus.STARTED, 0, 3, 0, "a")
    emitter.emit("cmd_1", "scan", ProgressStatus.IN_PROGRESS, 50, 3, 1, "b")
    emitter.emit("cmd_1", "scan", ProgressStatus.COMPLETED, 100, 3, 3, "c")
    await emitter.flush()
    await emitter.stop()

    assert [m["message"] for m in sent] == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_send_failures_are_logged_not_raised(caplog):
    async def send(raw):
        raise ConnectionError("bridge gone")

    emitter = ProgressEmitter(send)
    emitter.start()
    emitter.emit("cmd_1", "scan", ProgressStatus.STARTED, 0, 1, 0, "a")
    emitter.emit("cmd_1", "scan", ProgressStatus.COMPLETED, 100, 1, 1, "b")
    await emitter.flush()
    await emitter.stop()

    assert "Failed to deliver progress event for cmd_1" in caplog.text
