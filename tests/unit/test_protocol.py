"""Unit tests for the JSONL wire protocol."""

import json

import pytest

from bdg.exceptions import CommandError, IPCError, JSONLBufferOverflowError
from bdg.exit_codes import ExitCode
from bdg.ipc.protocol import (
    JSONLBuffer,
    WorkerCommand,
    make_request_id,
    parse_frame,
    require_data,
    response_type,
    strip_response_suffix,
    to_frame,
    validate_response,
)


@pytest.mark.unit
class TestJSONLBuffer:
    def test_split_across_chunks(self):
        buffer = JSONLBuffer()

        assert buffer.feed('{"a":') == []
        assert buffer.feed('1}\n{"b":2}\n{"c"') == ['{"a":1}', '{"b":2}']
        assert buffer.pending == '{"c"'

    def test_blank_lines_skipped(self):
        assert JSONLBuffer().feed("\n  \n{}\n") == ["{}"]

    def test_overflow_resets_buffer(self):
        buffer = JSONLBuffer(max_size=8)

        with pytest.raises(JSONLBufferOverflowError) as exc_info:
            buffer.feed("x" * 9)

        assert exc_info.value.limit == 8
        assert buffer.pending == ""
        assert buffer.feed("{}\n") == ["{}"]


@pytest.mark.unit
class TestFrames:
    def test_to_frame_is_compact_line(self):
        frame = to_frame({"type": "status", "params": {}})
        assert frame == b'{"type":"status","params":{}}\n'

    def test_parse_frame(self):
        assert parse_frame('{"type": "ok"}') == {"type": "ok"}

    def test_parse_frame_rejects_garbage(self):
        with pytest.raises(IPCError, match="Malformed JSONL frame"):
            parse_frame("not json")

    def test_parse_frame_rejects_non_object(self):
        with pytest.raises(IPCError, match="not an object"):
            parse_frame(json.dumps([1, 2]))


@pytest.mark.unit
class TestNaming:
    def test_response_type_round_trip(self):
        assert response_type("worker_peek") == "worker_peek_response"
        assert strip_response_suffix("worker_peek_response") == "worker_peek"
        assert strip_response_suffix("worker_ready") is None

    def test_worker_command_parse(self):
        assert WorkerCommand.parse("cdp_call") is WorkerCommand.CDP_CALL
        assert WorkerCommand.parse("worker_nope") is None

    def test_request_ids_unique(self):
        first, second = make_request_id("worker_peek"), make_request_id("worker_peek")
        assert first.startswith("worker_peek_")
        assert first != second


@pytest.mark.unit
class TestValidateResponse:
    def test_ok_returns_data(self):
        assert validate_response({"status": "ok", "data": {"x": 1}}) == {"x": 1}
        assert validate_response({"status": "ok"}) == {}

    def test_error_with_exit_code_is_command_error(self):
        with pytest.raises(CommandError) as exc_info:
            validate_response(
                {"status": "error", "error": "Element at index 3 not found", "exitCode": 83, "suggestion": "Re-run"}
            )

        assert exc_info.value.exit_code == ExitCode.RESOURCE_NOT_FOUND
        assert exc_info.value.suggestion == "Re-run"

    def test_unknown_exit_code_falls_back(self):
        with pytest.raises(CommandError) as exc_info:
            validate_response({"status": "error", "error": "odd", "exitCode": 42})

        assert exc_info.value.exit_code == ExitCode.GENERIC_FAILURE

    def test_plain_error_is_ipc_error(self):
        with pytest.raises(IPCError, match="No active session"):
            validate_response({"status": "error", "error": "No active session"})

    def test_require_data(self):
        assert require_data({"status": "ok", "data": {"result": {"v": 1}}}, "result", "CDP result") == {"v": 1}
        with pytest.raises(IPCError, match="No CDP result in response"):
            require_data({"status": "ok", "data": {}}, "result", "CDP result")
