"""Tests for the runner message contract."""

import json

import pytest

from tickwork.protocol import (
    Failure,
    Message,
    MessageKind,
    ProtocolError,
    Success,
    decode,
    encode,
)


class TestEncode:
    def test_one_json_line(self):
        raw = encode(Message(MessageKind.START, timestamp=123))
        assert raw.endswith(b"\n")
        assert raw.count(b"\n") == 1
        assert json.loads(raw) == {"kind": "start", "timestamp": 123, "payload": None}

    def test_unserializable_payload_sent_as_str(self):
        raw = encode(Message(MessageKind.FINISH, timestamp=1, payload={"when": object}))
        assert decode(raw).payload == {"when": str(object)}

    def test_multiline_log_stays_on_one_line(self):
        raw = encode(Message(MessageKind.LOG, payload="first\nsecond"))
        assert raw.count(b"\n") == 1
        assert decode(raw).payload == "first\nsecond"


class TestDecode:
    def test_accepts_str_and_bytes(self):
        line = '{"kind": "log", "payload": "hi"}'
        assert decode(line) == decode(line.encode()) == Message(MessageKind.LOG, payload="hi")

    def test_malformed_json(self):
        with pytest.raises(ProtocolError, match="Malformed"):
            decode(b"not json\n")

    def test_not_an_object(self):
        with pytest.raises(ProtocolError, match="object"):
            decode(b"[1, 2]")

    def test_unknown_kind(self):
        with pytest.raises(ProtocolError, match="Unknown message kind"):
            decode(b'{"kind": "explode"}')

    def test_invalid_timestamp(self):
        with pytest.raises(ProtocolError, match="timestamp"):
            decode(b'{"kind": "start", "timestamp": "soon"}')

    def test_protocol_error_is_value_error(self):
        assert issubclass(ProtocolError, ValueError)


class TestOutcomes:
    def test_success_becomes_finish(self):
        message = Success(True).to_message(42)
        assert message == Message(MessageKind.FINISH, timestamp=42, payload=True)
        assert message.kind.is_terminal

    def test_failure_becomes_fatal(self):
        message = Failure("Traceback...\nValueError: boom\n").to_message(7)
        assert message.kind is MessageKind.FATAL
        assert message.payload == {"stack": "Traceback...\nValueError: boom\n"}

    def test_failure_headline_is_last_line(self):
        stack = (
            "Traceback (most recent call last):\n"
            '  File "task.py", line 2, in run\n'
            "RuntimeError: imanerror\n"
        )
        assert Failure(stack).headline == "RuntimeError: imanerror"

    def test_empty_stack_headline(self):
        assert Failure("").headline == ""

    def test_start_and_log_are_not_terminal(self):
        assert not MessageKind.START.is_terminal
        assert not MessageKind.LOG.is_terminal
