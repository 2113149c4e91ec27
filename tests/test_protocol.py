"""Unit tests for the stream-json decoder."""
from __future__ import annotations

import json

from claudechat.engine.protocol import EventKind, StreamDecoder


def _line(record: dict) -> str:
    return json.dumps(record) + "\n"


def _delta(text: str) -> str:
    return _line({
        "type": "stream_event",
        "event": {
            "type": "content_block_delta",
            "delta": {"type": "text_delta", "text": text},
        },
    })


def _assistant(*texts: str) -> str:
    return _line({
        "type": "assistant",
        "message": {"content": [{"type": "text", "text": t} for t in texts]},
    })


def _result(text: str) -> str:
    return _line({"type": "result", "result": text})


def _texts(events) -> list[str]:
    return [e.text for e in events if e.kind == EventKind.TEXT]


def test_system_record_announces_session_id() -> None:
    decoder = StreamDecoder()
    events = decoder.feed(_line({"type": "system", "session_id": "abc-123"}))
    assert len(events) == 1
    assert events[0].kind == EventKind.SESSION_ID
    assert events[0].session_id == "abc-123"


def test_system_record_without_session_id_is_unrecognized() -> None:
    decoder = StreamDecoder()
    events = decoder.feed(_line({"type": "system", "subtype": "init"}))
    assert [e.kind for e in events] == [EventKind.UNRECOGNIZED]


def test_deltas_win_over_assistant_and_result() -> None:
    decoder = StreamDecoder()
    stream = _delta("Hel") + _delta("lo") + _assistant("Hello") + _result("Hello")
    assert _texts(decoder.feed(stream)) == ["Hel", "lo"]
    assert decoder.state.text_delta_seen
    assert decoder.state.assistant_message_emitted


def test_assistant_message_used_when_no_deltas() -> None:
    decoder = StreamDecoder()
    events = decoder.feed(_assistant("Part one", "Part two") + _result("Part one"))
    assert _texts(events) == ["Part one", "Part two"]


def test_only_first_assistant_message_is_emitted() -> None:
    decoder = StreamDecoder()
    events = decoder.feed(_assistant("first") + _assistant("second"))
    assert _texts(events) == ["first"]


def test_assistant_without_text_blocks_does_not_block_later_text() -> None:
    decoder = StreamDecoder()
    tool_only = _line({
        "type": "assistant",
        "message": {"content": [{"type": "tool_use", "name": "Read", "input": {}}]},
    })
    events = decoder.feed(tool_only + _assistant("answer"))
    assert _texts(events) == ["answer"]


def test_result_only_stream() -> None:
    decoder = StreamDecoder()
    events = decoder.feed(_result("final answer"))
    assert _texts(events) == ["final answer"]


def test_empty_result_is_dropped() -> None:
    decoder = StreamDecoder()
    assert decoder.feed(_result("")) == []


def test_non_text_delta_is_suppressed() -> None:
    decoder = StreamDecoder()
    record = _line({
        "type": "stream_event",
        "event": {
            "type": "content_block_delta",
            "delta": {"type": "input_json_delta", "partial_json": "{\"a\""},
        },
    })
    assert decoder.feed(record) == []
    assert not decoder.state.text_delta_seen


def test_message_stop_marks_completion() -> None:
    decoder = StreamDecoder()
    events = decoder.feed(_line({"type": "stream_event", "event": {"type": "message_stop"}}))
    assert [e.kind for e in events] == [EventKind.MESSAGE_COMPLETE]


def test_error_record_carries_payload() -> None:
    decoder = StreamDecoder()
    events = decoder.feed(_line({"type": "error", "error": {"message": "overloaded"}}))
    assert events[0].kind == EventKind.ERROR
    assert events[0].payload == {"message": "overloaded"}


def test_unknown_record_type_is_unrecognized() -> None:
    decoder = StreamDecoder()
    events = decoder.feed(_line({"type": "user", "message": {}}))
    assert events[0].kind == EventKind.UNRECOGNIZED
    assert events[0].record_type == "user"


def test_non_json_line_passes_through_raw() -> None:
    decoder = StreamDecoder()
    events = decoder.feed("Warning: something odd\r\n")
    assert len(events) == 1
    assert events[0].kind == EventKind.TEXT
    assert events[0].raw
    # No newline is added back.
    assert events[0].text == "Warning: something odd"


def test_json_scalar_line_passes_through_raw() -> None:
    decoder = StreamDecoder()
    events = decoder.feed("42\n")
    assert events[0].raw
    assert events[0].text == "42"


def test_malformed_record_passes_through_raw() -> None:
    decoder = StreamDecoder()
    line = json.dumps({"type": "assistant", "message": {"content": ["oops"]}})
    events = decoder.feed(line + "\n")
    assert events[0].raw
    assert events[0].text == line


def test_blank_lines_are_ignored() -> None:
    decoder = StreamDecoder()
    assert decoder.feed("\n  \n\n") == []


def test_chunk_boundaries_do_not_change_output() -> None:
    stream = (
        _line({"type": "system", "session_id": "s-1"})
        + _delta("Hello, ")
        + _delta("wörld")
        + "plain text line\n"
        + _assistant("Hello, wörld")
        + _result("Hello, wörld")
    )
    whole = StreamDecoder().feed(stream)

    for size in (1, 3, 7, 64):
        decoder = StreamDecoder()
        events = []
        for i in range(0, len(stream), size):
            events.extend(decoder.feed(stream[i:i + size]))
        assert events == whole, f"chunk size {size}"


def test_partial_line_is_buffered_until_newline() -> None:
    decoder = StreamDecoder()
    line = _delta("hi")
    assert decoder.feed(line[:10]) == []
    assert decoder.pending == line[:10]
    assert _texts(decoder.feed(line[10:])) == ["hi"]
    assert decoder.pending == ""


def test_flush_decodes_unterminated_last_line() -> None:
    decoder = StreamDecoder()
    assert decoder.feed(_result("done").rstrip("\n")) == []
    assert _texts(decoder.flush()) == ["done"]
    assert decoder.flush() == []


def test_too_deeply_nested_line_passes_through_raw() -> None:
    decoder = StreamDecoder()
    line = "[" * 200_000
    events = decoder.feed(line + "\n" + _delta("after"))
    assert events[0].kind == EventKind.TEXT
    assert events[0].raw
    assert events[0].text == line
    assert _texts(events[1:]) == ["after"]
