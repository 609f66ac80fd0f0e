#!/usr/bin/env python3
"""
Tests for the event stream decoder: strict line-delimited JSON, envelope
unwrapping, the binary-frame fallback and end-to-end event decoding.
"""

import asyncio
import base64
import json

import pytest

from src.clients.event_stream import (
    EXCEPTION_KEY,
    RAW_OUTPUT_KEY,
    EventStreamDecoder,
    clean_text,
    decode_stream,
    extract_fragments,
    parse_response_body,
    unwrap_payload,
)
from src.gateway.errors import ModelStreamError, ParseError
from src.gateway.models import Done, ModelFamily, TextDelta, ToolCallDetected

TEXT_DELTA = {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hello"}}


def _b64(obj) -> str:
    return base64.b64encode(json.dumps(obj).encode()).decode()


def _frame(payload, event_type: bytes = b"chunk") -> bytes:
    """Rough imitation of one event-stream frame: prelude, headers, JSON, CRC."""
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    headers = b"\x0b:event-type\x07\x00" + bytes([len(event_type)]) + event_type
    headers += b"\x0d:content-type\x07\x00\x10application/json"
    return b"\x00\x00\x00\x9b\x00\x00\x00\x4b\x1c\x2d\x3e\x4f" + headers + body + b"\x8f\xa1\x03\x04"


def _sized_frame(body: bytes, event_type: bytes = b"chunk") -> bytes:
    """Frame whose prelude carries the real total and header lengths (CRCs are dummies)."""
    headers = b"\x0b:event-type\x07\x00" + bytes([len(event_type)]) + event_type
    headers += b"\x0d:content-type\x07\x00\x10application/json"
    total = 12 + len(headers) + len(body) + 4
    prelude = total.to_bytes(4, "big") + len(headers).to_bytes(4, "big") + b"\x1c\x2d\x3e\x4f"
    return prelude + headers + body + b"\x8f\xa1\x03\x04"


async def _collect(chunks: list[bytes], family: ModelFamily = ModelFamily.CLAUDE) -> list:
    async def byte_iter():
        for chunk in chunks:
            yield chunk

    return [event async for event in decode_stream(byte_iter(), family)]


def test_unwrap_nested_envelopes():
    inner = {"type": "message_stop"}
    assert unwrap_payload({"chunk": {"bytes": _b64(inner)}}) == inner
    assert unwrap_payload({"body": json.dumps({"bytes": _b64(inner)})}) == inner
    assert unwrap_payload(inner) == inner


def test_unwrap_non_json_bytes_becomes_raw_output():
    payload = unwrap_payload({"bytes": base64.b64encode(b"plain words").decode()})
    assert payload == {RAW_OUTPUT_KEY: "plain words"}


def test_unwrap_exception_key():
    payload = unwrap_payload({"throttlingException": {"message": "Too many requests"}})
    assert payload == {EXCEPTION_KEY: {"type": "throttlingException", "message": "Too many requests"}}


def test_line_mode_handles_split_lines():
    decoder = EventStreamDecoder()
    line = json.dumps({"bytes": _b64(TEXT_DELTA)}).encode() + b"\n"

    assert decoder.feed(line[:10]) == []
    assert decoder.feed(line[10:]) == [TEXT_DELTA]
    assert decoder.flush() == []
    assert decoder.fallback_count == 0
    assert not decoder.binary_framed


def test_complete_json_never_uses_fallback():
    decoder = EventStreamDecoder()
    body = json.dumps({"content": [{"type": "text", "text": "done"}]}).encode()

    assert decoder.feed(body) == []
    assert decoder.flush() == [{"content": [{"type": "text", "text": "done"}]}]
    assert decoder.fallback_count == 0


def test_binary_fragment_with_trailing_garbage_yields_one_event():
    decoder = EventStreamDecoder()
    data = _frame({"bytes": _b64(TEXT_DELTA)}) + b"\x00\x17garbage\xff\xfe"

    payloads = decoder.feed(data) + decoder.flush()

    assert payloads == [TEXT_DELTA]
    assert decoder.binary_framed


def test_binary_fragment_split_across_chunks():
    decoder = EventStreamDecoder()
    data = _frame({"bytes": _b64(TEXT_DELTA)}) + _frame({"bytes": _b64({"type": "message_stop"})})
    cut = data.index(b"{") + 5

    first = decoder.feed(data[:cut])
    rest = decoder.feed(data[cut:])

    assert first == []
    assert rest == [TEXT_DELTA, {"type": "message_stop"}]


def test_exception_frame_is_decoded():
    frame = b"\x00\x00\x00\x80\x00\x00\x00\x40\x00\x00\x00\x00"
    frame += b"\x0f:exception-type\x07\x00\x13throttlingException"
    frame += b'{"message":"Rate exceeded"}\x00\x00\x00\x00'

    payloads, consumed = extract_fragments(frame)

    assert payloads == [{EXCEPTION_KEY: {"type": "throttlingException", "message": "Rate exceeded"}}]
    assert consumed == len(frame) - 4


def test_malformed_frame_does_not_block_later_frames():
    after = {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "after"}}
    data = _frame(b'{"bytes":"AAA') + _frame({"bytes": _b64(after)})

    events = asyncio.run(_collect([data]))

    assert events == [TextDelta(content="after"), Done()]


def test_malformed_sized_frame_is_skipped_immediately():
    decoder = EventStreamDecoder()
    data = _sized_frame(b'{"bytes":"AAA') + _sized_frame(json.dumps({"bytes": _b64(TEXT_DELTA)}).encode())

    assert decoder.feed(data) == [TEXT_DELTA]
    assert decoder.flush() == []


def test_non_json_frame_payload_becomes_raw_output():
    decoder = EventStreamDecoder()

    # Declared length runs past the buffer, so the text is only released at end of stream
    assert decoder.feed(_frame(b"plain model text")) == []
    assert decoder.flush() == [{RAW_OUTPUT_KEY: "plain model text"}]

    decoder = EventStreamDecoder()
    assert decoder.feed(_sized_frame(b"plain model text")) == [{RAW_OUTPUT_KEY: "plain model text"}]


def test_non_json_frame_payload_streams_as_text():
    events = asyncio.run(_collect([_sized_frame(b"plain model text")]))
    assert events == [TextDelta(content="plain model text"), Done()]


def test_fragment_end_is_exact_bytes_around_non_utf8():
    body = '{"text": "héllo ✓"}'.encode()
    frame = _frame(body)

    payloads, consumed = extract_fragments(frame)

    assert payloads == [{"text": "héllo ✓"}]
    assert consumed == len(frame) - 4


def test_unparseable_line_becomes_clean_raw_text():
    decoder = EventStreamDecoder()
    payloads = decoder.feed(b"\x01partial \xffanswer\n")

    assert payloads == [{RAW_OUTPUT_KEY: "partial answer"}]
    assert decoder.fallback_count == 1


def test_clean_text_strips_markers():
    assert clean_text(":content-type application/json  Hi\x07") == "Hi"


def test_parse_response_body():
    assert parse_response_body(b'{"a": 1}') == {"a": 1}
    with pytest.raises(ParseError):
        parse_response_body(b"<html>oops</html>")


def test_decode_stream_emits_events_then_done():
    tool_start = {
        "type": "content_block_start",
        "index": 1,
        "content_block": {"type": "tool_use", "id": "toolu_9", "name": "arxiv_search", "input": {}},
    }
    tool_delta = {
        "type": "content_block_delta",
        "index": 1,
        "delta": {"type": "input_json_delta", "partial_json": '{"search_query": "all:llm"}'},
    }
    lines = [json.dumps({"chunk": {"bytes": _b64(obj)}}).encode() + b"\n" for obj in (TEXT_DELTA, tool_start, tool_delta)]

    # No content_block_stop: the open call is flushed when the stream ends
    events = asyncio.run(_collect([b"".join(lines)]))

    assert events == [
        TextDelta(content="Hello"),
        ToolCallDetected(id="toolu_9", name="arxiv_search", arguments_json='{"search_query": "all:llm"}'),
        Done(),
    ]


def test_decode_stream_binary_frames():
    events = asyncio.run(_collect([_frame({"bytes": _b64(TEXT_DELTA)}), _frame({"bytes": _b64({"type": "message_stop"})})]))
    assert events == [TextDelta(content="Hello"), Done()]


def test_decode_stream_raises_on_exception_frame():
    chunk = json.dumps({"modelStreamErrorException": {"message": "Model failed"}}).encode() + b"\n"

    with pytest.raises(ModelStreamError) as exc_info:
        asyncio.run(_collect([chunk]))
    assert exc_info.value.error_type == "modelStreamErrorException"
    assert exc_info.value.kind == "ModelError"


def test_decode_stream_nova_family():
    chunks = [
        json.dumps({"bytes": _b64({"contentBlockDelta": {"contentBlockIndex": 0, "delta": {"text": "Hi"}}})}).encode() + b"\n",
        json.dumps({"bytes": _b64({"messageStop": {"stopReason": "end_turn"}})}).encode() + b"\n",
    ]
    assert asyncio.run(_collect(chunks, ModelFamily.NOVA)) == [TextDelta(content="Hi"), Done()]
