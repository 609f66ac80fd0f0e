"""
Event Stream Decoder

Turns the raw bytes of an invoke-with-response-stream response into provider
payloads, then into canonical stream events.

Two tiers:
1. Newline-delimited strict JSON. `{"bytes": <base64>}`, `{"body": <json str>}`
   and `{"chunk": {"bytes": ...}}` envelopes are unwrapped recursively.
2. Binary event-stream framing. The payload following an `:event-type`
   (or `:exception-type`) header marker is bounded by the frame prelude when it
   is consistent, else by the next marker. JSON payloads get the same
   unwrapping, other payloads become raw output, and a malformed frame is
   skipped. This is best-effort recovery; CRCs are not checked.

Text that is neither JSON nor framed is stripped of control markers and
non-printable characters and passed on as raw output.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from collections.abc import AsyncGenerator, AsyncIterator
from dataclasses import dataclass
from typing import Any

from src.adapters import ChunkState, get_adapter
from src.gateway.errors import ModelStreamError, ParseError
from src.gateway.models import Done, ModelFamily, TextDelta, ToolCallDetected, ToolResultReady

logger = logging.getLogger(__name__)

RAW_OUTPUT_KEY = "__raw_output__"
EXCEPTION_KEY = "__exception__"

MAX_UNWRAP_DEPTH = 8

_MARKER_RE = re.compile(rb":(event|exception)-type")
_CONTROL_MARKERS = (
    ":event-type",
    ":content-type",
    ":message-type",
    ":exception-type",
    "application/json",
)
_EXCEPTION_NAME_RE = re.compile(rb"[A-Za-z]+Exception")

# Event-stream frame layout
_PRELUDE_LEN = 12
_CRC_LEN = 4
_HEADER_TYPE_STRING = 7

_json_decoder = json.JSONDecoder()


def unwrap_payload(obj: Any, depth: int = 0) -> Any:
    """Peel `bytes`/`body`/`chunk` envelopes until the true event is reached."""
    if depth >= MAX_UNWRAP_DEPTH or not isinstance(obj, dict):
        return obj

    chunk = obj.get("chunk")
    if isinstance(chunk, dict) and "bytes" in chunk:
        return unwrap_payload(chunk, depth + 1)

    if isinstance(obj.get("bytes"), str):
        try:
            decoded = base64.b64decode(obj["bytes"], validate=True)
        except (binascii.Error, ValueError):
            logger.debug("Payload 'bytes' field is not valid base64")
            return obj
        text = decoded.decode("utf-8", errors="replace")
        try:
            return unwrap_payload(json.loads(text), depth + 1)
        except json.JSONDecodeError:
            cleaned = clean_text(text)
            return {RAW_OUTPUT_KEY: cleaned} if cleaned else None

    if isinstance(obj.get("body"), str):
        try:
            return unwrap_payload(json.loads(obj["body"]), depth + 1)
        except json.JSONDecodeError:
            cleaned = clean_text(obj["body"])
            return {RAW_OUTPUT_KEY: cleaned} if cleaned else None

    for key, value in obj.items():
        if key.endswith("Exception") and isinstance(value, dict):
            return {EXCEPTION_KEY: {"type": key, "message": value.get("message", "")}}

    return obj


def clean_text(text: str) -> str:
    """Remove event-stream control markers and anything non-printable."""
    for marker in _CONTROL_MARKERS:
        text = text.replace(marker, "")
    text = "".join(ch for ch in text if ch in "\n\t" or (ch.isprintable() and ch != "\ufffd"))
    return text.strip()


def _exception_name(data: bytes, marker_end: int) -> str:
    """Read the header value after `:exception-type` (type byte, 2-byte length, name)."""
    try:
        length = int.from_bytes(data[marker_end + 1 : marker_end + 3], "big")
        name = data[marker_end + 3 : marker_end + 3 + length].decode("ascii")
        if name and name.isprintable():
            return name
    except (UnicodeDecodeError, ValueError):
        pass
    match = _EXCEPTION_NAME_RE.search(data, marker_end)
    return match.group(0).decode("ascii") if match else "UnknownException"


def _skip_headers(data: bytes, pos: int, limit: int) -> int | None:
    """Walk string headers (name length, name, type 7, 2-byte value length, value) from `pos`."""
    start = pos
    limit = min(limit, len(data))
    while pos < limit:
        name_len = data[pos]
        type_at = pos + 1 + name_len
        if not data.startswith(b":", pos + 1) or type_at + 3 > limit or data[type_at] != _HEADER_TYPE_STRING:
            break
        pos = type_at + 3 + int.from_bytes(data[type_at + 1 : type_at + 3], "big")
    return pos if pos > start else None


@dataclass
class _Segment:
    """Where one marker's payload lives in the buffer."""

    payload_start: int
    payload_end: int
    raw_end: int
    complete: bool
    next_frame: int
    verified: bool


def _frame_segment(data: bytes, marker: re.Match[bytes], next_marker: int | None, final: bool) -> _Segment:
    # Prelude: total length, headers length, prelude CRC; the marker header is assumed first
    marker_start = marker.start()
    frame_start = marker_start - 1 - _PRELUDE_LEN
    if frame_start >= 0:
        total_len = int.from_bytes(data[frame_start : frame_start + 4], "big")
        headers_end = frame_start + _PRELUDE_LEN + int.from_bytes(data[frame_start + 4 : frame_start + 8], "big")
        frame_end = frame_start + total_len
        if (
            headers_end > marker_start
            and frame_end >= headers_end + _CRC_LEN
            and (next_marker is None or frame_end <= next_marker)
            and _skip_headers(data, marker_start - 1, headers_end) == headers_end
        ):
            payload_end = min(frame_end - _CRC_LEN, len(data))
            return _Segment(
                headers_end,
                payload_end,
                payload_end,
                frame_end <= len(data) or final,
                min(frame_end, len(data)),
                verified=True,
            )

    payload_start = (_skip_headers(data, marker_start - 1, len(data)) if marker_start else None) or marker.end()
    if next_marker is None:
        return _Segment(payload_start, len(data), len(data), final, len(data), verified=False)
    next_frame = max(next_marker - 1 - _PRELUDE_LEN, payload_start)
    return _Segment(
        payload_start,
        next_marker,
        max(next_frame - _CRC_LEN, payload_start),
        True,
        next_frame,
        verified=False,
    )


def extract_fragments(data: bytes, final: bool = False) -> tuple[list[Any], int]:
    """
    Parse the payload that follows every header marker.

    JSON payloads are unwrapped like line payloads; anything else becomes
    cleaned raw output. A frame whose JSON is malformed is skipped once a
    later frame shows it is complete. With `final` the last frame is taken
    as whatever bytes remain.

    Returns the payloads and the offset up to which the buffer was handled.
    """
    payloads: list[Any] = []
    consumed = 0
    markers = list(_MARKER_RE.finditer(data))
    for i, match in enumerate(markers):
        if match.start() < consumed:
            continue
        next_marker = markers[i + 1].start() if i + 1 < len(markers) else None
        segment = _frame_segment(data, match, next_marker, final)
        is_exception = match.group(1) == b"exception"

        brace = data.find(b"{", segment.payload_start, segment.payload_end)
        if segment.verified and brace != -1 and data[segment.payload_start : brace].strip():
            # Known payload bounds: only a payload that starts as JSON is parsed as JSON
            brace = -1

        if brace == -1:
            if not segment.complete:
                break
            text = clean_text(data[segment.payload_start : segment.raw_end].decode("utf-8", errors="replace"))
            consumed = segment.next_frame
            if is_exception:
                payloads.append({EXCEPTION_KEY: {"type": _exception_name(data, match.end()), "message": text}})
            elif text:
                payloads.append({RAW_OUTPUT_KEY: text})
            continue

        # surrogateescape keeps the byte offset of the fragment end exact
        text = data[brace : segment.payload_end].decode("utf-8", errors="surrogateescape")
        try:
            obj, end = _json_decoder.raw_decode(text)
        except json.JSONDecodeError as e:
            if not segment.complete:
                # Incomplete fragment, wait for more bytes
                break
            logger.warning("Skipping malformed event-stream frame at byte %d: %s", match.start(), e)
            consumed = segment.next_frame
            continue
        fragment_end = brace + len(text[:end].encode("utf-8", errors="surrogateescape"))
        consumed = segment.next_frame if segment.verified and segment.complete else fragment_end

        if is_exception:
            message = obj.get("message", "") if isinstance(obj, dict) else str(obj)
            payloads.append(
                {EXCEPTION_KEY: {"type": _exception_name(data, match.end()), "message": message}}
            )
            continue

        payload = unwrap_payload(obj)
        if payload is not None:
            payloads.append(payload)
    return payloads, consumed


class EventStreamDecoder:
    """
    Incremental decoder for one response stream.

    Bytes that do not yet form a complete line or fragment stay in the buffer
    and are retried with the next chunk.
    """

    def __init__(self) -> None:
        self._buffer = b""
        self.binary_framed = False
        self.fallback_count = 0

    def feed(self, chunk: bytes) -> list[Any]:
        self._buffer += chunk

        if self.binary_framed or _MARKER_RE.search(self._buffer):
            self.binary_framed = True
            return self._drain_fragments()

        payloads: list[Any] = []
        while b"\n" in self._buffer:
            line, self._buffer = self._buffer.split(b"\n", 1)
            payloads.extend(self._parse_line(line))
        return payloads

    def flush(self) -> list[Any]:
        """Parse whatever is left at end of stream."""
        remaining, self._buffer = self._buffer, b""
        if not remaining.strip():
            return []

        if self.binary_framed:
            payloads, consumed = extract_fragments(remaining, final=True)
            if payloads:
                self.fallback_count += 1
            residue = remaining[consumed:]
            if residue.strip():
                logger.debug("Discarding %d bytes of frame residue at end of stream", len(residue))
            return payloads
        return self._parse_line(remaining)

    def _drain_fragments(self) -> list[Any]:
        payloads, consumed = extract_fragments(self._buffer)
        if consumed:
            self.fallback_count += 1
            self._buffer = self._buffer[consumed:]
        return payloads

    def _parse_line(self, line: bytes) -> list[Any]:
        stripped = line.strip()
        if not stripped:
            return []

        try:
            obj = json.loads(stripped)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return self._raw_output(stripped)

        payload = unwrap_payload(obj)
        return [payload] if payload is not None else []

    def _raw_output(self, stripped: bytes) -> list[Any]:
        text = clean_text(stripped.decode("utf-8", errors="replace"))
        if text:
            self.fallback_count += 1
            logger.debug("Emitting %d characters of unparsed stream output as raw text", len(text))
            return [{RAW_OUTPUT_KEY: text}]
        return []


def parse_response_body(raw: bytes | str) -> Any:
    """Non-streaming path: one strict JSON parse, no fallback."""
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ParseError(f"Response body is not valid JSON: {e}") from e


def _payload_events(
    payload: Any, family: ModelFamily, state: ChunkState
) -> list[TextDelta | ToolCallDetected | ToolResultReady]:
    if isinstance(payload, dict):
        if RAW_OUTPUT_KEY in payload:
            return [TextDelta(content=payload[RAW_OUTPUT_KEY])]
        if EXCEPTION_KEY in payload:
            detail = payload[EXCEPTION_KEY]
            raise ModelStreamError(detail.get("type", "Exception"), detail.get("message", ""))
    return get_adapter(family).decode_chunk(payload, state)


async def decode_stream(
    byte_iter: AsyncIterator[bytes], family: ModelFamily
) -> AsyncGenerator[TextDelta | ToolCallDetected | ToolResultReady | Done]:
    """
    Decode a response byte stream into canonical events, ending with Done.

    Raises:
        ModelStreamError: the stream carried an exception frame or error event
    """
    decoder = EventStreamDecoder()
    state = ChunkState()

    async for chunk in byte_iter:
        for payload in decoder.feed(chunk):
            for event in _payload_events(payload, family, state):
                yield event

    for payload in decoder.flush():
        for event in _payload_events(payload, family, state):
            yield event

    for event in get_adapter(family).finish(state):
        yield event

    if decoder.fallback_count:
        logger.debug("Stream decoded with %d fallback parse(s)", decoder.fallback_count)
    yield Done()
