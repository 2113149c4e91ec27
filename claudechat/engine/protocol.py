"""Decoder for the Claude CLI ``--output-format stream-json`` protocol.

The CLI writes one JSON record per line. Output arrives in arbitrary
chunks, so the decoder buffers until a newline and classifies each
complete line into a StreamEvent.

Record types handled:
  system        — carries the CLI ``session_id`` (resumable with -r)
  stream_event  — partial-message events (needs --include-partial-messages)
                  content_block_delta/text_delta carries answer text,
                  message_stop ends a message
  assistant     — the complete assistant message
  result        — the final answer text
  error         — an error payload

The same answer may be reported three times (deltas, assistant message,
result). It is surfaced exactly once, preferring deltas, then the
assistant message, then the result.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class EventKind(Enum):
    SESSION_ID = "session_id"
    TEXT = "text"
    MESSAGE_COMPLETE = "message_complete"
    ERROR = "error"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True)
class StreamEvent:
    kind: EventKind
    text: str = ""
    session_id: str | None = None
    payload: Any = None
    # True when the text is a non-JSON line passed through verbatim.
    raw: bool = False
    record_type: str | None = None


@dataclass
class DecoderState:
    """Sticky per-stream flags that enforce emit-once."""
    text_delta_seen: bool = False
    assistant_message_emitted: bool = False


class StreamDecoder:
    """Line-buffering stream-json classifier for a single CLI run."""

    def __init__(self) -> None:
        self._buffer = ""
        self.state = DecoderState()

    @property
    def pending(self) -> str:
        """Partial line waiting for its newline."""
        return self._buffer

    def feed(self, chunk: str) -> list[StreamEvent]:
        """Buffer ``chunk`` and decode every line it completes."""
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        events: list[StreamEvent] = []
        for line in lines:
            events.extend(self.decode_line(line))
        return events

    def flush(self) -> list[StreamEvent]:
        """Decode the trailing unterminated line once the stream has ended."""
        line, self._buffer = self._buffer, ""
        return self.decode_line(line)

    def decode_line(self, line: str) -> list[StreamEvent]:
        stripped = line.strip()
        if not stripped:
            return []
        logger.debug("Processing line: %s", stripped[:200])

        try:
            record = json.loads(stripped)
        except (ValueError, RecursionError):
            # RecursionError: nesting deeper than the JSON parser allows.
            logger.debug("Not JSON, passing through raw: %s", stripped[:100])
            return [StreamEvent(EventKind.TEXT, text=line.rstrip("\r"), raw=True)]

        if not isinstance(record, dict):
            return [StreamEvent(EventKind.TEXT, text=line.rstrip("\r"), raw=True)]

        try:
            return self._classify(record)
        except (AttributeError, KeyError, TypeError, RecursionError) as exc:
            logger.warning(
                "Malformed %s record (%s), passing through raw",
                record.get("type"), exc,
            )
            return [StreamEvent(EventKind.TEXT, text=line.rstrip("\r"), raw=True)]

    def _classify(self, record: dict[str, Any]) -> list[StreamEvent]:
        rtype = record.get("type")

        # ── system (session id announcement) ──
        if rtype == "system" and record.get("session_id"):
            return [StreamEvent(
                EventKind.SESSION_ID,
                session_id=str(record["session_id"]),
                record_type=rtype,
            )]

        if rtype == "stream_event":
            event = record.get("event") or {}
            etype = event.get("type")

            # ── streamed delta ──
            if etype == "content_block_delta":
                delta = event.get("delta") or {}
                if delta.get("type") == "text_delta" and delta.get("text"):
                    self.state.text_delta_seen = True
                    return [StreamEvent(
                        EventKind.TEXT, text=delta["text"], record_type=rtype,
                    )]
                # input_json_delta (tool call arguments) and friends
                logger.debug("Skipping delta type: %s", delta.get("type"))
                return []

            if etype == "message_stop":
                return [StreamEvent(EventKind.MESSAGE_COMPLETE, record_type=rtype)]

        # ── assistant (complete message) ──
        if rtype == "assistant":
            content = (record.get("message") or {}).get("content") or []
            texts = [
                block["text"]
                for block in content
                if block.get("type") == "text" and block.get("text")
            ]
            if not texts:
                return []
            if self.state.assistant_message_emitted:
                return []
            self.state.assistant_message_emitted = True
            if self.state.text_delta_seen:
                logger.debug("Skipping assistant message (text_delta already received)")
                return []
            return [
                StreamEvent(EventKind.TEXT, text=text, record_type=rtype)
                for text in texts
            ]

        # ── result (final output) ──
        if rtype == "result":
            result = record.get("result")
            if (
                not result
                or self.state.assistant_message_emitted
                or self.state.text_delta_seen
            ):
                return []
            return [StreamEvent(EventKind.TEXT, text=str(result), record_type=rtype)]

        if rtype == "error":
            return [StreamEvent(
                EventKind.ERROR, payload=record.get("error"), record_type=rtype,
            )]

        return [StreamEvent(EventKind.UNRECOGNIZED, payload=record, record_type=rtype)]
