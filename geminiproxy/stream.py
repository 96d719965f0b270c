"""
Re-framing of a downstream SSE stream into OpenAI ``chat.completion.chunk`` frames.

Network chunks do not respect line boundaries, so bytes go through a
``LineSplitter`` that keeps the trailing partial line until the rest of it
arrives. Each complete line is parsed once into stream events, and the
``StreamReframer`` turns those events into outbound SSE frames.
"""
import codecs
import json
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any

from .errors import IncompleteStreamError, StreamDecodeError
from .models import ChatCompletionChunk, ChatCompletionChunkChoice

logger = logging.getLogger("geminiproxy.stream")

DATA_PREFIX = "data: "
DONE_FRAME = "data: [DONE]\n\n"

# Gemini finishReason -> OpenAI finish_reason
FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "BLOCKLIST": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
    "SPII": "content_filter",
}


@dataclass(frozen=True)
class Delta:
    text: str


@dataclass(frozen=True)
class Completion:
    finish_reason: str


@dataclass(frozen=True)
class Heartbeat:
    pass


StreamEvent = Delta | Completion | Heartbeat


class LineSplitter:
    """Incremental line splitter with carry-over between reads.

    ``feed`` accepts the next network chunk, ``next_line`` hands out complete
    lines one at a time and returns None when more input is needed.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)()
        self._buffer = ""
        self._lines: deque[str] = deque()

    def feed(self, chunk: bytes | str) -> None:
        if isinstance(chunk, bytes):
            try:
                chunk = self._decoder.decode(chunk)
            except UnicodeDecodeError as e:
                raise StreamDecodeError(f"Invalid encoding in stream: {e}") from e
        self._buffer += chunk
        parts = self._buffer.split("\n")
        # the last part is an unfinished line, keep it for the next chunk
        self._buffer = parts.pop()
        self._lines.extend(part.rstrip("\r") for part in parts)

    def next_line(self) -> str | None:
        if self._lines:
            return self._lines.popleft()
        return None

    @property
    def pending(self) -> str:
        return self._buffer

    def flush(self) -> str | None:
        """Return whatever is left once the input has ended."""
        try:
            self._buffer += self._decoder.decode(b"", final=True)
        except UnicodeDecodeError as e:
            raise StreamDecodeError(f"Truncated character at end of stream: {e}") from e
        rest, self._buffer = self._buffer.rstrip("\r"), ""
        return rest or None


def _openai_events(document: dict[str, Any]) -> list[StreamEvent]:
    choices = document["choices"]
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        raise StreamDecodeError("Stream event has no usable choices")
    choice = choices[0]

    events: list[StreamEvent] = []
    delta = choice.get("delta")
    if delta is not None:
        if not isinstance(delta, dict):
            raise StreamDecodeError("Stream event delta is not an object")
        content = delta.get("content")
        if content is not None and not isinstance(content, str):
            raise StreamDecodeError("Stream event delta content is not text")
        if content:
            events.append(Delta(content))

    finish_reason = choice.get("finish_reason")
    if finish_reason is not None and not isinstance(finish_reason, str):
        raise StreamDecodeError("Stream event finish_reason is not text")
    if finish_reason:
        events.append(Completion(finish_reason))
    return events


def _gemini_events(document: dict[str, Any]) -> list[StreamEvent]:
    candidates = document["candidates"]
    if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
        raise StreamDecodeError("Stream event has no usable candidates")
    candidate = candidates[0]

    events: list[StreamEvent] = []
    content = candidate.get("content")
    if content is not None:
        if not isinstance(content, dict) or not isinstance(content.get("parts", []), list):
            raise StreamDecodeError("Stream event candidate content is malformed")
        text = ""
        for part in content.get("parts", []):
            if not isinstance(part, dict):
                raise StreamDecodeError("Stream event candidate part is not an object")
            piece = part.get("text", "")
            if not isinstance(piece, str):
                raise StreamDecodeError("Stream event candidate text is not text")
            text += piece
        if text:
            events.append(Delta(text))

    reason = candidate.get("finishReason")
    if reason is not None and not isinstance(reason, str):
        raise StreamDecodeError("Stream event finishReason is not text")
    if reason and reason != "FINISH_REASON_UNSPECIFIED":
        events.append(Completion(FINISH_REASONS.get(reason, reason.lower())))
    return events


def parse_line(line: str) -> tuple[StreamEvent, ...]:
    """
    Parse one SSE line into the events it carries.

    Returns a 1-tuple ``(Heartbeat(),)`` for lines with nothing to forward,
    otherwise a Delta and/or a Completion, in that order.

    Raises:
        StreamDecodeError: the line has the ``data:`` prefix but its payload is
            not JSON or not a recognized event shape.
    """
    if not line.startswith(DATA_PREFIX):
        return (Heartbeat(),)
    payload = line[len(DATA_PREFIX):]
    if payload.strip() == "[DONE]":
        return (Heartbeat(),)

    try:
        document = json.loads(payload)
    except ValueError as e:
        raise StreamDecodeError(f"Malformed stream event: {e}") from e
    if not isinstance(document, dict):
        raise StreamDecodeError("Stream event is not a JSON object")

    if "choices" in document:
        events = _openai_events(document)
    elif "candidates" in document:
        events = _gemini_events(document)
    elif "usageMetadata" in document or "promptFeedback" in document:
        events = []
    else:
        raise StreamDecodeError(f"Unrecognized stream event: {payload[:200]}")
    return tuple(events) or (Heartbeat(),)


class StreamReframer:
    """Per-request state machine turning downstream bytes into OpenAI SSE frames."""

    def __init__(self, completion_id: str, model: str, created: int | None = None):
        self.completion_id = completion_id
        self.model = model
        self.created = int(time.time()) if created is None else created
        self.finished = False
        self._splitter = LineSplitter()

    def _frame(self, delta: dict[str, str], finish_reason: str | None = None) -> str:
        chunk = ChatCompletionChunk(
            id=self.completion_id,
            created=self.created,
            model=self.model,
            choices=[ChatCompletionChunkChoice(index=0, delta=delta, finish_reason=finish_reason)],
        )
        return f"data: {json.dumps(chunk.model_dump(), ensure_ascii=False)}\n\n"

    def _process(self, line: str) -> list[str]:
        frames = []
        for event in parse_line(line):
            if isinstance(event, Delta):
                frames.append(self._frame({"content": event.text}))
            elif isinstance(event, Completion):
                frames.append(self._frame({}, event.finish_reason))
                frames.append(DONE_FRAME)
                self.finished = True
        return frames

    def feed(self, chunk: bytes | str) -> list[str]:
        """Consume one network chunk and return the frames for its complete lines."""
        if self.finished:
            return []
        self._splitter.feed(chunk)
        frames = []
        while not self.finished:
            line = self._splitter.next_line()
            if line is None:
                break
            frames.extend(self._process(line))
        if self.finished and (self._splitter.next_line() is not None or self._splitter.pending):
            logger.debug("Ignoring downstream data after finish for %s", self.completion_id)
        return frames

    def close(self) -> list[str]:
        """Handle end of input: the leftover fragment is treated as a last line."""
        if self.finished:
            return []
        rest = self._splitter.flush()
        if rest is None:
            return []
        return self._process(rest)

    def check_complete(self) -> None:
        if not self.finished:
            raise IncompleteStreamError("Downstream stream ended without a finish reason")

    def error_frame(self, error: IncompleteStreamError) -> str:
        body = {"error": {"message": error.message, "type": "incomplete_stream"}}
        return f"data: {json.dumps(body)}\n\n"
