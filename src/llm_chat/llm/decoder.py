"""Incremental decoding of streamed completion bodies.

Backends that call themselves OpenAI-compatible disagree on framing. Some send
proper SSE `data: {...}` frames with chat deltas, some send legacy completion
`text` fields, some send bare JSON lines and some just stream plain text. The
decoder tries an ordered list of shape strategies on every line and drops lines
that match none of them instead of failing the stream.
"""

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .types import StreamDelta

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"
SSE_FIELDS = ("event:", "id:", "retry:")


@dataclass(frozen=True)
class LineMatch:
    """What a strategy recognised in one decoded JSON line."""
    text: Optional[str] = None
    finish_reason: Optional[str] = None
    error: Optional[str] = None


def _first_choice(payload: dict) -> Optional[dict]:
    choices = payload.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        return choices[0]
    return None


def match_error(payload: Any) -> Optional[LineMatch]:
    """`{"error": {"message": ...}}` or `{"error": "..."}` frames."""
    if not isinstance(payload, dict) or "error" not in payload:
        return None
    error = payload["error"]
    if isinstance(error, dict):
        message = error.get("message") or error.get("type") or "upstream error"
    else:
        message = str(error) if error else "upstream error"
    return LineMatch(error=str(message))


def match_chat_delta(payload: Any) -> Optional[LineMatch]:
    """OpenAI chat chunks: `{choices: [{delta: {content?}, finish_reason?}]}`."""
    if not isinstance(payload, dict):
        return None
    choice = _first_choice(payload)
    if choice is None or not isinstance(choice.get("delta"), dict):
        return None
    content = choice["delta"].get("content")
    finish_reason = choice.get("finish_reason")
    if content is not None and not isinstance(content, str):
        return None
    if finish_reason is not None and not isinstance(finish_reason, str):
        finish_reason = None
    return LineMatch(text=content or None, finish_reason=finish_reason)


def _dig(payload: Any, *path) -> Optional[str]:
    node = payload
    for key in path:
        if isinstance(key, int):
            if not isinstance(node, list) or len(node) <= key:
                return None
        elif not isinstance(node, dict):
            return None
        node = node[key] if isinstance(key, int) else node.get(key)
    return node if isinstance(node, str) else None


# Priority order for providers that do not follow the chat-delta schema.
GENERIC_CONTENT_PATHS: list[tuple] = [
    ("choices", 0, "delta", "content"),
    ("choices", 0, "text"),
    ("choices", 0, "content"),
    ("content",),
    ("text",),
    ("message", "content"),
    ("response",),
]


def match_generic(payload: Any) -> Optional[LineMatch]:
    for path in GENERIC_CONTENT_PATHS:
        text = _dig(payload, *path)
        if text is not None:
            return LineMatch(text=text)
    return None


STRATEGIES: list[Callable[[Any], Optional[LineMatch]]] = [
    match_error,
    match_chat_delta,
    match_generic,
]


_UNDECODABLE = object()


def _load_json(raw: str) -> Any:
    """Parse a JSON line, or return `_UNDECODABLE`; deeply nested input counts as undecodable."""
    try:
        return json.loads(raw)
    except (ValueError, RecursionError):
        return _UNDECODABLE


def _could_become_framed(fragment: str) -> bool:
    """Whether an unterminated fragment may still turn into a framed line."""
    stripped = fragment.lstrip()
    if not stripped:
        return True
    if stripped.startswith(("{", ":")):
        return True
    for prefix in (DATA_PREFIX, *SSE_FIELDS):
        if stripped.startswith(prefix) or prefix.startswith(stripped):
            return True
    return False


class StreamDecoder:
    """Turns raw response body chunks into `StreamDelta` values.

    One decoder serves exactly one response body. After the `[DONE]` sentinel
    or an error frame it is terminated and ignores further input.
    """

    def __init__(self, strategies: Optional[list[Callable[[Any], Optional[LineMatch]]]] = None):
        self.strategies = strategies or STRATEGIES
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""
        self.finish_reason: Optional[str] = None
        self.terminated = False

    def feed(self, chunk: bytes | str) -> list[StreamDelta]:
        """Decode one chunk; an unterminated trailing line is held back."""
        if self.terminated:
            return []
        text = self._utf8.decode(chunk) if isinstance(chunk, bytes) else chunk
        self._pending += text
        lines = self._pending.replace("\r\n", "\n").replace("\r", "\n").split("\n")
        self._pending = lines.pop()

        deltas = self._decode_lines(lines)
        # Plain-text providers may never send a newline, so do not hold their
        # output back waiting for one.
        if self._pending and not self.terminated and not _could_become_framed(self._pending):
            fragment, self._pending = self._pending, ""
            deltas.append(StreamDelta(text=fragment))
        return deltas

    def finish(self) -> list[StreamDelta]:
        """Flush whatever is left once the body has ended."""
        if self.terminated:
            return []
        self._pending += self._utf8.decode(b"", final=True)
        remainder, self._pending = self._pending, ""
        return self._decode_lines([remainder])

    def _decode_lines(self, lines: list[str]) -> list[StreamDelta]:
        deltas: list[StreamDelta] = []
        for line in lines:
            if self.terminated:
                break
            delta = self.decode_line(line)
            if delta is not None:
                deltas.append(delta)
        return deltas

    def decode_line(self, line: str) -> Optional[StreamDelta]:
        stripped = line.strip()
        if not stripped:
            return None
        if stripped.startswith(":") or stripped.startswith(SSE_FIELDS):
            return None

        if stripped.startswith(DATA_PREFIX):
            payload = stripped[len(DATA_PREFIX):].strip()
            if payload == DONE_SENTINEL:
                self.terminated = True
                return StreamDelta(text="", is_final=True)
            if not payload:
                return None
            if payload.startswith("{"):
                return self._decode_json(payload)
            if payload.startswith("["):
                # Bracketed plain text such as "[1] Smith et al." is still text.
                decoded = _load_json(payload)
                if decoded is _UNDECODABLE:
                    return StreamDelta(text=payload)
                return self._match(decoded, payload)
            return StreamDelta(text=payload)

        if stripped.startswith("{"):
            return self._decode_json(stripped)
        return StreamDelta(text=line.rstrip("\n"))

    def _decode_json(self, raw: str) -> Optional[StreamDelta]:
        payload = _load_json(raw)
        if payload is _UNDECODABLE:
            logger.debug("Dropping undecodable stream line: %.200s", raw)
            return None
        return self._match(payload, raw)

    def _match(self, payload: Any, raw: str) -> Optional[StreamDelta]:
        for strategy in self.strategies:
            match = strategy(payload)
            if match is None:
                continue
            if match.error is not None:
                self.terminated = True
                return StreamDelta(text=f"Error: {match.error}", is_final=True, is_error=True)
            if match.finish_reason:
                self.finish_reason = match.finish_reason
            if match.text:
                return StreamDelta(text=match.text)
            return None

        logger.debug("Dropping stream line with unknown shape: %.200s", raw)
        return None


def decode_stream(body: bytes | str) -> list[StreamDelta]:
    """Decode a complete body in one go."""
    decoder = StreamDecoder()
    return decoder.feed(body) + decoder.finish()
