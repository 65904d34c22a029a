# src/polychat/services/streaming.py
"""
Frame decoders for the two streaming wire shapes.

Both take an iterable of raw byte chunks (as read off the socket, split
anywhere, including inside a multi-byte character) and yield text tokens in
arrival order. A line only counts once its '\n' has arrived; whatever is left
when the body ends is treated as a final line.
"""
from __future__ import annotations
import codecs
import json
import logging
from typing import Any, Dict, Iterable, Iterator, List, Optional

from polychat.core.errors import ProtocolError, ProviderClientError

logger = logging.getLogger(__name__)

SSE_DATA_PREFIX = "data: "
SSE_DONE = "[DONE]"


class LineDecoder:
    """Incremental UTF-8 -> complete lines. Strips the trailing '\r' of CRLF."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> List[str]:
        self._buffer += self._decoder.decode(chunk)
        if "\n" not in self._buffer:
            return []
        *lines, self._buffer = self._buffer.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> List[str]:
        self._buffer += self._decoder.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        tail = tail.rstrip("\r")
        return [tail] if tail else []


def iter_lines(chunks: Iterable[bytes]) -> Iterator[str]:
    decoder = LineDecoder()
    for chunk in chunks:
        yield from decoder.feed(chunk)
    yield from decoder.flush()


def _parse_frame(payload: str) -> Dict[str, Any]:
    try:
        obj = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Malformed frame: {e.msg}") from e
    if not isinstance(obj, dict):
        raise ProtocolError("Frame is not a JSON object")
    return obj


def _error_message(err: Any) -> str:
    if isinstance(err, dict):
        return str(err.get("message") or err)
    return str(err)


def ndjson_token(line: str) -> Optional[str]:
    """One NDJSON line -> its token, or None. Raises ProtocolError / ProviderClientError."""
    if not line.strip():
        return None
    frame = _parse_frame(line)
    if frame.get("error"):
        raise ProviderClientError(_error_message(frame["error"]))
    message = frame.get("message")
    if isinstance(message, dict):
        content = message.get("content")
        if isinstance(content, str) and content:
            return content
    return None


def ndjson_tokens(chunks: Iterable[bytes]) -> Iterator[str]:
    """Ollama-style body: one JSON object per line, no sentinel."""
    for line in iter_lines(chunks):
        try:
            token = ndjson_token(line)
        except ProtocolError as e:
            logger.warning("Skipping NDJSON line: %s", e)
            continue
        if token:
            yield token


def sse_tokens(chunks: Iterable[bytes]) -> Iterator[str]:
    """
    OpenAI-style event stream. Only 'data: ' lines matter.
    'data: [DONE]' ends the stream; nothing after it is read.
    """
    for line in iter_lines(chunks):
        if not line.startswith(SSE_DATA_PREFIX):
            continue
        payload = line[len(SSE_DATA_PREFIX):].strip()
        if payload == SSE_DONE:
            return
        try:
            frame = _parse_frame(payload)
        except ProtocolError as e:
            logger.warning("Skipping SSE line: %s", e)
            continue
        if frame.get("error"):
            raise ProviderClientError(_error_message(frame["error"]))
        try:
            piece = frame["choices"][0]["delta"].get("content")
        except (KeyError, IndexError, TypeError, AttributeError):
            piece = None
        if isinstance(piece, str) and piece:
            yield piece
