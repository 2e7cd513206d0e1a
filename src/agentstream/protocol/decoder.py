"""Line framing and JSON decoding for the agent's stdout byte stream."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from agentstream.constants import MAX_LINE_BYTES

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Record:
    """One framed stdout line, decoded if it was a JSON object."""

    raw: str
    data: dict[str, Any] | None = None
    error: str | None = None

    @property
    def is_json(self) -> bool:
        return self.data is not None


class LineDecoder:
    """Split an arbitrarily chunked byte stream into newline-terminated lines.

    Bytes are buffered until a ``\\n`` arrives; a line is only decoded to
    text once complete, so multi-byte UTF-8 sequences split across chunks
    come out intact and the output never depends on chunk boundaries.

    Lines longer than *max_line_bytes* are cut to that size and the rest of
    the line is discarded up to the next newline.
    """

    def __init__(self, name: str = "stream", max_line_bytes: int = MAX_LINE_BYTES) -> None:
        self._name = name
        self._max_line_bytes = max_line_bytes
        self._buffer = bytearray()
        # True while discarding the tail of an oversized line.
        self._overflow = False
        self._closed = False

    def feed(self, chunk: bytes) -> list[str]:
        """Consume *chunk* and return every line it completes."""
        if self._closed:
            msg = "LineDecoder is closed"
            raise RuntimeError(msg)

        lines: list[str] = []
        start = 0
        while True:
            newline = chunk.find(b"\n", start)
            piece = chunk[start:] if newline == -1 else chunk[start:newline]
            self._append(piece)
            if newline == -1:
                break
            lines.append(self._take_line())
            start = newline + 1
        return lines

    def close(self) -> list[str]:
        """Flush a non-empty trailing partial line (no newline at EOF)."""
        if self._closed:
            return []
        self._closed = True
        if not self._buffer:
            return []
        return [self._take_line()]

    @property
    def pending_bytes(self) -> int:
        """Bytes buffered for the current partial line."""
        return len(self._buffer)

    def _append(self, piece: bytes) -> None:
        if self._overflow or not piece:
            return
        room = self._max_line_bytes - len(self._buffer)
        if len(piece) > room:
            self._buffer.extend(piece[:room])
            self._overflow = True
            logger.warning(
                "%s: stdout line exceeds %d bytes, truncating",
                self._name,
                self._max_line_bytes,
            )
        else:
            self._buffer.extend(piece)

    def _take_line(self) -> str:
        line = bytes(self._buffer).decode("utf-8", errors="replace")
        self._buffer.clear()
        self._overflow = False
        if line.endswith("\r"):
            line = line[:-1]
        return line


def decode_line(line: str) -> Record:
    """Decode *line* as a JSON object.  Never raises.

    Anything that is not a JSON object (invalid JSON, or a JSON scalar or
    array) comes back as a :class:`Record` with ``data=None`` and the
    reason in ``error``.
    """
    text = line.strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        return Record(raw=line, error=f"invalid JSON: {exc.msg} at column {exc.colno}")
    except RecursionError:
        return Record(raw=line, error="invalid JSON: nesting too deep")

    if not isinstance(data, dict):
        return Record(raw=line, error=f"expected a JSON object, got {type(data).__name__}")
    return Record(raw=line, data=data)
