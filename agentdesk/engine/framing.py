"""Newline framing for the agent's stdout stream.

The agent writes one JSON document per line, but pipe reads hand us
arbitrary chunks. LineFramer buffers the partial tail between reads so
no record is ever dropped or split.
"""
from __future__ import annotations

import codecs


class LineFramer:
    """Split a byte (or text) stream into complete lines."""

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    @property
    def pending(self) -> str:
        """The buffered fragment that has not been terminated yet."""
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[str]:
        """Append a chunk and return every line it completes."""
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        if not chunk:
            return []
        self._buffer += chunk
        if "\n" not in chunk:
            return []
        *complete, self._buffer = self._buffer.split("\n")
        return [line[:-1] if line.endswith("\r") else line for line in complete]

    def flush(self) -> list[str]:
        """Return the unterminated tail at end of stream."""
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        if tail.endswith("\r"):
            tail = tail[:-1]
        return [tail] if tail else []
