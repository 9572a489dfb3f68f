"""Chunk-safe NDJSON (newline-delimited JSON) parser.

Bytes may arrive split at any point, including inside a multi-byte UTF-8
character.  The parser only emits a record once its terminating newline has
been seen, or at ``flush()`` when the producer signals end of stream.
"""

from __future__ import annotations

import codecs
import json
from typing import Any, Generic, Iterator, TypeVar

from .errors import OllamaParseError

T = TypeVar("T")


def _new_decoder() -> codecs.IncrementalDecoder:
    return codecs.getincrementaldecoder("utf-8")(errors="replace")


def _decode_line(line: str, what: str) -> Any:
    try:
        return json.loads(line)
    except json.JSONDecodeError as e:
        raise OllamaParseError(f"Failed to parse {what}: {e}", line, e) from e


class NDJSONParser(Generic[T]):
    """Incremental NDJSON parser with an internal text buffer."""

    def __init__(self) -> None:
        self._buffer = ""
        self._decoder = _new_decoder()

    @property
    def buffered(self) -> str:
        """Text received but not yet terminated by a newline."""
        return self._buffer

    def parse(self, chunk: bytes) -> Iterator[T]:
        """Decode *chunk* and yield every complete record it finishes.

        A malformed line raises ``OllamaParseError`` carrying the raw line;
        no further records are yielded from this call.
        """
        self._buffer += self._decoder.decode(chunk, final=False)

        while True:
            newline = self._buffer.find("\n")
            if newline == -1:
                return
            line = self._buffer[:newline].strip()
            self._buffer = self._buffer[newline + 1:]
            if not line:
                continue
            yield _decode_line(line, "NDJSON line")

    def flush(self) -> Iterator[T]:
        """Finalize the decoder and yield the unterminated tail, if any."""
        self._buffer += self._decoder.decode(b"", final=True)
        remaining = self._buffer.strip()
        self._buffer = ""
        if remaining:
            yield _decode_line(remaining, "final NDJSON")

    def reset(self) -> None:
        self._buffer = ""
        self._decoder = _new_decoder()
