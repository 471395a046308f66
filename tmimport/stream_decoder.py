"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMIMPORT, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Constant-memory token stream over a JSON export.

``ijson`` does the tokenizing; this module reshapes its low-level events into
``Token`` values that carry the owning object key, and wraps the byte source
in a reader that reports read progress and observes cancellation.
"""

import enum
import logging
import math
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import IO, Any

import ijson

from tmimport.exceptions import AnalysisError, ImportCanceled

logger = logging.getLogger("tmimport.stream_decoder")

ProgressCallback = Callable[[int, int, int, int | None], None]


class TokenKind(str, enum.Enum):
    START_OBJECT = "START_OBJECT"
    END_OBJECT = "END_OBJECT"
    START_ARRAY = "START_ARRAY"
    END_ARRAY = "END_ARRAY"
    VALUE = "VALUE"


@dataclass(frozen=True)
class Token:
    """
    One decoder event.

    ``key`` is the key under which the value or container sits in its parent
    object; it is None for array items and for the document root.
    """

    kind: TokenKind
    key: str | None = None
    value: Any = None


class ProgressReader:
    """
    Counting wrapper around a binary stream.

    Every ``read`` is a chunk boundary: the abort predicate is consulted first
    and a progress report is emitted when the integer percentage has risen by
    at least one point since the previous report.
    """

    REPORT_INTERVAL_PERCENTAGE = 1
    ETA_MIN_ELAPSED_SECONDS = 2.0

    def __init__(
        self,
        stream: IO[bytes],
        total_bytes: int | None = None,
        on_progress: ProgressCallback | None = None,
        should_abort: Callable[[], bool] | None = None,
    ):
        self._stream = stream
        self.total_bytes = total_bytes if total_bytes and total_bytes > 0 else None
        self._on_progress = on_progress
        self._should_abort = should_abort
        self.bytes_read = 0
        self._last_reported_percentage = -1
        self._start_time = time.monotonic()

    def read(self, size: int = -1) -> bytes:
        if self._should_abort is not None and self._should_abort():
            raise ImportCanceled("Export analysis canceled")

        chunk = self._stream.read(size)
        if chunk:
            self.bytes_read += len(chunk)
            self._report()
        return chunk

    def _report(self) -> None:
        if self._on_progress is None or self.total_bytes is None:
            return

        percentage = min(100, math.floor(self.bytes_read / self.total_bytes * 100))
        if percentage < self._last_reported_percentage + self.REPORT_INTERVAL_PERCENTAGE:
            return
        self._last_reported_percentage = percentage

        self._on_progress(self.bytes_read, self.total_bytes, percentage, self.eta_seconds())

    def eta_seconds(self) -> int | None:
        """Seconds remaining at the average byte rate, once enough time has passed."""
        if self.total_bytes is None or self.bytes_read <= 0:
            return None
        elapsed = time.monotonic() - self._start_time
        if elapsed < self.ETA_MIN_ELAPSED_SECONDS:
            return None
        bytes_per_second = self.bytes_read / elapsed
        remaining = max(0, self.total_bytes - self.bytes_read)
        return math.ceil(remaining / bytes_per_second)

    def close(self) -> None:
        close = getattr(self._stream, "close", None)
        if close is not None:
            close()


_CONTAINER_EVENTS = {
    "start_map": TokenKind.START_OBJECT,
    "end_map": TokenKind.END_OBJECT,
    "start_array": TokenKind.START_ARRAY,
    "end_array": TokenKind.END_ARRAY,
}


def iter_tokens(stream: IO[bytes] | ProgressReader) -> Iterator[Token]:
    """
    Yield ``Token`` events for a JSON byte stream.

    Memory use is independent of document size: ijson buffers one read at a
    time and this generator only remembers the last object key.

    Raises:
        AnalysisError: The document is not well-formed JSON
        ImportCanceled: The wrapped ProgressReader observed cancellation
    """
    pending_key: str | None = None
    try:
        for _prefix, event, value in ijson.parse(stream, use_float=True):
            if event == "map_key":
                pending_key = value
                continue

            key, pending_key = pending_key, None
            kind = _CONTAINER_EVENTS.get(event)
            if kind is TokenKind.END_OBJECT or kind is TokenKind.END_ARRAY:
                yield Token(kind)
            elif kind is not None:
                yield Token(kind, key)
            else:
                yield Token(TokenKind.VALUE, key, value)
    except ijson.JSONError as e:
        raise AnalysisError(f"Malformed export document: {e}") from e
