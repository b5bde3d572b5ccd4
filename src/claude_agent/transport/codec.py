"""Newline-delimited JSON codec with a bounded carry-over buffer."""

from __future__ import annotations

import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

#: Default ceiling for partial JSON carried across lines (bytes).
DEFAULT_MAX_BUFFER = 100_000

#: Absolute ceiling; larger configured values are clamped to this.
MAX_BUFFER_LIMIT = 10_000_000

_WHITESPACE = " \t\r\n"


class LineCodec:
    """Decode JSON values from text lines and encode objects as lines.

    A single line may carry several concatenated JSON values.  A value
    cut off at the end of a line is kept and completed by the next line.
    Malformed fragments are skipped.  When the carried-over text grows
    past ``max_buffer_size`` the codec drops it and starts fresh.
    """

    def __init__(self, max_buffer_size: int = DEFAULT_MAX_BUFFER) -> None:
        self._max_buffer = min(max(int(max_buffer_size), 1), MAX_BUFFER_LIMIT)
        self._decoder = json.JSONDecoder()
        self._buffer = ""

    @property
    def max_buffer_size(self) -> int:
        return self._max_buffer

    @property
    def pending(self) -> int:
        """Size in bytes of the partial data carried to the next line."""
        return len(self._buffer.encode("utf-8"))

    def reset(self) -> None:
        self._buffer = ""

    def encode(self, obj: Any) -> str:
        """Serialize *obj* as a single line terminated by ``\\n``."""
        return json.dumps(obj) + "\n"

    def decode(self, line: str) -> list[Any]:
        """Return every complete JSON value available after adding *line*."""
        text = f"{self._buffer}\n{line}" if self._buffer else line
        self._buffer = ""

        values: list[Any] = []
        pos = 0
        end = len(text)
        while True:
            while pos < end and text[pos] in _WHITESPACE:
                pos += 1
            if pos >= end:
                break
            try:
                value, pos = self._decoder.raw_decode(text, pos)
            except json.JSONDecodeError as exc:
                if _is_truncated(text, exc):
                    self._buffer = text[pos:]
                    break
                logger.debug("Skipping malformed JSON at offset %d: %s", pos, exc.msg)
                pos = _next_value_start(text, pos + 1)
                continue
            values.append(value)

        if self._buffer and self.pending > self._max_buffer:
            logger.debug(
                "JSON carry-over buffer exceeded %d bytes, resetting",
                self._max_buffer,
            )
            self._buffer = ""

        return values


def _is_truncated(text: str, exc: json.JSONDecodeError) -> bool:
    """True when the parser failed only because the input ran out."""
    if exc.pos >= len(text.rstrip(_WHITESPACE)):
        return True
    return exc.msg.startswith("Unterminated string")


def _next_value_start(text: str, start: int) -> int:
    """Offset of the next ``{`` or ``[`` at or after *start*, else len(text)."""
    candidates = [i for i in (text.find("{", start), text.find("[", start)) if i != -1]
    return min(candidates) if candidates else len(text)
