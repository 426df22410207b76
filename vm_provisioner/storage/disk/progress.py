"""Progress parsing for disk helper output."""

from __future__ import annotations

import re

from loguru import logger


LINE_BREAK_PATTERN = re.compile(rb"\r\n|\r|\n")
PERCENT_PATTERN = re.compile(r"\[(\d+)% completed\]")


def parse_percentage(line: str) -> int | None:
    """Extract the percentage from a ``[NN% completed]`` marker, if present."""
    match = PERCENT_PATTERN.search(line)
    if not match:
        return None
    return int(match.group(1))


class ProgressLineParser:
    """Incremental line splitter for a helper's combined stdout/stderr.

    Chunks arrive at arbitrary boundaries. Completed lines (terminated by
    ``\\r\\n``, ``\\r`` or ``\\n``) are scanned for percentage markers; the
    unterminated tail is kept until the next chunk so a marker split across
    two reads is seen exactly once. Splitting happens on bytes, so a
    multi-byte character cut in half is not mangled either.

    The buffer belongs to whoever owns the parser; it is not shared.
    """

    def __init__(self) -> None:
        self._buffer = b""
        self.last_line: str | None = None

    @property
    def pending(self) -> bytes:
        return self._buffer

    def feed(self, chunk: bytes) -> list[int]:
        """Append a chunk and return percentages found on completed lines."""
        if not chunk:
            return []
        self._buffer += chunk
        *lines, self._buffer = LINE_BREAK_PATTERN.split(self._buffer)
        return self._scan(lines)

    def flush(self) -> list[int]:
        """Treat any retained tail as a final line (call at end of stream)."""
        if not self._buffer:
            return []
        lines = [self._buffer]
        self._buffer = b""
        return self._scan(lines)

    def _scan(self, lines: list[bytes]) -> list[int]:
        percentages = []
        for raw in lines:
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            self.last_line = line
            logger.trace(f"helper: {line}")
            percentage = parse_percentage(line)
            if percentage is not None:
                percentages.append(percentage)
        return percentages
