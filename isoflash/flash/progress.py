"""Incremental parsing of progress output from external tools.

Download and write tools report progress on a text stream, redrawing the
current line with carriage returns. ProgressParser splits that stream into
lines and classifies each one with a small grammar:

- byte-count token:  ``1048576000 bytes (1.0 GB, 1000 MiB) copied, ...``  (dd)
- percentage token:  ``[1/1 files][  1.2 GiB/  4.0 GiB]  30% Done``      (gsutil)
- bare integer line: ``42``                                              (pv -n)

Anything else is returned as Unparsed so callers can log it.
"""

import re
from dataclasses import dataclass

from isoflash.types import Stage

_BYTES_TOKEN = re.compile(r"(\d+)\s+bytes\b")
_PERCENT_TOKEN = re.compile(r"(\d{1,3}(?:\.\d+)?)\s*%")
_BARE_INTEGER = re.compile(r"^\s*(\d{1,3})\s*$")
_LINE_BREAK = re.compile(r"[\r\n]")


@dataclass(frozen=True)
class PercentToken:
    """A percentage reported directly by the tool."""

    percent: float


@dataclass(frozen=True)
class ByteToken:
    """A running count of bytes transferred."""

    bytes_done: int


@dataclass(frozen=True)
class Unparsed:
    """A line that carries no progress information."""

    text: str


Token = PercentToken | ByteToken | Unparsed


def parse_line(line: str) -> Token:
    """Classify a single line of tool output."""
    match = _BYTES_TOKEN.search(line)
    if match:
        return ByteToken(int(match.group(1)))

    matches = _PERCENT_TOKEN.findall(line)
    if matches:
        return PercentToken(float(matches[-1]))

    match = _BARE_INTEGER.match(line)
    if match:
        return PercentToken(float(match.group(1)))

    return Unparsed(line)


def to_percent(token: Token, total_bytes: int | None = None) -> int | None:
    """Convert a token into a 0-100 percentage.

    Args:
        token: Parsed token.
        total_bytes: Expected transfer size, required for byte counts.

    Returns:
        Integer percentage clamped to 0..100, or None if not convertible.
    """
    if isinstance(token, PercentToken):
        value = token.percent
    elif isinstance(token, ByteToken) and total_bytes:
        value = token.bytes_done * 100 / total_bytes
    else:
        return None
    return max(0, min(100, int(value)))


class ProgressParser:
    """Split a progress stream into lines and parse each one.

    Chunks may end mid-line; the remainder is buffered until the next line
    break (or ``flush`` at end of stream).
    """

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> list[Token]:
        """Consume a chunk of output and return tokens for complete lines."""
        self._buffer += chunk
        parts = _LINE_BREAK.split(self._buffer)
        self._buffer = parts.pop()
        return [parse_line(part) for part in parts if part.strip()]

    def flush(self) -> list[Token]:
        """Parse whatever remains in the buffer."""
        remainder, self._buffer = self._buffer, ""
        if not remainder.strip():
            return []
        return [parse_line(remainder)]


class StageProgress:
    """Tracks percent for the current stage.

    Percent never decreases within a stage and resets to 0 when the stage
    advances. Stages only move forward.
    """

    def __init__(self) -> None:
        self.stage: Stage | None = None
        self.percent = 0

    def advance(self, stage: Stage) -> None:
        """Move to a new stage and reset percent."""
        if self.stage is not None and stage.order < self.stage.order:
            raise ValueError(
                f"Cannot move backward from {self.stage.value} to {stage.value}"
            )
        self.stage = stage
        self.percent = 0

    def update(self, percent: int) -> bool:
        """Record a new percent value.

        Returns:
            True if the value moved progress forward, False if it was stale.
        """
        percent = max(0, min(100, percent))
        if percent <= self.percent:
            return False
        self.percent = percent
        return True


__all__ = [
    "ByteToken",
    "PercentToken",
    "ProgressParser",
    "StageProgress",
    "Token",
    "Unparsed",
    "parse_line",
    "to_percent",
]
