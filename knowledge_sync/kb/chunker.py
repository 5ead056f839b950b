"""
Chunking for the indexing pipeline.

Knowledge chunks are fixed-size character windows that prefer to end on a
newline; code chunks are fixed-size line windows with 1-based line ranges.
"""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_CHUNK_SIZE = 1000
DEFAULT_CHUNK_OVERLAP = 100
DEFAULT_CODE_LINES = 50
DEFAULT_CODE_OVERLAP = 10


@dataclass(frozen=True)
class TextChunk:
    """A slice of a file: ``text == content[start:end]`` (before stripping)."""

    text: str
    start: int
    end: int
    line_start: int
    line_end: int


def _line_at(content: str, offset: int) -> int:
    return content.count("\n", 0, offset) + 1


def chunk_text(
    content: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> list[TextChunk]:
    """
    Split *content* into overlapping character windows.

    A window is shortened to the last newline inside it when that newline
    lies past the window's midpoint.  Whitespace-only windows are dropped.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    overlap = max(0, min(overlap, chunk_size // 2))

    chunks: list[TextChunk] = []
    length = len(content)
    start = 0
    while start < length:
        end = start + chunk_size
        if end >= length:
            end = length
        else:
            newline = content.rfind("\n", start, end)
            if newline > start + chunk_size // 2:
                end = newline

        piece = content[start:end]
        if piece.strip():
            chunks.append(TextChunk(
                text=piece.strip(),
                start=start,
                end=end,
                line_start=_line_at(content, start),
                line_end=_line_at(content, max(start, end - 1)),
            ))

        if end == length:
            break
        start = max(end - overlap, start + 1)
    return chunks


def chunk_lines(
    content: str,
    lines_per_chunk: int = DEFAULT_CODE_LINES,
    overlap: int = DEFAULT_CODE_OVERLAP,
) -> list[TextChunk]:
    """
    Split *content* into overlapping windows of whole lines.

    Line ranges are 1-based and inclusive.  Windows containing only blank
    lines are dropped.
    """
    if lines_per_chunk <= 0:
        raise ValueError("lines_per_chunk must be positive")
    overlap = max(0, min(overlap, lines_per_chunk - 1))

    lines = content.splitlines(keepends=True)
    offsets = [0]
    for line in lines:
        offsets.append(offsets[-1] + len(line))

    chunks: list[TextChunk] = []
    step = lines_per_chunk - overlap
    for first in range(0, len(lines), step):
        last = min(first + lines_per_chunk, len(lines))
        piece = "".join(lines[first:last])
        if piece.strip():
            chunks.append(TextChunk(
                text=piece.rstrip(),
                start=offsets[first],
                end=offsets[last],
                line_start=first + 1,
                line_end=last,
            ))
        if last == len(lines):
            break
    return chunks
