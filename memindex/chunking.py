"""Line-oriented markdown chunker."""

from __future__ import annotations

from dataclasses import dataclass

from .utils import hash_text

CHARS_PER_TOKEN = 4
MIN_CHUNK_CHARS = 32


@dataclass(slots=True)
class MemoryChunk:
    text: str
    start_line: int
    end_line: int
    hash: str


@dataclass(slots=True)
class _Line:
    text: str
    line_no: int


def chunk_markdown(text: str, *, tokens: int, overlap: int) -> list[MemoryChunk]:
    """Split *text* into overlapping windows of roughly *tokens* tokens.

    Windows break on line boundaries; a line longer than the window is cut
    into window-sized segments that keep the line number of their source
    line. Consecutive windows share trailing lines worth about *overlap*
    tokens. Empty windows are returned as-is; callers drop them.
    """

    lines = text.split("\n")
    max_chars = max(MIN_CHUNK_CHARS, tokens * CHARS_PER_TOKEN)
    overlap_chars = max(0, overlap * CHARS_PER_TOKEN)
    chunks: list[MemoryChunk] = []
    current: list[_Line] = []
    current_chars = 0

    def flush() -> None:
        if not current:
            return
        body = "\n".join(entry.text for entry in current)
        chunks.append(
            MemoryChunk(
                text=body,
                start_line=current[0].line_no,
                end_line=current[-1].line_no,
                hash=hash_text(body),
            )
        )

    def carry_overlap() -> None:
        nonlocal current, current_chars
        if overlap_chars <= 0 or not current:
            current = []
            current_chars = 0
            return
        kept: list[_Line] = []
        acc = 0
        for entry in reversed(current):
            acc += len(entry.text) + 1
            kept.append(entry)
            if acc >= overlap_chars:
                break
        kept.reverse()
        current = kept
        current_chars = acc

    for index, line in enumerate(lines):
        line_no = index + 1
        if line:
            segments = [line[pos : pos + max_chars] for pos in range(0, len(line), max_chars)]
        else:
            segments = [""]
        for segment in segments:
            size = len(segment) + 1
            if current and current_chars + size > max_chars:
                flush()
                carry_overlap()
            current.append(_Line(segment, line_no))
            current_chars += size
    flush()
    return chunks


def remap_chunk_lines(chunks: list[MemoryChunk], line_map: list[int] | None) -> None:
    """Translate chunk line numbers through *line_map* (1-based, in place)."""

    if not line_map:
        return
    for chunk in chunks:
        start = line_map[chunk.start_line - 1] if 0 < chunk.start_line <= len(line_map) else None
        end = line_map[chunk.end_line - 1] if 0 < chunk.end_line <= len(line_map) else None
        if start is not None:
            chunk.start_line = start
        if end is not None:
            chunk.end_line = end
