from __future__ import annotations

from dataclasses import dataclass

CHUNK_SIZE = 2000
CHUNK_OVERLAP = 400


@dataclass
class TextChunk:
    index: int
    text: str
    char_start: int
    char_end: int


def chunk_text_overlapping(
    text: str,
    *,
    chunk_size: int = CHUNK_SIZE,
    chunk_overlap: int = CHUNK_OVERLAP,
) -> list[TextChunk]:
    """Split text into fixed-size windows that overlap by ``chunk_overlap`` chars."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if not 0 <= chunk_overlap < chunk_size:
        raise ValueError("chunk_overlap must be in [0, chunk_size)")
    if not text:
        return []

    step = chunk_size - chunk_overlap
    chunks: list[TextChunk] = []
    start = 0
    while start < len(text):
        end = min(start + chunk_size, len(text))
        chunks.append(TextChunk(index=len(chunks), text=text[start:end], char_start=start, char_end=end))
        if end >= len(text):
            break
        start += step
    return chunks
