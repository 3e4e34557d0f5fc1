from __future__ import annotations

from retrieval_engine.config import settings

# Preferred break points, strongest first.
_BREAKS = ("\n\n", "\n", ". ", " ")


def chunk_text(text: str, chunk_size: int | None = None, overlap: int | None = None) -> list[str]:
    """Split text into overlapping chunks, cutting at paragraph, line, sentence or word boundaries.

    A break point is only used when it falls in the second half of the window,
    so chunks never shrink below half of ``chunk_size``.
    """
    size = chunk_size or settings.chunk_size
    overlap = settings.chunk_overlap if overlap is None else overlap
    if overlap >= size:
        raise ValueError("chunk overlap must be smaller than chunk size")

    text = text.strip()
    if not text:
        return []
    if len(text) <= size:
        return [text]

    chunks: list[str] = []
    start = 0
    while start < len(text):
        end = min(start + size, len(text))
        if end < len(text):
            window = text[start:end]
            for marker in _BREAKS:
                cut = window.rfind(marker)
                if cut >= size // 2:
                    end = start + cut + len(marker)
                    break

        piece = text[start:end].strip()
        if piece:
            chunks.append(piece)
        if end >= len(text):
            break
        start = max(end - overlap, start + 1)
    return chunks
