from __future__ import annotations

import pytest

from retrieval_engine.services.chunking import chunk_text


def test_short_text_is_one_chunk():
    assert chunk_text("  hello world  ", chunk_size=100, overlap=10) == ["hello world"]


def test_empty_text_has_no_chunks():
    assert chunk_text("   \n ", chunk_size=100, overlap=10) == []


def test_prefers_paragraph_breaks_and_overlaps():
    first = "a" * 60
    second = "b" * 60
    chunks = chunk_text(f"{first}\n\n{second}", chunk_size=100, overlap=10)

    assert chunks[0] == first
    assert chunks[-1].endswith(second)
    assert all(len(c) <= 100 for c in chunks)


def test_unbroken_text_is_cut_at_size():
    chunks = chunk_text("x" * 250, chunk_size=100, overlap=20)

    assert [len(c) for c in chunks] == [100, 100, 90]


def test_overlap_must_be_smaller_than_size():
    with pytest.raises(ValueError):
        chunk_text("text", chunk_size=10, overlap=10)
