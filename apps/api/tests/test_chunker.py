import pytest

from knowledge_scout.services.rag.chunker import chunk_text, segment_pages, split_pages


def test_chunk_text_cuts_fixed_windows() -> None:
    chunks = chunk_text("a" * 250, chunk_size=100)

    assert [len(chunk) for chunk in chunks] == [100, 100, 50]


def test_chunk_text_applies_overlap() -> None:
    chunks = chunk_text("abcdefghij", chunk_size=4, chunk_overlap=2)

    assert chunks == ["abcd", "cdef", "efgh", "ghij"]


@pytest.mark.parametrize(
    ("chunk_size", "chunk_overlap"),
    [(0, 0), (10, -1), (10, 10)],
)
def test_chunk_text_rejects_invalid_arguments(chunk_size: int, chunk_overlap: int) -> None:
    with pytest.raises(ValueError):
        chunk_text("text", chunk_size=chunk_size, chunk_overlap=chunk_overlap)


def test_split_pages_drops_blank_pages() -> None:
    assert split_pages(" one \f\f  \ftwo\n") == ["one", "two"]


def test_segment_pages_keeps_explicit_breaks() -> None:
    segments = segment_pages(["first page", "second\fthird"], chunk_size=5)

    assert segments == ["first page", "second", "third"]


def test_segment_pages_chunks_single_unbroken_text() -> None:
    segments = segment_pages(["x" * 230], chunk_size=100)

    assert segments == ["x" * 100, "x" * 100, "x" * 30]


def test_segment_pages_returns_empty_for_blank_input() -> None:
    assert segment_pages(["", "  \f \n"], chunk_size=100) == []
