"""Tests for text chunking."""

import pytest

from stagevec.core.chunker import RecursiveChunker, WindowChunker, build_chunker, reassemble
from stagevec.core.config import IngestConfig
from stagevec.core.errors import ConfigurationError


def _prose(paragraphs: int = 12) -> str:
    sentence = "The stage holds documents that are split into overlapping windows. "
    return "\n\n".join(
        " ".join(f"Paragraph {p} line {i}. {sentence}" for i in range(8)) for p in range(paragraphs)
    )


def _assert_exact_overlap(spans, overlap):
    for left, right in zip(spans, spans[1:]):
        assert left[-overlap:] == right[:overlap]


def test_unbroken_text_yields_expected_window_lengths():
    text = "abcdefghij" * 900

    spans = list(WindowChunker(4000, 400).split(text))

    assert [len(s) for s in spans] == [4000, 4000, 1800]
    _assert_exact_overlap(spans, 400)
    assert reassemble(spans, 400) == text


def test_spans_respect_size_and_overlap_on_prose():
    text = _prose()
    chunker = WindowChunker(chunk_size=900, chunk_overlap=90)

    spans = list(chunker.split(text))

    assert len(spans) > 3
    assert all(len(s) <= 900 for s in spans)
    _assert_exact_overlap(spans, 90)
    assert reassemble(spans, 90) == text


def test_prefers_word_boundaries():
    text = "word " * 2000

    spans = list(WindowChunker(4000, 400).split(text))

    assert all(s.endswith(" ") for s in spans)
    assert all(len(s) <= 4000 for s in spans)


def test_prefers_paragraph_break_over_hard_cut():
    text = "a" * 3000 + "\n\n" + "b" * 3000

    spans = list(WindowChunker(4000, 400).split(text))

    assert spans[0] == "a" * 3000 + "\n\n"
    assert spans[1].startswith("a" * 398 + "\n\n")
    assert reassemble(spans, 400) == text


def test_boundary_too_early_falls_back_to_hard_cut():
    text = "a" * 100 + " " + "b" * 5000

    spans = list(WindowChunker(1000, 100).split(text))

    assert len(spans[0]) == 1000


def test_short_text_is_one_chunk():
    assert list(WindowChunker(4000, 400).split("short text")) == ["short text"]


def test_text_of_exactly_one_chunk_is_one_chunk():
    text = "x" * 4000
    assert list(WindowChunker(4000, 400).split(text)) == [text]


def test_empty_text_yields_no_chunks():
    assert list(WindowChunker(4000, 400).split("")) == []


@pytest.mark.parametrize("text", [" ", "   \n\n  ", " " * 5000])
def test_whitespace_only_text_yields_no_chunks(text):
    assert list(WindowChunker(4000, 400).split(text)) == []
    assert len(WindowChunker(4000, 400).split(text)) == 0
    assert RecursiveChunker(4000, 400).split(text) == []


def test_sequence_is_lazy_and_restartable():
    sequence = WindowChunker(100, 10).split("y" * 1000)

    iterator = iter(sequence)
    first = next(iterator)

    assert len(first) == 100
    assert list(sequence) == list(sequence)
    assert len(sequence) == len(list(sequence))


def test_zero_overlap_partitions_text():
    text = "z" * 250
    spans = list(WindowChunker(100, 0).split(text))
    assert [len(s) for s in spans] == [100, 100, 50]
    assert "".join(spans) == text


@pytest.mark.parametrize("size,overlap", [(0, 0), (100, 100), (100, -1), (100, 150)])
def test_invalid_sizes_rejected(size, overlap):
    with pytest.raises(ConfigurationError):
        WindowChunker(size, overlap)


def test_recursive_chunker_respects_size():
    text = _prose()

    spans = RecursiveChunker(chunk_size=500, chunk_overlap=50).split(text)

    assert len(spans) > 1
    assert all(0 < len(s) <= 500 for s in spans)
    assert RecursiveChunker(500, 50).split("   ") == []


def test_build_chunker_by_name():
    assert isinstance(build_chunker(IngestConfig(chunker="window")), WindowChunker)
    assert isinstance(build_chunker(IngestConfig(chunker="recursive")), RecursiveChunker)
    with pytest.raises(ConfigurationError):
        build_chunker(IngestConfig(chunker="sentences"))
