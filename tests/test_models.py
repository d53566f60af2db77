"""Tests for pipeline records."""

import math

import pytest
from pydantic import ValidationError

from stagevec.core.models import (
    Chunk,
    ChunkStoreEntry,
    DocumentRecord,
    EmbeddingVector,
    ExtractedDocument,
    PageText,
    document_id_for,
)


def test_document_id_depends_only_on_path():
    a = DocumentRecord(path="a.txt", size=1, sha256="x", file_url="stage://docs/a.txt")
    b = DocumentRecord(path="a.txt", size=2, sha256="y", file_url="stage://docs/a.txt")

    assert a.document_id == b.document_id == document_id_for("a.txt")
    assert a.document_id.startswith("doc_")
    assert document_id_for("b.txt") != a.document_id


def test_records_are_frozen():
    record = DocumentRecord(path="a.txt", size=1, sha256="x", file_url="u")
    with pytest.raises(ValidationError):
        record.size = 5


def test_chunk_length_must_match_text():
    assert Chunk.from_text("a.txt", 0, "hello").length == 5
    with pytest.raises(ValidationError):
        Chunk(document_path="a.txt", sequence=0, text="hello", length=4)


@pytest.mark.parametrize("values", [[], [0.0, 0.0], [1.0, math.nan], [math.inf, 1.0]])
def test_unusable_vectors_are_rejected(values):
    with pytest.raises(ValidationError):
        EmbeddingVector(model="m", values=values)


def test_chunk_id_and_dimensions():
    record = DocumentRecord(path="a.txt", size=1, sha256="x", file_url="u")
    entry = ChunkStoreEntry(
        document=record,
        chunk=Chunk.from_text("a.txt", 2, "text"),
        embedding=EmbeddingVector(model="m", values=[0.5, 0.5, 0.0]),
        scoped_url="",
    )

    assert entry.chunk_id == f"{record.document_id}:2"
    assert entry.embedding.dimensions == 3


def test_extracted_document_joins_pages():
    extracted = ExtractedDocument(path="a.pdf", pages=[
        PageText(page=1, text="first"),
        PageText(page=2, text="Unable to Extract", ok=False),
        PageText(page=3, text="third"),
    ])

    assert extracted.text == "first Unable to Extract third"
    assert extracted.failed_pages == 1
