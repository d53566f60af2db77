"""Records flowing through the ingestion pipeline: documents, chunks, vectors and store entries."""

import hashlib
import math
from typing import List

from pydantic import BaseModel, ConfigDict, field_validator, model_validator


def document_id_for(path: str) -> str:
    """Stable document id derived from the stage path."""
    return f"doc_{hashlib.sha256(path.encode('utf-8')).hexdigest()[:16]}"


class DocumentRecord(BaseModel):
    """A source file discovered in the stage."""
    model_config = ConfigDict(frozen=True)

    path: str
    size: int
    sha256: str
    file_url: str

    @property
    def document_id(self) -> str:
        return document_id_for(self.path)


class Chunk(BaseModel):
    """An ordered text span derived from one document."""
    model_config = ConfigDict(frozen=True)

    document_path: str
    sequence: int
    text: str
    length: int

    @model_validator(mode="after")
    def _length_matches_text(self) -> "Chunk":
        if self.length != len(self.text):
            raise ValueError(f"length {self.length} does not match text length {len(self.text)}")
        return self

    @classmethod
    def from_text(cls, document_path: str, sequence: int, text: str) -> "Chunk":
        return cls(document_path=document_path, sequence=sequence, text=text, length=len(text))


class EmbeddingVector(BaseModel):
    """A fixed-length vector produced by one named model."""
    model_config = ConfigDict(frozen=True)

    model: str
    values: List[float]

    @field_validator("values")
    @classmethod
    def _usable_vector(cls, values: List[float]) -> List[float]:
        if not values:
            raise ValueError("embedding vector is empty")
        if not all(math.isfinite(v) for v in values):
            raise ValueError("embedding vector contains non-finite values")
        if not any(values):
            raise ValueError("embedding vector is all zeros")
        return values

    @property
    def dimensions(self) -> int:
        return len(self.values)


class ChunkStoreEntry(BaseModel):
    """The persisted tuple for one chunk."""
    model_config = ConfigDict(frozen=True)

    document: DocumentRecord
    chunk: Chunk
    embedding: EmbeddingVector
    scoped_url: str

    @property
    def chunk_id(self) -> str:
        return f"{self.document.document_id}:{self.chunk.sequence}"


class PageText(BaseModel):
    """Normalized text of one page; ok is False when the sentinel was substituted."""
    page: int
    text: str
    ok: bool = True


class ExtractedDocument(BaseModel):
    """Per-page text extracted from one document."""
    path: str
    pages: List[PageText]

    @property
    def text(self) -> str:
        return " ".join(p.text for p in self.pages)

    @property
    def failed_pages(self) -> int:
        return sum(1 for p in self.pages if not p.ok)


class SearchHit(BaseModel):
    """A nearest-neighbour result."""
    chunk_id: str
    path: str
    sequence: int
    text: str
    score: float


class DocumentChunkCount(BaseModel):
    path: str
    chunk_count: int
