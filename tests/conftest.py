"""Pytest configuration and fixtures for stagevec tests."""

from pathlib import Path
from typing import List

import fitz
import httpx
import openai
import pytest

from stagevec.core.config import IngestConfig
from stagevec.core.embed import EmbeddingService, HashEmbeddingClient
from stagevec.core.ingest import IngestionPipeline
from stagevec.core.stage import FileStage
from stagevec.core.store import ChunkStore

DIM = 768
MODEL = "hash-768"


def make_pdf(path: Path, pages: List[str]) -> Path:
    """Write a PDF with one short text block per page; empty strings give blank pages."""
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        if text:
            page.insert_text((72, 72), text)
    doc.save(str(path))
    doc.close()
    return path


def hash_service(model: str = MODEL, dimensions: int = DIM, **kwargs) -> EmbeddingService:
    kwargs.setdefault("backoff_min", 0)
    kwargs.setdefault("backoff_max", 0)
    return EmbeddingService(HashEmbeddingClient(model, dimensions), dimensions=dimensions, **kwargs)


def openai_error(error_cls, status: int, message: str = "Incorrect API key provided") -> openai.APIStatusError:
    request = httpx.Request("POST", "https://api.openai.com/v1/embeddings")
    return error_cls(message, response=httpx.Response(status, request=request), body=None)


class RejectingClient:
    """Embedding client whose every call fails with ``error``."""

    def __init__(self, error: Exception, model: str = MODEL):
        self.model = model
        self.error = error
        self.calls = 0

    def embed(self, texts):
        self.calls += 1
        raise self.error


# -------------------------------------------------------------------------
# Configuration and components
# -------------------------------------------------------------------------


@pytest.fixture
def stage_dir(tmp_path: Path) -> Path:
    path = tmp_path / "stage"
    path.mkdir()
    return path


@pytest.fixture
def config(tmp_path: Path, stage_dir: Path) -> IngestConfig:
    return IngestConfig(
        stage_dir=str(stage_dir),
        stage_name="docs",
        database_url=f"sqlite:///{tmp_path / 'store.db'}",
        index_dir=str(tmp_path / "faiss_index"),
        embedding_provider="hash",
        embed_model=MODEL,
        embedding_dim=DIM,
        signing_key="test-key",
    )


@pytest.fixture
def embedder() -> EmbeddingService:
    return hash_service()


@pytest.fixture
def stage(config: IngestConfig) -> FileStage:
    return FileStage.from_config(config)


@pytest.fixture
def store(config: IngestConfig):
    chunk_store = ChunkStore.from_config(config)
    chunk_store.create_schema()
    yield chunk_store
    chunk_store.close()


@pytest.fixture
def pipeline(config, stage, store, embedder) -> IngestionPipeline:
    return IngestionPipeline(config, stage, store, embedder)
