"""Ingestion pipeline: stage -> read -> chunk -> embed -> store, one document at a time.

Each document runs its own reader -> chunker -> embedder chain, so a failure
skips only that document. Configuration and store outages stop the run.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from .chunker import Chunker, build_chunker
from .config import IngestConfig
from .embed import EmbeddingService
from .errors import ConfigurationError, ModelMismatchError, StoreUnavailableError
from .logging_config import get_audit_logger, log_document_failure, log_ingestion_event
from .models import Chunk, ChunkStoreEntry, DocumentRecord, ExtractedDocument
from .reader import DocumentReader, reader_for
from .stage import FileStage
from .store import ChunkStore

logger = logging.getLogger(__name__)

# Errors that mean no further document can succeed
FATAL_ERRORS = (ConfigurationError, StoreUnavailableError, ModelMismatchError)


@dataclass
class DocumentResult:
    """Outcome of ingesting one document."""
    path: str
    status: str  # "ingested", "skipped" or "failed"
    chunks: int = 0
    pages: int = 0
    failed_pages: int = 0
    error: Optional[str] = None
    processing_time_ms: float = 0.0


@dataclass
class IngestReport:
    """Per-document results of one run."""
    results: List[DocumentResult] = field(default_factory=list)
    elapsed_ms: float = 0.0

    def _with_status(self, status: str) -> List[DocumentResult]:
        return [r for r in self.results if r.status == status]

    @property
    def ingested(self) -> List[DocumentResult]:
        return self._with_status("ingested")

    @property
    def skipped(self) -> List[DocumentResult]:
        return self._with_status("skipped")

    @property
    def failed(self) -> List[DocumentResult]:
        return self._with_status("failed")

    @property
    def total_chunks(self) -> int:
        return sum(r.chunks for r in self.ingested)

    @property
    def failed_pages(self) -> int:
        return sum(r.failed_pages for r in self.results)


@dataclass
class PreparedDocument:
    record: DocumentRecord
    extracted: ExtractedDocument
    entries: List[ChunkStoreEntry]
    started: float


class IngestionPipeline:
    """Runs documents from a stage into a chunk store."""

    def __init__(
        self,
        config: IngestConfig,
        stage: FileStage,
        store: ChunkStore,
        embedder: EmbeddingService,
        chunker: Optional[Chunker] = None,
        reader_factory: Callable[[str], DocumentReader] = reader_for
    ):
        self.config = config
        self.stage = stage
        self.store = store
        self.embedder = embedder
        self.chunker = chunker or build_chunker(config)
        self.reader_factory = reader_factory
        self.audit_logger = get_audit_logger("ingest")

    @classmethod
    def from_config(cls, config: IngestConfig, embedder: Optional[EmbeddingService] = None) -> "IngestionPipeline":
        """Wire stage, store, chunker and embedder from one configuration."""
        return cls(
            config,
            FileStage.from_config(config),
            ChunkStore.from_config(config),
            embedder or EmbeddingService.from_config(config),
        )

    def _is_unchanged(self, record: DocumentRecord) -> bool:
        fingerprint = self.store.document_fingerprint(record.path)
        if fingerprint is None:
            return False
        sha256, embed_model = fingerprint
        return sha256 == record.sha256 and embed_model in (self.embedder.model, None)

    def prepare(self, record: DocumentRecord) -> PreparedDocument:
        """Read, chunk and embed one document without touching the store."""
        started = time.time()
        reader = self.reader_factory(record.path)
        extracted = reader.read(self.stage.read_bytes(record.path), record.path)

        chunks = [
            Chunk.from_text(record.path, sequence, text)
            for sequence, text in enumerate(self.chunker.split(extracted.text))
        ]
        vectors = self.embedder.embed_texts([c.text for c in chunks])
        scoped_url = self.stage.build_scoped_url(record.path) if chunks else ""

        entries = [
            ChunkStoreEntry(document=record, chunk=chunk, embedding=vector, scoped_url=scoped_url)
            for chunk, vector in zip(chunks, vectors)
        ]
        return PreparedDocument(record, extracted, entries, started)

    def commit(self, prepared: PreparedDocument) -> DocumentResult:
        """Store a prepared document; this is where its chunks become visible."""
        record = prepared.record
        self.store.replace_document(record, prepared.entries)
        processing_time_ms = (time.time() - prepared.started) * 1000

        log_ingestion_event(
            self.audit_logger,
            path=record.path,
            document_id=record.document_id,
            pages=len(prepared.extracted.pages),
            failed_pages=prepared.extracted.failed_pages,
            chunks_created=len(prepared.entries),
            embed_model=self.embedder.model,
            file_hash=record.sha256,
            processing_time_ms=processing_time_ms,
        )
        return DocumentResult(
            path=record.path,
            status="ingested",
            chunks=len(prepared.entries),
            pages=len(prepared.extracted.pages),
            failed_pages=prepared.extracted.failed_pages,
            processing_time_ms=processing_time_ms,
        )

    def _failure(self, record: DocumentRecord, stage: str, error: Exception) -> DocumentResult:
        log_document_failure(self.audit_logger, record.path, stage, error)
        return DocumentResult(path=record.path, status="failed", error=str(error))

    def ingest_document(self, record: DocumentRecord, force: bool = False) -> DocumentResult:
        """Ingest one document, isolating any failure to it."""
        if not force and self.config.skip_unchanged and self._is_unchanged(record):
            logger.info(f"{record.path} unchanged (hash: {record.sha256[:8]}), skipping")
            return DocumentResult(path=record.path, status="skipped")

        try:
            prepared = self.prepare(record)
        except FATAL_ERRORS:
            raise
        except Exception as e:
            return self._failure(record, "prepare", e)

        try:
            return self.commit(prepared)
        except FATAL_ERRORS:
            raise
        except Exception as e:
            return self._failure(record, "store", e)

    def run(self, pattern: Optional[str] = None, force: bool = False) -> IngestReport:
        """Ingest every matching document in the stage."""
        started = time.time()
        self.store.ping()
        self.store.create_schema()
        self.embedder.clear_cache()

        records = self.stage.list_files(pattern or self.config.file_pattern)
        report = IngestReport()
        if not records:
            logger.warning(f"No documents found in stage {self.stage.name}")
            return report

        logger.info(f"Found {len(records)} documents to ingest")

        if self.config.max_workers <= 1:
            report.results = [self.ingest_document(record, force) for record in records]
        else:
            report.results = self._run_parallel(records, force)

        report.elapsed_ms = (time.time() - started) * 1000
        logger.info(
            f"Completed ingestion: {len(report.ingested)}/{len(records)} documents ingested, "
            f"{len(report.skipped)} skipped, {len(report.failed)} failed"
        )
        return report

    def _run_parallel(self, records: List[DocumentRecord], force: bool) -> List[DocumentResult]:
        """Prepare documents in worker threads; commit them in order on this thread."""
        results: List[Optional[DocumentResult]] = [None] * len(records)
        pending: List[Tuple[int, DocumentRecord]] = []
        for position, record in enumerate(records):
            if not force and self.config.skip_unchanged and self._is_unchanged(record):
                logger.info(f"{record.path} unchanged (hash: {record.sha256[:8]}), skipping")
                results[position] = DocumentResult(path=record.path, status="skipped")
            else:
                pending.append((position, record))

        with ThreadPoolExecutor(max_workers=self.config.max_workers) as executor:
            futures = [(position, record, executor.submit(self.prepare, record)) for position, record in pending]
            for position, record, future in futures:
                try:
                    prepared = future.result()
                except FATAL_ERRORS:
                    for _, _, other in futures:
                        other.cancel()
                    raise
                except Exception as e:
                    results[position] = self._failure(record, "prepare", e)
                    continue

                try:
                    results[position] = self.commit(prepared)
                except FATAL_ERRORS:
                    for _, _, other in futures:
                        other.cancel()
                    raise
                except Exception as e:
                    results[position] = self._failure(record, "store", e)

        return results

    def reembed(self, embedder: EmbeddingService) -> int:
        """Re-embed every stored chunk with ``embedder`` and re-pin the store to its model.

        All new vectors are computed before the store is touched, so a failure
        leaves the existing vectors in place.
        """
        chunks = self.store.iter_chunks()
        if not chunks:
            logger.info("No stored chunks to re-embed")
            return 0

        vectors = embedder.embed_texts([text for _, text in chunks])
        replaced = self.store.replace_embeddings(
            embedder.model,
            {chunk_id: vector for (chunk_id, _), vector in zip(chunks, vectors)},
        )
        self.embedder = embedder
        return replaced
