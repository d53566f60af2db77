"""Chunk store: document/chunk rows in SQL plus a FAISS index for similarity search.

Rows are written with SQLAlchemy Core so the same store runs on SQLite locally
and on PostgreSQL (psycopg driver) in deployment. A document's chunks are
replaced in one transaction; that commit is the point where new entries become
visible to queries.
"""

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import sqlalchemy as sa
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from .errors import ModelMismatchError, StoreError, StoreUnavailableError
from .faiss_index import VectorIndex
from .models import ChunkStoreEntry, DocumentChunkCount, DocumentRecord, EmbeddingVector, SearchHit

logger = logging.getLogger(__name__)

metadata = sa.MetaData()

document_table = sa.Table(
    "document", metadata,
    sa.Column("id", sa.Text(), primary_key=True),
    sa.Column("path", sa.Text(), nullable=False, unique=True),
    sa.Column("size", sa.BigInteger(), nullable=False),
    sa.Column("sha256", sa.Text(), nullable=False),
    sa.Column("file_url", sa.Text(), nullable=False),
    sa.Column("embed_model", sa.Text(), nullable=True),
    sa.Column("chunk_count", sa.Integer(), nullable=False, default=0),
    sa.Column("ingested_at", sa.DateTime(timezone=True), nullable=False),
)

chunk_table = sa.Table(
    "doc_chunk", metadata,
    sa.Column("id", sa.Text(), primary_key=True),
    sa.Column("document_id", sa.Text(), sa.ForeignKey("document.id"), nullable=False),
    sa.Column("sequence", sa.Integer(), nullable=False),
    sa.Column("text", sa.Text(), nullable=False),
    sa.Column("length", sa.Integer(), nullable=False),
    sa.Column("embedding", sa.JSON(), nullable=False),
    sa.Column("embed_model", sa.Text(), nullable=False),
    sa.Column("vector_dim", sa.Integer(), nullable=False),
    sa.Column("scoped_url", sa.Text(), nullable=True),
    sa.UniqueConstraint("document_id", "sequence", name="uq_doc_chunk_sequence"),
)
sa.Index("idx_doc_chunk_document_id", chunk_table.c.document_id)

meta_table = sa.Table(
    "store_meta", metadata,
    sa.Column("key", sa.Text(), primary_key=True),
    sa.Column("value", sa.Text(), nullable=False),
)

PIN_KEYS = ("embed_model", "vector_dim")
# Token replaced by every committed write; the FAISS index is current only at the same token
GENERATION_KEY = "index_generation"


@contextmanager
def _store_errors(action: str) -> Iterator[None]:
    try:
        yield
    except OperationalError as e:
        raise StoreUnavailableError(f"Chunk store unavailable while trying to {action}: {e}") from e
    except SQLAlchemyError as e:
        raise StoreError(f"Failed to {action}: {e}") from e


class ChunkStore:
    """Persists ChunkStoreEntry records and answers count and nearest-neighbour queries."""

    def __init__(self, database_url: str, index: Optional[VectorIndex] = None):
        self.database_url = database_url
        self.engine = sa.create_engine(database_url)
        self.index = index or VectorIndex()
        self._index_synced = False
        self._write_lock = threading.Lock()

    @classmethod
    def from_config(cls, config) -> "ChunkStore":
        index = VectorIndex(
            Path(config.index_dir) if config.index_dir else None,
            index_type=config.index_type,
            metric=config.metric,
        )
        return cls(config.database_url, index)

    def create_schema(self) -> None:
        with _store_errors("create schema"):
            metadata.create_all(self.engine)

    def ping(self) -> None:
        """Raise StoreUnavailableError if the database cannot be reached."""
        with _store_errors("connect"):
            with self.engine.connect() as conn:
                conn.execute(sa.text("SELECT 1"))

    def close(self) -> None:
        self.engine.dispose()

    # -- model pinning ---------------------------------------------------

    @staticmethod
    def _read_pin(conn: sa.Connection) -> Optional[Tuple[str, int]]:
        rows = dict(conn.execute(sa.select(meta_table.c.key, meta_table.c.value)).all())
        if "embed_model" not in rows:
            return None
        return rows["embed_model"], int(rows["vector_dim"])

    @staticmethod
    def _write_pin(conn: sa.Connection, model: Optional[str], dim: Optional[int]) -> None:
        conn.execute(sa.delete(meta_table).where(meta_table.c.key.in_(PIN_KEYS)))
        if model is not None:
            conn.execute(sa.insert(meta_table), [
                {"key": "embed_model", "value": model},
                {"key": "vector_dim", "value": str(dim)},
            ])

    def pinned_model(self) -> Optional[Tuple[str, int]]:
        """The (model, dimensions) every stored vector was produced with."""
        with _store_errors("read pinned model"):
            with self.engine.connect() as conn:
                return self._read_pin(conn)

    # -- index generation ------------------------------------------------

    @staticmethod
    def _read_generation(conn: sa.Connection, for_update: bool = False) -> str:
        query = sa.select(meta_table.c.value).where(meta_table.c.key == GENERATION_KEY)
        if for_update:
            query = query.with_for_update()
        return conn.execute(query).scalar_one_or_none() or ""

    @classmethod
    def _next_generation(cls, conn: sa.Connection) -> Tuple[str, str]:
        """Replace the generation token inside a write; returns (previous, new)."""
        previous = cls._read_generation(conn, for_update=True)
        generation = uuid.uuid4().hex
        if previous:
            conn.execute(
                sa.update(meta_table).where(meta_table.c.key == GENERATION_KEY).values(value=generation)
            )
        else:
            conn.execute(sa.insert(meta_table).values(key=GENERATION_KEY, value=generation))
        return previous, generation

    def index_generation(self) -> str:
        """Token of the last committed write; empty for a store never written to."""
        with _store_errors("read index generation"):
            with self.engine.connect() as conn:
                return self._read_generation(conn)

    # -- writes ------------------------------------------------------------

    def replace_document(self, document: DocumentRecord, entries: Sequence[ChunkStoreEntry]) -> int:
        """Atomically replace every chunk of ``document`` with ``entries``."""
        models = {(e.embedding.model, e.embedding.dimensions) for e in entries}
        if len(models) > 1:
            raise ModelMismatchError(f"Entries for {document.path} mix embedding models: {sorted(models)}")
        for entry in entries:
            if entry.document.path != document.path:
                raise StoreError(f"Entry for {entry.document.path} passed with document {document.path}")

        embed_model = next(iter(models))[0] if models else None

        with self._write_lock, _store_errors(f"store {document.path}"):
            with self.engine.begin() as conn:
                previous, generation = self._next_generation(conn)
                pin = self._read_pin(conn)
                if models:
                    model, dim = next(iter(models))
                    if pin is None:
                        self._write_pin(conn, model, dim)
                        logger.info(f"Pinned chunk store to {model} ({dim} dimensions)")
                    elif pin != (model, dim):
                        raise ModelMismatchError(
                            f"Store holds {pin[0]} ({pin[1]}d) vectors; refusing {model} ({dim}d). "
                            f"Re-embed the store or purge it before switching models."
                        )

                deleted = conn.execute(
                    sa.delete(chunk_table).where(chunk_table.c.document_id == document.document_id)
                ).rowcount
                conn.execute(sa.delete(document_table).where(document_table.c.path == document.path))

                conn.execute(sa.insert(document_table).values(
                    id=document.document_id,
                    path=document.path,
                    size=document.size,
                    sha256=document.sha256,
                    file_url=document.file_url,
                    embed_model=embed_model,
                    chunk_count=len(entries),
                    ingested_at=datetime.now(timezone.utc),
                ))
                if entries:
                    conn.execute(sa.insert(chunk_table), [
                        {
                            "id": entry.chunk_id,
                            "document_id": document.document_id,
                            "sequence": entry.chunk.sequence,
                            "text": entry.chunk.text,
                            "length": entry.chunk.length,
                            "embedding": entry.embedding.values,
                            "embed_model": entry.embedding.model,
                            "vector_dim": entry.embedding.dimensions,
                            "scoped_url": entry.scoped_url,
                        }
                        for entry in entries
                    ])

            if not deleted and self._index_current(previous):
                if entries:
                    self.index.add(
                        np.array([e.embedding.values for e in entries], dtype=np.float32),
                        [e.chunk_id for e in entries],
                    )
                self.index.generation = generation
                self.index.save()
            else:
                self.index.mark_stale()

        logger.info(f"Saved document {document.document_id} with {len(entries)} chunks ({deleted} replaced)")
        return len(entries)

    def purge_document(self, path: str) -> int:
        """Delete a document and its chunks; returns the number of chunks removed."""
        with self._write_lock, _store_errors(f"purge {path}"):
            with self.engine.begin() as conn:
                doc_id = conn.execute(
                    sa.select(document_table.c.id).where(document_table.c.path == path)
                ).scalar_one_or_none()
                if doc_id is None:
                    return 0
                self._next_generation(conn)
                deleted = conn.execute(
                    sa.delete(chunk_table).where(chunk_table.c.document_id == doc_id)
                ).rowcount
                conn.execute(sa.delete(document_table).where(document_table.c.id == doc_id))

                remaining = conn.execute(sa.select(sa.func.count()).select_from(chunk_table)).scalar_one()
                if remaining == 0:
                    self._write_pin(conn, None, None)

            self.index.mark_stale()

        logger.info(f"Purged {path}: {deleted} chunks")
        return deleted

    def replace_embeddings(self, model: str, vectors: Dict[str, EmbeddingVector]) -> int:
        """Swap every stored vector for one from ``model`` and re-pin the store."""
        dims = {v.dimensions for v in vectors.values()}
        if len(dims) > 1 or any(v.model != model for v in vectors.values()):
            raise ModelMismatchError("Replacement vectors must all come from one model and dimension")

        with self._write_lock, _store_errors("replace embeddings"):
            with self.engine.begin() as conn:
                stored_ids = set(conn.execute(sa.select(chunk_table.c.id)).scalars())
                if stored_ids != set(vectors):
                    raise StoreError(
                        f"Replacement covers {len(vectors)} chunks but the store holds {len(stored_ids)}"
                    )
                self._next_generation(conn)
                for chunk_id, vector in vectors.items():
                    conn.execute(
                        sa.update(chunk_table)
                        .where(chunk_table.c.id == chunk_id)
                        .values(embedding=vector.values, embed_model=model, vector_dim=vector.dimensions)
                    )
                conn.execute(
                    sa.update(document_table)
                    .where(document_table.c.chunk_count > 0)
                    .values(embed_model=model)
                )
                self._write_pin(conn, model if dims else None, dims.pop() if dims else None)

            self.index.mark_stale()

        logger.info(f"Replaced {len(vectors)} embeddings with {model}")
        return len(vectors)

    # -- reads ---------------------------------------------------------------

    def document_fingerprint(self, path: str) -> Optional[Tuple[str, Optional[str]]]:
        """(sha256, embed_model) of a stored document, or None."""
        with _store_errors(f"read {path}"):
            with self.engine.connect() as conn:
                row = conn.execute(
                    sa.select(document_table.c.sha256, document_table.c.embed_model)
                    .where(document_table.c.path == path)
                ).first()
        return (row.sha256, row.embed_model) if row else None

    def count_chunks_per_document(self) -> List[DocumentChunkCount]:
        query = (
            sa.select(document_table.c.path, sa.func.count(chunk_table.c.id).label("chunk_count"))
            .select_from(document_table.outerjoin(chunk_table, chunk_table.c.document_id == document_table.c.id))
            .group_by(document_table.c.path)
            .order_by(document_table.c.path)
        )
        with _store_errors("count chunks"):
            with self.engine.connect() as conn:
                return [DocumentChunkCount(path=r.path, chunk_count=r.chunk_count) for r in conn.execute(query)]

    def rows(self, limit: Optional[int] = None) -> List[Tuple[str, int, str, List[float]]]:
        """(path, size, chunk text, vector) rows in document order."""
        query = (
            sa.select(document_table.c.path, document_table.c.size, chunk_table.c.text, chunk_table.c.embedding)
            .select_from(chunk_table.join(document_table, chunk_table.c.document_id == document_table.c.id))
            .order_by(document_table.c.path, chunk_table.c.sequence)
        )
        if limit:
            query = query.limit(limit)
        with _store_errors("read rows"):
            with self.engine.connect() as conn:
                return [(r.path, r.size, r.text, list(r.embedding)) for r in conn.execute(query)]

    def iter_chunks(self) -> List[Tuple[str, str]]:
        """(chunk_id, text) for every stored chunk."""
        query = sa.select(chunk_table.c.id, chunk_table.c.text).order_by(chunk_table.c.id)
        with _store_errors("read chunks"):
            with self.engine.connect() as conn:
                return [(r.id, r.text) for r in conn.execute(query)]

    def _all_embeddings(self) -> Tuple[str, np.ndarray, List[str]]:
        query = sa.select(chunk_table.c.id, chunk_table.c.embedding).order_by(chunk_table.c.id)
        with _store_errors("read embeddings"):
            with self.engine.begin() as conn:
                generation = self._read_generation(conn)
                rows = conn.execute(query).all()
        if not rows:
            return generation, np.empty((0, 0), dtype=np.float32), []
        return generation, np.array([r.embedding for r in rows], dtype=np.float32), [r.id for r in rows]

    def _index_current(self, generation: str) -> bool:
        return self._index_synced and not self.index.stale and self.index.generation == generation

    def rebuild_index(self) -> Dict[str, Any]:
        """Rebuild the FAISS index from the stored vectors."""
        with self._write_lock:
            generation, embeddings, chunk_ids = self._all_embeddings()
            self.index.rebuild(embeddings, chunk_ids, generation=generation)
            self.index.save()
            self._index_synced = True
        return self.index.get_stats()

    def ensure_index(self) -> None:
        """Load or rebuild the FAISS index so it matches the last committed write.

        Writes from other ChunkStore instances (or processes) change the
        generation in ``store_meta``, so an index built or saved before them
        is never reused.
        """
        generation = self.index_generation()
        if self._index_current(generation):
            return
        if self.index.load() and not self.index.stale and self.index.generation == generation:
            self._index_synced = True
            return
        logger.info("FAISS index is out of date with the store, rebuilding")
        self.rebuild_index()

    def search(self, query_vector: EmbeddingVector, k: int = 10) -> List[SearchHit]:
        """Top-k stored chunks nearest to ``query_vector``."""
        pin = self.pinned_model()
        if pin is None:
            return []
        if (query_vector.model, query_vector.dimensions) != pin:
            raise ModelMismatchError(
                f"Query vector from {query_vector.model} ({query_vector.dimensions}d) "
                f"cannot search a store of {pin[0]} ({pin[1]}d) vectors"
            )

        self.ensure_index()
        matches = self.index.search(np.array(query_vector.values, dtype=np.float32), k)
        if not matches:
            return []

        ids = [chunk_id for chunk_id, _ in matches]
        query = (
            sa.select(chunk_table.c.id, chunk_table.c.sequence, chunk_table.c.text, document_table.c.path)
            .select_from(chunk_table.join(document_table, chunk_table.c.document_id == document_table.c.id))
            .where(chunk_table.c.id.in_(ids))
        )
        with _store_errors("search"):
            with self.engine.connect() as conn:
                by_id = {r.id: r for r in conn.execute(query)}

        return [
            SearchHit(chunk_id=chunk_id, path=by_id[chunk_id].path, sequence=by_id[chunk_id].sequence,
                      text=by_id[chunk_id].text, score=score)
            for chunk_id, score in matches
            if chunk_id in by_id
        ]

    def stats(self) -> Dict[str, Any]:
        with _store_errors("read stats"):
            with self.engine.connect() as conn:
                documents = conn.execute(sa.select(sa.func.count()).select_from(document_table)).scalar_one()
                chunks = conn.execute(sa.select(sa.func.count()).select_from(chunk_table)).scalar_one()
                pin = self._read_pin(conn)
        return {
            "documents": documents,
            "chunks": chunks,
            "embed_model": pin[0] if pin else None,
            "vector_dim": pin[1] if pin else None,
            "index": self.index.get_stats(),
        }
