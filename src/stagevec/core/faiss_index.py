"""FAISS index creation, persistence, and search for chunk embeddings."""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import faiss
import numpy as np

logger = logging.getLogger(__name__)


class VectorIndex:
    """Nearest-neighbour index over chunk vectors.

    ``flat`` is exact search, ``hnsw`` approximate. With the ``cosine`` metric
    vectors are normalized and searched by inner product, so higher scores are
    closer; with ``l2`` the score is the squared distance and lower is closer.

    FAISS HNSW cannot delete vectors, so removals only mark the index stale
    and the owner rebuilds it from the database before the next query.
    """

    def __init__(
        self,
        index_path: Optional[Path] = None,
        index_type: str = "flat",
        metric: str = "cosine",
        hnsw_m: int = 16,
        hnsw_ef_construction: int = 200,
        hnsw_ef_search: int = 100
    ):
        self.index_path = Path(index_path) if index_path else None
        self.index_type = index_type
        self.metric = metric
        self.hnsw_m = hnsw_m
        self.hnsw_ef_construction = hnsw_ef_construction
        self.hnsw_ef_search = hnsw_ef_search
        self.index: Optional[faiss.Index] = None
        self.chunk_ids: List[str] = []  # FAISS position -> chunk id
        self.generation: Optional[str] = None  # store write the vectors reflect
        self.stale = False

    @property
    def higher_is_closer(self) -> bool:
        return self.metric == "cosine"

    def create_index(self, dimensions: int) -> faiss.Index:
        """Create a new empty FAISS index."""
        faiss_metric = faiss.METRIC_INNER_PRODUCT if self.metric == "cosine" else faiss.METRIC_L2
        if self.index_type == "hnsw":
            index = faiss.IndexHNSWFlat(dimensions, self.hnsw_m, faiss_metric)
            index.hnsw.efConstruction = self.hnsw_ef_construction
            index.hnsw.efSearch = self.hnsw_ef_search
            logger.info(f"Created HNSW index with dimensions={dimensions}, M={self.hnsw_m}")
        elif self.metric == "cosine":
            index = faiss.IndexFlatIP(dimensions)
            logger.info(f"Created flat inner-product index with dimensions={dimensions}")
        else:
            index = faiss.IndexFlatL2(dimensions)
            logger.info(f"Created flat L2 index with dimensions={dimensions}")
        return index

    def _prepare(self, embeddings: np.ndarray) -> np.ndarray:
        embeddings = np.asarray(embeddings, dtype=np.float32)
        if embeddings.ndim == 1:
            embeddings = embeddings.reshape(1, -1)
        if self.metric == "cosine":
            norms = np.linalg.norm(embeddings, axis=1, keepdims=True) + 1e-12
            embeddings = embeddings / norms
        return np.ascontiguousarray(embeddings, dtype=np.float32)

    def add(self, embeddings: np.ndarray, chunk_ids: List[str]) -> None:
        """Add embeddings to the index."""
        if len(embeddings) != len(chunk_ids):
            raise ValueError("Number of embeddings must match number of chunk IDs")
        if len(chunk_ids) == 0:
            return

        vectors = self._prepare(embeddings)
        if self.index is None:
            self.index = self.create_index(vectors.shape[1])
        elif self.index.d != vectors.shape[1]:
            raise ValueError(f"FAISS index dimension mismatch: index.d={self.index.d} vs embeddings.d={vectors.shape[1]}")

        self.index.add(vectors)
        self.chunk_ids.extend(chunk_ids)
        logger.info(f"Added {len(chunk_ids)} embeddings to FAISS index")

    def rebuild(self, embeddings: np.ndarray, chunk_ids: List[str], generation: Optional[str] = None) -> None:
        """Replace the index contents."""
        self.index = None
        self.chunk_ids = []
        self.generation = generation
        self.stale = False
        self.add(embeddings, chunk_ids)
        logger.info(f"Rebuilt FAISS index with {len(self.chunk_ids)} vectors")

    def mark_stale(self) -> None:
        self.stale = True

    def search(self, query_embedding: np.ndarray, k: int = 10) -> List[Tuple[str, float]]:
        """Return up to k (chunk_id, score) pairs, closest first."""
        if self.index is None or self.index.ntotal == 0:
            return []

        query = self._prepare(query_embedding)
        if query.shape[1] != self.index.d:
            raise ValueError(f"Query has {query.shape[1]} dimensions, index has {self.index.d}")

        scores, indices = self.index.search(query, min(k, self.index.ntotal))

        results = []
        for score, idx in zip(scores[0].tolist(), indices[0].tolist()):
            if 0 <= idx < len(self.chunk_ids):  # -1 means not found
                results.append((self.chunk_ids[idx], float(score)))
        return results

    def load(self) -> bool:
        """Load an existing FAISS index and the generation it was saved at."""
        if self.index_path is None:
            return False

        index_file = self.index_path / "faiss.index"
        metadata_file = self.index_path / "metadata.txt"
        generation_file = self.index_path / "generation.txt"

        if not index_file.exists() or not metadata_file.exists() or not generation_file.exists():
            logger.info("No existing FAISS index found")
            return False

        self.index = faiss.read_index(str(index_file))
        with open(metadata_file, "r", encoding="utf-8") as f:
            self.chunk_ids = [line.rstrip("\n").split("\t", 1)[1] for line in f if line.strip()]
        self.generation = generation_file.read_text(encoding="utf-8").strip()
        self.stale = False

        if len(self.chunk_ids) != self.index.ntotal:
            logger.warning("FAISS index and id map disagree, marking index stale")
            self.stale = True

        logger.info(f"Loaded FAISS index with {self.index.ntotal} vectors (generation {self.generation})")
        return True

    def save(self) -> None:
        """Save FAISS index to disk.

        The generation file is removed first and written last, so a partial
        save is never mistaken for a current one.
        """
        if self.index_path is None:
            return

        self.index_path.mkdir(parents=True, exist_ok=True)
        generation_file = self.index_path / "generation.txt"
        generation_file.unlink(missing_ok=True)

        if self.index is None:
            for name in ("faiss.index", "metadata.txt"):
                (self.index_path / name).unlink(missing_ok=True)
            return

        faiss.write_index(self.index, str(self.index_path / "faiss.index"))
        with open(self.index_path / "metadata.txt", "w", encoding="utf-8") as f:
            for position, chunk_id in enumerate(self.chunk_ids):
                f.write(f"{position}\t{chunk_id}\n")
        if self.generation is not None:
            generation_file.write_text(self.generation, encoding="utf-8")

        logger.info(f"Saved FAISS index with {self.index.ntotal} vectors to {self.index_path}")

    def get_stats(self) -> Dict[str, Any]:
        """Get index statistics."""
        if self.index is None:
            return {"total_vectors": 0, "index_type": "None", "metric": self.metric, "stale": self.stale}

        return {
            "total_vectors": self.index.ntotal,
            "index_type": type(self.index).__name__,
            "metric": self.metric,
            "dimensions": self.index.d,
            "stale": self.stale,
        }
