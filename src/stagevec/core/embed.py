"""Embedding clients and the retrying, validating embedding service.

A failed or unusable embedding is surfaced as EmbeddingError and never stored
as a default vector.
"""

import hashlib
import logging
import threading
from typing import Dict, List, Optional, Protocol, Sequence

import numpy as np
import openai
from pydantic import ValidationError
from tenacity import (
    Retrying,
    RetryError,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import IngestConfig
from .errors import ConfigurationError, EmbeddingError
from .models import EmbeddingVector

logger = logging.getLogger(__name__)

MAX_INPUT_TOKENS = 8191  # text-embedding-3-*

# Rejections no retry can fix: bad key, no access to the model, unknown model
CREDENTIAL_ERRORS = (openai.AuthenticationError, openai.PermissionDeniedError, openai.NotFoundError)


class EmbeddingClient(Protocol):
    model: str

    def embed(self, texts: List[str]) -> List[List[float]]:
        ...


class OpenAIEmbeddingClient:
    """Embeddings from the OpenAI API."""

    def __init__(self, model: str = "text-embedding-3-small", dimensions: Optional[int] = 768,
                 api_key: str = ""):
        if not api_key:
            raise ConfigurationError("OpenAI API key not found in environment variables")
        self.model = model
        self.dimensions = dimensions
        self.client = openai.OpenAI(api_key=api_key)

    def embed(self, texts: List[str]) -> List[List[float]]:
        truncated_texts = []
        for text in texts:
            # Simple token approximation: ~4 chars per token
            if len(text) > MAX_INPUT_TOKENS * 4:
                logger.warning(f"Truncated text from {len(text)} to {MAX_INPUT_TOKENS * 4} characters")
                text = text[:MAX_INPUT_TOKENS * 4]
            truncated_texts.append(text)

        kwargs = {"model": self.model, "input": truncated_texts}
        # Only the text-embedding-3 family accepts a reduced dimension
        if self.dimensions and self.model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self.dimensions

        response = self.client.embeddings.create(**kwargs)
        return [item.embedding for item in response.data]


class HashEmbeddingClient:
    """Deterministic offline embeddings seeded from a hash of (model, text).

    Identical text always maps to the same unit vector and distinct text to
    a different one. Carries no semantics; meant for dry runs and tests.
    """

    def __init__(self, model: str = "hash-768", dimensions: int = 768):
        self.model = model
        self.dimensions = dimensions

    def embed(self, texts: List[str]) -> List[List[float]]:
        vectors = []
        for text in texts:
            digest = hashlib.sha256(f"{self.model}\0{text}".encode("utf-8")).digest()
            rng = np.random.default_rng(int.from_bytes(digest[:8], "big"))
            vec = rng.standard_normal(self.dimensions)
            vec /= np.linalg.norm(vec)
            vectors.append(vec.tolist())
        return vectors


def build_embedding_client(config: IngestConfig,
                           provider: Optional[str] = None,
                           model: Optional[str] = None) -> EmbeddingClient:
    """Build the embedding client for the configured provider."""
    provider = provider or config.embedding_provider
    model = model or config.embed_model
    if provider == "openai":
        return OpenAIEmbeddingClient(model, config.embedding_dim, config.openai_api_key)
    if provider == "local":
        from .local_embeddings import SentenceTransformerEmbeddingClient
        return SentenceTransformerEmbeddingClient(model)
    if provider == "hash":
        return HashEmbeddingClient(model, config.embedding_dim)
    raise ConfigurationError(f"Unknown embedding provider: {provider}")


def text_key(model: str, text: str) -> str:
    return hashlib.sha256(f"{model}\0{text}".encode("utf-8")).hexdigest()


class EmbeddingService:
    """Batches, retries, validates and caches calls to an embedding client."""

    def __init__(
        self,
        client: EmbeddingClient,
        dimensions: int,
        batch_size: int = 100,
        max_attempts: int = 3,
        backoff_min: float = 4,
        backoff_max: float = 10,
        cache_size: int = 10000
    ):
        self.client = client
        self.dimensions = dimensions
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.backoff_min = backoff_min
        self.backoff_max = backoff_max
        self.cache_size = cache_size
        self._cache: Dict[str, EmbeddingVector] = {}  # insertion order, oldest evicted first
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: IngestConfig, client: Optional[EmbeddingClient] = None) -> "EmbeddingService":
        return cls(
            client or build_embedding_client(config),
            dimensions=config.embedding_dim,
            batch_size=config.embed_batch_size,
            max_attempts=config.embed_max_attempts,
        )

    @property
    def model(self) -> str:
        return self.client.model

    def _call_with_retry(self, texts: List[str]) -> List[List[float]]:
        retryer = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=self.backoff_min, max=self.backoff_max),
            retry=retry_if_not_exception_type(CREDENTIAL_ERRORS + (ConfigurationError,)),
        )
        try:
            for attempt in retryer:
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(
                            f"Retrying embedding batch of {len(texts)} "
                            f"(attempt {attempt.retry_state.attempt_number}/{self.max_attempts})"
                        )
                    return self.client.embed(texts)
        except CREDENTIAL_ERRORS as e:
            raise ConfigurationError(f"Embedding provider rejected {self.model}: {e}") from e
        except RetryError as e:
            cause = e.last_attempt.exception()
            raise EmbeddingError(
                f"Embedding failed after {self.max_attempts} attempts with {self.model}: {cause}"
            ) from cause

    def _validate(self, raw: Sequence[float]) -> EmbeddingVector:
        if len(raw) != self.dimensions:
            raise EmbeddingError(
                f"{self.model} returned a {len(raw)}-dimension vector, expected {self.dimensions}"
            )
        try:
            return EmbeddingVector(model=self.model, values=[float(v) for v in raw])
        except ValidationError as e:
            raise EmbeddingError(f"{self.model} returned an unusable vector: {e}") from e

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def _remember(self, key: str, vector: EmbeddingVector) -> None:
        self._cache.pop(key, None)
        self._cache[key] = vector
        while len(self._cache) > self.cache_size:
            del self._cache[next(iter(self._cache))]

    def embed_texts(self, texts: Sequence[str]) -> List[EmbeddingVector]:
        """Embed texts in input order, reusing vectors for text already seen."""
        keys = [text_key(self.model, t) for t in texts]
        found: Dict[str, EmbeddingVector] = {}
        with self._lock:
            for key in keys:
                if key in self._cache:
                    found[key] = self._cache[key]
        missing = {k: t for k, t in zip(keys, texts) if k not in found}

        pending = list(missing.items())
        for i in range(0, len(pending), self.batch_size):
            batch = pending[i:i + self.batch_size]
            batch_texts = [t for _, t in batch]
            logger.info(f"Processing embedding batch {i // self.batch_size + 1}: {len(batch)} chunks")

            raw_vectors = self._call_with_retry(batch_texts)
            if len(raw_vectors) != len(batch):
                raise EmbeddingError(
                    f"{self.model} returned {len(raw_vectors)} vectors for {len(batch)} inputs"
                )
            validated = [self._validate(raw) for raw in raw_vectors]
            with self._lock:
                for (key, _), vector in zip(batch, validated):
                    found[key] = vector
                    self._remember(key, vector)

        return [found[k] for k in keys]

    def embed_query(self, text: str) -> EmbeddingVector:
        return self.embed_texts([text])[0]
