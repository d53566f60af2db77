"""Local embedding client for air-gapped environments."""

import logging
from typing import Any, Dict, List

from sentence_transformers import SentenceTransformer

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class SentenceTransformerEmbeddingClient:
    """Embed text with a locally loaded sentence-transformers model."""

    def __init__(self, model: str = "all-mpnet-base-v2", batch_size: int = 32, device: str = "cpu"):
        """
        Initialize local embedding client.

        Args:
            model: Name of the sentence-transformers model to use
            batch_size: Batch size passed to the encoder
            device: Torch device to load the model on
        """
        self.model = model
        self.batch_size = batch_size
        self.device = device
        self.encoder = None
        self.model_dimension = None
        self._load_model()

    def _load_model(self) -> None:
        """Load the sentence transformer model."""
        try:
            logger.info(f"Loading local embedding model: {self.model}")
            self.encoder = SentenceTransformer(self.model, device=self.device)
            self.model_dimension = self.encoder.get_sentence_embedding_dimension()
            logger.info(f"Loaded model with dimension: {self.model_dimension}")
        except OSError as e:
            raise ConfigurationError(f"Failed to load local embedding model {self.model}: {e}") from e

    def embed(self, texts: List[str]) -> List[List[float]]:
        embeddings = self.encoder.encode(texts, batch_size=self.batch_size, convert_to_numpy=True)
        return [emb.tolist() for emb in embeddings]

    def get_model_info(self) -> Dict[str, Any]:
        """Get information about the loaded model."""
        return {
            "model_name": self.model,
            "dimension": self.model_dimension,
            "device": self.device,
        }

