"""Run-scoped configuration for the ingestion pipeline."""

import json
import os
from dataclasses import dataclass, fields, asdict
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .errors import ConfigurationError

# Load environment variables
load_dotenv()

EMBEDDING_PROVIDERS = ("openai", "local", "hash")
CHUNKERS = ("window", "recursive")
INDEX_TYPES = ("flat", "hnsw")
METRICS = ("cosine", "l2")


def _get_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.lower() in {"1", "true", "t", "yes", "y"}


def _get_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from e


@dataclass
class IngestConfig:
    """Everything one ingestion run needs.

    Replaces the ambient database/schema/stage context of a warehouse session
    with an explicit object handed to the pipeline at startup.
    """
    stage_dir: str = "./stage"
    stage_name: str = "docs"
    database_url: str = "sqlite:///stagevec.db"
    index_dir: Optional[str] = "./faiss_index"
    index_type: str = "flat"
    metric: str = "cosine"
    chunk_size: int = 4000
    chunk_overlap: int = 400
    chunker: str = "window"
    embedding_provider: str = "openai"
    embed_model: str = "text-embedding-3-small"
    embedding_dim: int = 768
    embed_batch_size: int = 100
    embed_max_attempts: int = 3
    openai_api_key: str = ""
    max_workers: int = 1
    url_ttl: int = 3600
    signing_key: str = "stagevec-dev-key"
    file_pattern: str = "**/*"
    skip_unchanged: bool = True

    @classmethod
    def from_env(cls) -> "IngestConfig":
        """Create an IngestConfig from environment variables."""
        defaults = cls()
        return cls(
            stage_dir=os.getenv("STAGEVEC_STAGE_DIR", defaults.stage_dir),
            stage_name=os.getenv("STAGEVEC_STAGE_NAME", defaults.stage_name),
            database_url=os.getenv("DATABASE_URL", defaults.database_url),
            index_dir=os.getenv("STAGEVEC_INDEX_DIR", defaults.index_dir) or None,
            index_type=os.getenv("STAGEVEC_INDEX_TYPE", defaults.index_type),
            metric=os.getenv("STAGEVEC_METRIC", defaults.metric),
            chunk_size=_get_int("STAGEVEC_CHUNK_SIZE", defaults.chunk_size),
            chunk_overlap=_get_int("STAGEVEC_CHUNK_OVERLAP", defaults.chunk_overlap),
            chunker=os.getenv("STAGEVEC_CHUNKER", defaults.chunker),
            embedding_provider=os.getenv("STAGEVEC_EMBEDDING_PROVIDER", defaults.embedding_provider),
            embed_model=os.getenv("EMBED_MODEL", defaults.embed_model),
            embedding_dim=_get_int("EMBEDDING_DIM", defaults.embedding_dim),
            embed_batch_size=_get_int("EMBED_BATCH_SIZE", defaults.embed_batch_size),
            embed_max_attempts=_get_int("EMBED_MAX_ATTEMPTS", defaults.embed_max_attempts),
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            max_workers=_get_int("STAGEVEC_MAX_WORKERS", defaults.max_workers),
            url_ttl=_get_int("STAGEVEC_URL_TTL", defaults.url_ttl),
            signing_key=os.getenv("STAGEVEC_SIGNING_KEY", defaults.signing_key),
            file_pattern=os.getenv("STAGEVEC_FILE_PATTERN", defaults.file_pattern),
            skip_unchanged=_get_bool(os.getenv("STAGEVEC_SKIP_UNCHANGED"), defaults.skip_unchanged),
        )

    @classmethod
    def from_file(cls, path: str, base: Optional["IngestConfig"] = None) -> "IngestConfig":
        """Merge a JSON file of overrides over ``base`` (environment by default)."""
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {path}")
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                overrides = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in {path}: {e}") from e
        return (base or cls.from_env()).merged(overrides)

    def merged(self, overrides: Dict[str, Any]) -> "IngestConfig":
        """Return a copy with ``overrides`` applied; unknown keys are rejected."""
        known = {f.name: f for f in fields(self)}
        values = asdict(self)
        for key, value in overrides.items():
            if key not in known:
                raise ConfigurationError(f"Unknown configuration key: {key}")
            values[key] = _coerce(value, type(getattr(self, key)))
        return IngestConfig(**values)

    def validate(self) -> "IngestConfig":
        """Raise ConfigurationError on values the pipeline cannot run with."""
        if self.chunk_size <= 0:
            raise ConfigurationError("chunk_size must be positive")
        if self.chunk_overlap < 0 or self.chunk_overlap >= self.chunk_size:
            raise ConfigurationError("chunk_overlap must be >= 0 and smaller than chunk_size")
        if self.chunker not in CHUNKERS:
            raise ConfigurationError(f"Unknown chunker: {self.chunker} (expected one of {CHUNKERS})")
        if self.embedding_provider not in EMBEDDING_PROVIDERS:
            raise ConfigurationError(
                f"Unknown embedding provider: {self.embedding_provider} (expected one of {EMBEDDING_PROVIDERS})"
            )
        if self.index_type not in INDEX_TYPES:
            raise ConfigurationError(f"Unknown index type: {self.index_type}")
        if self.metric not in METRICS:
            raise ConfigurationError(f"Unknown metric: {self.metric}")
        if self.embedding_dim <= 0:
            raise ConfigurationError("embedding_dim must be positive")
        if self.embed_batch_size < 1 or self.embed_max_attempts < 1 or self.max_workers < 1:
            raise ConfigurationError("embed_batch_size, embed_max_attempts and max_workers must be >= 1")
        return self

    def redacted(self) -> Dict[str, Any]:
        """Config as a dict with secrets masked, for display."""
        values = asdict(self)
        for secret in ("openai_api_key", "signing_key"):
            if values[secret]:
                values[secret] = "***"
        return values


def _coerce(value: Any, target: type) -> Any:
    if value is None or isinstance(value, target):
        return value
    if target is bool:
        return _get_bool(str(value))
    if target in (int, float, str):
        try:
            return target(value)
        except ValueError as e:
            raise ConfigurationError(f"Cannot convert {value!r} to {target.__name__}") from e
    return value
