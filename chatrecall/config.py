import json
import logging
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from chatrecall.constants import (
    BATCH_CONCURRENCY,
    BATCH_LIMIT,
    DEFAULT_EMBEDDING_MODEL,
    EMBEDDING_MODELS,
    LEXICAL_TIMEOUT,
    LEXICAL_WEIGHT,
    RELATIONSHIP_MAX_NEIGHBORS,
    RELATIONSHIP_MIN_SIMILARITY,
    RRF_K,
    VECTOR_TIMEOUT,
    VECTOR_WEIGHT,
)
from chatrecall.embedder import EmbeddingConfig
from chatrecall.logging import get_logger

CHATRECALL_DIR = Path.home() / ".chatrecall"
SETTINGS_PATH = CHATRECALL_DIR / "settings.json"

_logger = get_logger(__name__)


def load_user_settings() -> dict:
    if not SETTINGS_PATH.exists():
        return {}
    try:
        return json.loads(SETTINGS_PATH.read_text())
    except (json.JSONDecodeError, OSError):
        _logger.warning("Failed to load user settings", exc_info=True)
        return {}


class Config(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CHATRECALL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        validate_assignment=True,
        populate_by_name=True,
    )

    # Standard provider key, read without prefix
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")

    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    db_dir: Path = CHATRECALL_DIR

    # Hybrid search
    rrf_k: int = RRF_K
    lexical_weight: float = LEXICAL_WEIGHT
    vector_weight: float = VECTOR_WEIGHT
    lexical_timeout: float = LEXICAL_TIMEOUT
    vector_timeout: float = VECTOR_TIMEOUT

    # Relationship graph
    relationship_min_similarity: float = RELATIONSHIP_MIN_SIMILARITY
    relationship_max_neighbors: int = RELATIONSHIP_MAX_NEIGHBORS
    batch_limit: int = BATCH_LIMIT
    batch_concurrency: int = BATCH_CONCURRENCY

    log_level: str = "INFO"
    log_json: bool = False

    # Bearer token for the REST API, unset disables auth
    api_key: str | None = None

    @field_validator("embedding_model")
    @classmethod
    def _validate_embedding_model(cls, v: str) -> str:
        if v not in EMBEDDING_MODELS:
            raise ValueError(f"Unsupported embedding model: {v}. Must be one of: {', '.join(EMBEDDING_MODELS)}")
        return v

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level: {v}")
        return v

    @field_validator("lexical_weight", "vector_weight")
    @classmethod
    def _validate_weight(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"search weights must be non-negative, got {v}")
        return v

    @field_validator("lexical_timeout", "vector_timeout")
    @classmethod
    def _validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"timeouts must be positive, got {v}")
        return v

    @field_validator("relationship_min_similarity")
    @classmethod
    def _validate_similarity(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"relationship_min_similarity must be in [0, 1], got {v}")
        return v

    @field_validator("rrf_k", "relationship_max_neighbors", "batch_limit", "batch_concurrency")
    @classmethod
    def _validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be >= 1, got {v}")
        return v

    @model_validator(mode="after")
    def _validate_blend(self) -> "Config":
        if self.lexical_weight == 0 and self.vector_weight == 0:
            raise ValueError("lexical_weight and vector_weight cannot both be zero")
        return self

    @property
    def embedding(self) -> EmbeddingConfig:
        return EmbeddingConfig(
            model=self.embedding_model,
            dim=EMBEDDING_MODELS[self.embedding_model],
        )

    @property
    def conversations_db_path(self) -> Path:
        return self.db_dir / "conversations.db"


PERSIST_KEYS = frozenset(
    {
        "embedding_model",
        "lexical_weight",
        "vector_weight",
        "relationship_min_similarity",
        "relationship_max_neighbors",
    }
)


def get_config() -> Config:
    settings = load_user_settings()

    # Build config: init args (settings.json) > env vars > defaults
    overrides = {k: settings[k] for k in PERSIST_KEYS if k in settings}
    return Config(**overrides)  # type: ignore - pydantic handles validation
