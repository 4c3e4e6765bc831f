from dataclasses import dataclass

import litellm
import numpy as np

from chatrecall.constants import EMBEDDING_BATCH_SIZE, EMBEDDING_TEXT_LIMIT
from chatrecall.errors import EmbeddingFailure
from chatrecall.logging import get_logger

_logger = get_logger(__name__)


@dataclass
class EmbeddingConfig:
    model: str
    dim: int


def l2_normalize(vectors: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    return vectors / np.where(norms == 0, 1, norms)


class Embedder:
    """Turns conversation and query text into unit vectors of a fixed dimension."""

    def __init__(self, config: EmbeddingConfig):
        self.config = config

    async def _embed_batch(self, texts: list[str]) -> np.ndarray:
        try:
            response = await litellm.aembedding(model=self.config.model, input=texts)
        except Exception as e:
            raise EmbeddingFailure(f"{self.config.model}: {e}") from e

        items = sorted(response.data, key=lambda item: item["index"])
        vectors = np.array([item["embedding"] for item in items], dtype=np.float32)
        if vectors.shape != (len(texts), self.config.dim):
            raise EmbeddingFailure(
                f"{self.config.model} returned shape {vectors.shape}, expected ({len(texts)}, {self.config.dim})"
            )
        return vectors

    async def embed(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.empty((0, self.config.dim), dtype=np.float32)

        # Providers reject empty strings
        prepared = [t[:EMBEDDING_TEXT_LIMIT] or " " for t in texts]
        batches = [
            await self._embed_batch(prepared[i : i + EMBEDDING_BATCH_SIZE])
            for i in range(0, len(prepared), EMBEDDING_BATCH_SIZE)
        ]
        if len(batches) > 1:
            _logger.debug("Embedded %d texts in %d batches", len(prepared), len(batches))
        return l2_normalize(np.concatenate(batches))

    async def embed_one(self, text: str) -> np.ndarray:
        return (await self.embed([text]))[0]
