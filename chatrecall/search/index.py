from collections.abc import Iterable
from datetime import datetime

import numpy as np

from chatrecall.constants import (
    BATCH_LIMIT,
    EMBEDDING_BATCH_SIZE,
    LEXICAL_TIMEOUT,
    LEXICAL_WEIGHT,
    RRF_K,
    VECTOR_TIMEOUT,
    VECTOR_WEIGHT,
)
from chatrecall.embedder import Embedder
from chatrecall.errors import EmbeddingFailure
from chatrecall.logging import get_logger
from chatrecall.search.fusion import FusionEngine
from chatrecall.search.types import EmbeddingBatchSummary, FusionResponse, SearchFilters, SearchHit
from chatrecall.store.conversations import ConversationRepository

_logger = get_logger(__name__)


def embedding_text(title: str | None, content: str) -> str:
    return f"{title or ''}\n{content}"


class ConversationIndex:
    """Keeps conversations searchable and answers fused queries over them."""

    def __init__(
        self,
        repo: ConversationRepository,
        embedder: Embedder,
        rrf_k: int = RRF_K,
        lexical_weight: float = LEXICAL_WEIGHT,
        vector_weight: float = VECTOR_WEIGHT,
        lexical_timeout: float = LEXICAL_TIMEOUT,
        vector_timeout: float = VECTOR_TIMEOUT,
    ):
        self.repo = repo
        self.embedder = embedder
        self.engine = FusionEngine(
            lexical_search=self.lexical_search,
            vector_search=self.vector_search,
            embed=self.embed,
            rrf_k=rrf_k,
            lexical_weight=lexical_weight,
            vector_weight=vector_weight,
            lexical_timeout=lexical_timeout,
            vector_timeout=vector_timeout,
        )

    async def lexical_search(self, query: str, filters: SearchFilters, limit: int) -> list[SearchHit]:
        return await self.repo.fts_search(query, filters, limit)

    async def vector_search(self, query_vector: np.ndarray, filters: SearchFilters, limit: int) -> list[SearchHit]:
        return await self.repo.vector_search(query_vector, filters, limit)

    async def embed(self, text: str) -> np.ndarray:
        return await self.embedder.embed_one(text)

    async def upsert(
        self,
        conversation_id: str,
        content: str,
        started_at: datetime,
        platform: str = "other",
        project: str | None = None,
        title: str | None = None,
        primary_user_text: str | None = None,
        topics: Iterable[str] = (),
    ) -> bool:
        """Store a conversation and embed it when its text changed.

        Returns False when nothing changed. Embedding failures are recorded on
        the conversation and re-raised.
        """
        content_hash = ConversationRepository.hash_content(content, title)
        if await self.repo.exists_with_hash(conversation_id, content_hash):
            return False

        await self.repo.upsert(
            conversation_id=conversation_id,
            content=content,
            started_at=started_at,
            platform=platform,
            project=project,
            title=title,
            primary_user_text=primary_user_text,
            topics=topics,
        )

        try:
            embedding = await self.embedder.embed_one(embedding_text(title, content))
        except EmbeddingFailure as e:
            _logger.warning("Embedding failed for %s: %s", conversation_id, e)
            await self.repo.mark_embedding_failed(conversation_id, str(e))
            raise

        await self.repo.set_embedding(conversation_id, embedding)
        return True

    async def embed_pending(self, limit: int = BATCH_LIMIT) -> EmbeddingBatchSummary:
        """Embed conversations left pending or failed, one provider batch at a time.

        A failed batch marks each of its conversations failed and the run moves on.
        """
        pending = await self.repo.list_unembedded(limit)
        summary = EmbeddingBatchSummary()

        for i in range(0, len(pending), EMBEDDING_BATCH_SIZE):
            chunk = pending[i : i + EMBEDDING_BATCH_SIZE]
            try:
                vectors = await self.embedder.embed([embedding_text(title, content) for _, title, content in chunk])
            except EmbeddingFailure as e:
                _logger.warning("Embedding batch of %d conversations failed: %s", len(chunk), e)
                for conversation_id, _, _ in chunk:
                    await self.repo.mark_embedding_failed(conversation_id, str(e))
                summary.failed += len(chunk)
                continue

            for (conversation_id, _, _), vector in zip(chunk, vectors, strict=True):
                await self.repo.set_embedding(conversation_id, vector)
            summary.embedded += len(chunk)

        _logger.info("Embedding batch finished: embedded=%d failed=%d", summary.embedded, summary.failed)
        return summary

    async def search(
        self,
        query: str,
        filters: SearchFilters | None = None,
        limit: int = 10,
    ) -> FusionResponse:
        return await self.engine.fuse(query, filters, limit)
