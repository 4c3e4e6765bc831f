import asyncio
from collections.abc import Callable
from datetime import UTC, datetime

from chatrecall.constants import BATCH_CONCURRENCY, BATCH_LIMIT, RELATIONSHIP_MAX_NEIGHBORS, RELATIONSHIP_MIN_SIMILARITY
from chatrecall.errors import ConversationNotFound, EmbeddingNotFound
from chatrecall.logging import get_logger
from chatrecall.relationships.base import GraphStore
from chatrecall.relationships.classifier import builds_on_base, classify
from chatrecall.relationships.models import BatchSummary, ConversationSummary, RelationshipEdge, RelationshipType
from chatrecall.search.fusion import dedupe_hits

_logger = get_logger(__name__)

CancelCheck = Callable[[], bool]
ProgressCallback = Callable[[int, int], None]


def make_edge(
    source: ConversationSummary,
    target: ConversationSummary,
    similarity_score: float,
    detected_at: datetime,
) -> RelationshipEdge:
    relationship_type = classify(source, target, similarity_score)
    metadata = {}
    if relationship_type == RelationshipType.BUILDS_ON:
        base = builds_on_base(source, target)
        if base is not None:
            metadata["base_conversation_id"] = base
    return RelationshipEdge(
        source_id=source.id,
        target_id=target.id,
        similarity_score=similarity_score,
        relationship_type=relationship_type,
        detected_at=detected_at,
        metadata=metadata,
    )


class GraphBuilder:
    def __init__(
        self,
        store: GraphStore,
        min_similarity: float = RELATIONSHIP_MIN_SIMILARITY,
        max_neighbors: int = RELATIONSHIP_MAX_NEIGHBORS,
        concurrency: int = BATCH_CONCURRENCY,
    ):
        self.store = store
        self.min_similarity = min_similarity
        self.max_neighbors = max_neighbors
        self.concurrency = concurrency

    async def build_relationships(
        self,
        conversation_id: str,
        min_similarity: float | None = None,
        max_neighbors: int | None = None,
    ) -> list[RelationshipEdge]:
        """Classify and upsert edges from one conversation to its nearest neighbours.

        Raises EmbeddingNotFound when the conversation has not been embedded yet.
        Returns every edge written.
        """
        min_similarity = self.min_similarity if min_similarity is None else min_similarity
        max_neighbors = self.max_neighbors if max_neighbors is None else max_neighbors

        vector = await self.store.get_embedding(conversation_id)
        if vector is None:
            raise EmbeddingNotFound(conversation_id)

        source = await self.store.get_summary(conversation_id)
        if source is None:
            raise ConversationNotFound(conversation_id)

        hits = await self.store.neighbors(vector, max_neighbors, conversation_id)
        candidates = [
            h for h in dedupe_hits(hits)
            if h.record_id != conversation_id and h.raw_score >= min_similarity
        ][:max_neighbors]
        if not candidates:
            return []

        targets = await self.store.get_summaries([h.record_id for h in candidates])
        detected_at = datetime.now(UTC)

        edges: list[RelationshipEdge] = []
        for hit in candidates:
            target = targets.get(hit.record_id)
            if target is None:
                _logger.warning("Neighbor %s of %s has no summary, skipping", hit.record_id, conversation_id)
                continue
            edge = make_edge(source, target, hit.raw_score, detected_at)
            await self.store.upsert_edge(edge)
            edges.append(edge)

        return edges

    async def batch_build(
        self,
        limit: int = BATCH_LIMIT,
        min_similarity: float | None = None,
        cancel_check: CancelCheck | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> BatchSummary:
        """Build edges for embedded conversations that have none yet.

        A failing conversation is counted and logged, never aborts its siblings.
        cancel_check is polled between conversations.
        """
        conversation_ids = await self.store.list_unlinked(limit)
        total = len(conversation_ids)
        summary = BatchSummary()
        semaphore = asyncio.Semaphore(self.concurrency)

        _logger.info("Processing relationships for %d conversations", total)

        async def process(conversation_id: str) -> None:
            async with semaphore:
                if summary.cancelled or (cancel_check is not None and cancel_check()):
                    summary.cancelled = True
                    summary.remaining += 1
                    return

                try:
                    edges = await self.build_relationships(conversation_id, min_similarity)
                except EmbeddingNotFound:
                    summary.skipped += 1
                    _logger.warning("No embedding for %s yet, deferred", conversation_id)
                except Exception:
                    summary.failed += 1
                    _logger.exception("Failed to build relationships for %s", conversation_id)
                else:
                    summary.success += 1
                    summary.edges_created += len(edges)
                    _logger.debug("Found %d related conversations for %s", len(edges), conversation_id)

                if progress_callback:
                    progress_callback(summary.processed, total)

        await asyncio.gather(*(process(cid) for cid in conversation_ids))

        if summary.cancelled:
            _logger.warning("Relationship batch cancelled, %d conversations left unprocessed", summary.remaining)
        _logger.info(
            "Relationship batch finished: success=%d failed=%d skipped=%d edges=%d",
            summary.success,
            summary.failed,
            summary.skipped,
            summary.edges_created,
        )
        return summary
