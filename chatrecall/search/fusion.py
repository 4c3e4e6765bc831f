import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Sequence
from datetime import datetime

from chatrecall.constants import (
    LEXICAL_TIMEOUT,
    LEXICAL_WEIGHT,
    RRF_K,
    RRF_OVERFETCH_FACTOR,
    VECTOR_TIMEOUT,
    VECTOR_WEIGHT,
)
from chatrecall.errors import EmbeddingFailure, InvalidQuery, SearchUnavailable, SubSearchTimeout
from chatrecall.logging import get_logger
from chatrecall.search.base import EmbedFn, LexicalSearch, VectorSearch
from chatrecall.search.types import FusedResult, FusionResponse, HitSource, SearchFilters, SearchHit

_logger = get_logger(__name__)


def rrf_merge(
    rankings: Sequence[Sequence[str]],
    k: int = RRF_K,
    weights: Sequence[float] | None = None,
) -> dict[str, float]:
    """Weighted Reciprocal Rank Fusion over ranked lists of record ids.

    A record at 1-indexed rank r in list i contributes weights[i] / (k + r).
    Returns a dict of record_id -> fused score.
    """
    if weights is None:
        weights = [1.0] * len(rankings)
    scores: dict[str, float] = defaultdict(float)
    for ranking, weight in zip(rankings, weights, strict=True):
        for rank, record_id in enumerate(ranking, start=1):
            scores[record_id] += weight / (k + rank)
    return dict(scores)


def normalize_scores(hits: Sequence[SearchHit]) -> dict[str, float]:
    """Min-max scale raw scores to [0, 1] within one result set.

    A single hit or a set with zero variance scales to 1.0 throughout.
    """
    if not hits:
        return {}
    lo = min(h.raw_score for h in hits)
    hi = max(h.raw_score for h in hits)
    if hi == lo:
        return {h.record_id: 1.0 for h in hits}
    return {h.record_id: (h.raw_score - lo) / (hi - lo) for h in hits}


def dedupe_hits(hits: Sequence[SearchHit]) -> list[SearchHit]:
    """Keep the best-ranked hit per record; backends may return several hits per conversation."""
    seen: set[str] = set()
    unique: list[SearchHit] = []
    for hit in hits:
        if hit.record_id in seen:
            continue
        seen.add(hit.record_id)
        unique.append(hit)
    return unique


def _sort_key(result: FusedResult) -> tuple:
    # Descending score, then most recent first (undated last), then id for a total order
    started = result.started_at
    return (
        -result.fused_score,
        started is None,
        -started.timestamp() if started else 0.0,
        result.record_id,
    )


class FusionEngine:
    def __init__(
        self,
        lexical_search: LexicalSearch,
        vector_search: VectorSearch,
        embed: EmbedFn,
        rrf_k: int = RRF_K,
        lexical_weight: float = LEXICAL_WEIGHT,
        vector_weight: float = VECTOR_WEIGHT,
        lexical_timeout: float = LEXICAL_TIMEOUT,
        vector_timeout: float = VECTOR_TIMEOUT,
    ):
        self.lexical_search = lexical_search
        self.vector_search = vector_search
        self.embed = embed
        self.rrf_k = rrf_k
        self.lexical_weight = lexical_weight
        self.vector_weight = vector_weight
        self.lexical_timeout = lexical_timeout
        self.vector_timeout = vector_timeout

    async def _vector_branch(self, query: str, filters: SearchFilters, limit: int) -> list[SearchHit]:
        try:
            query_vector = await self.embed(query)
        except EmbeddingFailure:
            raise
        except Exception as e:
            raise EmbeddingFailure(str(e)) from e
        return await self.vector_search(query_vector, filters, limit)

    async def _guarded(
        self,
        source: HitSource,
        search: Awaitable[list[SearchHit]],
        timeout: float,
    ) -> tuple[list[SearchHit], str | None]:
        try:
            async with asyncio.timeout(timeout):
                return await search, None
        except (TimeoutError, SubSearchTimeout):
            _logger.warning("%s search timed out after %.1fs, degrading", source, timeout)
            return [], "timeout"
        except EmbeddingFailure as e:
            _logger.warning("Query embedding failed, degrading to lexical only: %s", e)
            return [], "embedding_failed"
        except Exception as e:
            _logger.warning("%s search failed, degrading: %s", source, e)
            return [], "error"

    def merge(self, lexical_hits: Sequence[SearchHit], vector_hits: Sequence[SearchHit]) -> list[FusedResult]:
        lexical_hits = dedupe_hits(lexical_hits)
        vector_hits = dedupe_hits(vector_hits)

        fused = rrf_merge(
            [[h.record_id for h in lexical_hits], [h.record_id for h in vector_hits]],
            k=self.rrf_k,
            weights=[self.lexical_weight, self.vector_weight],
        )

        lexical_norm = normalize_scores(lexical_hits)
        vector_norm = normalize_scores(vector_hits)
        lexical_rank = {h.record_id: i for i, h in enumerate(lexical_hits, start=1)}
        vector_rank = {h.record_id: i for i, h in enumerate(vector_hits, start=1)}

        started: dict[str, datetime] = {}
        for hit in (*lexical_hits, *vector_hits):
            if hit.started_at is None:
                continue
            current = started.get(hit.record_id)
            if current is None or hit.started_at > current:
                started[hit.record_id] = hit.started_at

        results: list[FusedResult] = []
        for record_id, score in fused.items():
            sources = set()
            if record_id in lexical_rank:
                sources.add(HitSource.LEXICAL)
            if record_id in vector_rank:
                sources.add(HitSource.VECTOR)
            results.append(
                FusedResult(
                    record_id=record_id,
                    fused_score=score,
                    contributing_sources=frozenset(sources),
                    started_at=started.get(record_id),
                    lexical_rank=lexical_rank.get(record_id),
                    lexical_score=lexical_norm.get(record_id),
                    vector_rank=vector_rank.get(record_id),
                    vector_score=vector_norm.get(record_id),
                )
            )

        results.sort(key=_sort_key)
        return results

    async def fuse(
        self,
        query: str,
        filters: SearchFilters | None = None,
        limit: int = 10,
    ) -> FusionResponse:
        if not query or not query.strip():
            raise InvalidQuery("query must not be empty")
        if limit < 1:
            raise InvalidQuery(f"limit must be positive, got {limit}")

        filters = filters or SearchFilters()
        fetch_limit = limit * RRF_OVERFETCH_FACTOR

        (lexical_hits, lexical_reason), (vector_hits, vector_reason) = await asyncio.gather(
            self._guarded(
                HitSource.LEXICAL,
                self.lexical_search(query, filters, fetch_limit),
                self.lexical_timeout,
            ),
            self._guarded(
                HitSource.VECTOR,
                self._vector_branch(query, filters, fetch_limit),
                self.vector_timeout,
            ),
        )

        degraded: dict[HitSource, str] = {}
        if lexical_reason:
            degraded[HitSource.LEXICAL] = lexical_reason
        if vector_reason:
            degraded[HitSource.VECTOR] = vector_reason

        if len(degraded) == 2:
            raise SearchUnavailable({str(source): reason for source, reason in degraded.items()})

        if not lexical_hits and not vector_hits:
            return FusionResponse(results=[], degraded=degraded)

        merged = self.merge(lexical_hits, vector_hits)
        return FusionResponse(results=merged[:limit], degraded=degraded)
