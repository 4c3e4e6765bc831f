import asyncio
from datetime import UTC, datetime

import numpy as np
import pytest

from chatrecall.errors import ConversationNotFound, EmbeddingNotFound
from chatrecall.relationships.graph import GraphBuilder
from chatrecall.relationships.models import ConversationSummary, RelationshipEdge, RelationshipType
from chatrecall.search.types import HitSource, SearchHit


class FakeGraphStore:
    """In-memory GraphStore; neighbors are brute-force cosine over stored vectors."""

    def __init__(self):
        self.summaries: dict[str, ConversationSummary] = {}
        self.embeddings: dict[str, np.ndarray] = {}
        self.edges: dict[tuple[str, str], RelationshipEdge] = {}
        self.fail_on: set[str] = set()

    def add(self, summary: ConversationSummary, vector: np.ndarray | None) -> None:
        self.summaries[summary.id] = summary
        if vector is not None:
            self.embeddings[summary.id] = vector / np.linalg.norm(vector)

    async def get_embedding(self, conversation_id: str) -> np.ndarray | None:
        if conversation_id in self.fail_on:
            raise RuntimeError(f"storage failure for {conversation_id}")
        return self.embeddings.get(conversation_id)

    async def neighbors(self, vector: np.ndarray, limit: int, exclude_id: str) -> list[SearchHit]:
        scored = [
            (float(np.dot(vector, v)), cid)
            for cid, v in self.embeddings.items()
            if cid != exclude_id
        ]
        scored.sort(key=lambda x: (-x[0], x[1]))
        return [
            SearchHit(record_id=cid, raw_score=score, source=HitSource.VECTOR)
            for score, cid in scored[:limit]
        ]

    async def get_summary(self, conversation_id: str) -> ConversationSummary | None:
        return self.summaries.get(conversation_id)

    async def get_summaries(self, conversation_ids: list[str]) -> dict[str, ConversationSummary]:
        return {cid: self.summaries[cid] for cid in conversation_ids if cid in self.summaries}

    async def upsert_edge(self, edge: RelationshipEdge) -> None:
        existing = self.edges.get((edge.source_id, edge.target_id))
        if existing is None or edge.detected_at >= existing.detected_at:
            self.edges[(edge.source_id, edge.target_id)] = edge

    async def list_unlinked(self, limit: int) -> list[str]:
        sources = {s for s, _ in self.edges}
        return [cid for cid in self.summaries if cid in self.embeddings and cid not in sources][:limit]


def axis(i: int, dim: int = 8) -> np.ndarray:
    v = np.zeros(dim)
    v[i] = 1.0
    return v


def near(base: np.ndarray, other: np.ndarray, similarity: float) -> np.ndarray:
    return similarity * base + np.sqrt(1 - similarity**2) * other


def summary(id: str, project: str | None = None, started_at: datetime | None = None) -> ConversationSummary:
    return ConversationSummary(id=id, project=project, started_at=started_at)


@pytest.fixture
def store() -> FakeGraphStore:
    store = FakeGraphStore()
    store.add(summary("a"), axis(0))
    store.add(summary("b"), near(axis(0), axis(1), 0.9))
    store.add(summary("c"), near(axis(0), axis(2), 0.6))
    return store


class TestBuildRelationships:
    @pytest.mark.asyncio
    async def test_edges_above_threshold_only(self, store: FakeGraphStore):
        builder = GraphBuilder(store, min_similarity=0.8)
        edges = await builder.build_relationships("a")

        assert [e.target_id for e in edges] == ["b"]
        assert edges[0].source_id == "a"
        assert edges[0].similarity_score == pytest.approx(0.9)
        assert edges[0].relationship_type == RelationshipType.REFERENCES
        assert set(store.edges) == {("a", "b")}

    @pytest.mark.asyncio
    async def test_override_min_similarity(self, store: FakeGraphStore):
        builder = GraphBuilder(store, min_similarity=0.8)
        edges = await builder.build_relationships("a", min_similarity=0.5)
        assert {e.target_id for e in edges} == {"b", "c"}

    @pytest.mark.asyncio
    async def test_max_neighbors_caps_edges(self, store: FakeGraphStore):
        builder = GraphBuilder(store, min_similarity=0.5)
        edges = await builder.build_relationships("a", max_neighbors=1)
        assert [e.target_id for e in edges] == ["b"]

    @pytest.mark.asyncio
    async def test_idempotent_refreshes_detected_at(self, store: FakeGraphStore):
        builder = GraphBuilder(store, min_similarity=0.8)
        first = await builder.build_relationships("a")
        await asyncio.sleep(0.001)
        second = await builder.build_relationships("a")

        assert len(store.edges) == 1
        stored = store.edges[("a", "b")]
        assert stored.relationship_type == first[0].relationship_type
        assert stored.similarity_score == first[0].similarity_score
        assert stored.detected_at == second[0].detected_at
        assert second[0].detected_at > first[0].detected_at

    @pytest.mark.asyncio
    async def test_missing_embedding_raises(self, store: FakeGraphStore):
        store.add(summary("fresh"), None)
        with pytest.raises(EmbeddingNotFound):
            await GraphBuilder(store).build_relationships("fresh")
        assert store.edges == {}

    @pytest.mark.asyncio
    async def test_missing_conversation_raises(self, store: FakeGraphStore):
        store.embeddings["ghost"] = axis(3)
        with pytest.raises(ConversationNotFound):
            await GraphBuilder(store).build_relationships("ghost")

    @pytest.mark.asyncio
    async def test_no_self_edges(self, store: FakeGraphStore):
        edges = await GraphBuilder(store, min_similarity=0.0).build_relationships("a")
        assert all(e.target_id != "a" for e in edges)

    @pytest.mark.asyncio
    async def test_builds_on_records_base_conversation(self):
        store = FakeGraphStore()
        store.add(summary("early", "proj", datetime(2025, 1, 1, tzinfo=UTC)), axis(0))
        store.add(summary("late", "proj", datetime(2025, 3, 1, tzinfo=UTC)), near(axis(0), axis(1), 0.88))

        edges = await GraphBuilder(store).build_relationships("late")

        assert edges[0].relationship_type == RelationshipType.BUILDS_ON
        assert edges[0].metadata == {"base_conversation_id": "early"}

    @pytest.mark.asyncio
    async def test_graph_may_be_asymmetric(self, store: FakeGraphStore):
        builder = GraphBuilder(store, min_similarity=0.5)
        await builder.build_relationships("a")
        assert ("b", "a") not in store.edges


class TestBatchBuild:
    @pytest.fixture
    def five(self) -> FakeGraphStore:
        store = FakeGraphStore()
        for i in range(4):
            store.add(summary(f"c{i}"), near(axis(0), axis(i + 1), 0.95))
        store.add(summary("pending"), None)
        return store

    @pytest.mark.asyncio
    async def test_counts_success_and_skips(self, five: FakeGraphStore):
        # list_unlinked only returns embedded conversations, force the pending one in too
        original = five.list_unlinked

        async def with_pending(limit: int) -> list[str]:
            return [*await original(limit), "pending"]

        five.list_unlinked = with_pending
        result = await GraphBuilder(five).batch_build(limit=10)

        assert result.success == 4
        assert result.skipped == 1
        assert result.failed == 0
        assert result.edges_created == 12
        assert result.cancelled is False

    @pytest.mark.asyncio
    async def test_failure_does_not_abort_siblings(self, five: FakeGraphStore):
        five.fail_on.add("c1")
        result = await GraphBuilder(five).batch_build(limit=10)

        assert result.failed == 1
        assert result.success == 3

    @pytest.mark.asyncio
    async def test_cancel_between_units(self, five: FakeGraphStore):
        calls = 0

        def cancel_check() -> bool:
            nonlocal calls
            calls += 1
            return calls > 2

        result = await GraphBuilder(five, concurrency=1).batch_build(limit=10, cancel_check=cancel_check)

        assert result.cancelled is True
        assert result.success == 2
        assert result.remaining == 2

    @pytest.mark.asyncio
    async def test_progress_reported(self, five: FakeGraphStore):
        seen: list[tuple[int, int]] = []
        await GraphBuilder(five).batch_build(limit=10, progress_callback=lambda d, t: seen.append((d, t)))
        assert seen[-1] == (4, 4)

    @pytest.mark.asyncio
    async def test_limit_respected(self, five: FakeGraphStore):
        result = await GraphBuilder(five).batch_build(limit=2)
        assert result.processed == 2

    @pytest.mark.asyncio
    async def test_concurrent_batch_matches_sequential(self, five: FakeGraphStore):
        result = await GraphBuilder(five, concurrency=4).batch_build(limit=10)
        assert result.success == 4
        assert len(five.edges) == 12
