"""E2E tests for the search and relationship API endpoints"""
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from chatrecall.server.app import app
from chatrecall.server.runtime import Runtime
from tests.conftest import days_ago


@pytest_asyncio.fixture
async def test_client(test_runtime: Runtime) -> AsyncGenerator[AsyncClient]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


class TestSearchEndpoint:
    @pytest.mark.asyncio
    async def test_search(self, test_client: AsyncClient):
        response = await test_client.post("/search", json={"query": "MCP server", "limit": 5})
        assert response.status_code == 200

        data = response.json()
        ids = [r["id"] for r in data["results"]]
        assert set(ids[:2]) == {"early", "late"}
        assert data["total"] == len(ids)
        assert data["partial"] is False
        assert data["results"][0]["project"] == "proj"

    @pytest.mark.asyncio
    async def test_search_with_filters(self, test_client: AsyncClient):
        response = await test_client.post(
            "/search",
            json={"query": "sourdough", "filters": {"project": "proj"}},
        )
        assert response.status_code == 200
        assert all(r["project"] == "proj" for r in response.json()["results"])

    @pytest.mark.asyncio
    async def test_blank_query_is_bad_request(self, test_client: AsyncClient):
        response = await test_client.post("/search", json={"query": "   "})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_invalid_limit(self, test_client: AsyncClient):
        response = await test_client.post("/search", json={"query": "mcp", "limit": 0})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_both_backends_down(self, test_runtime: Runtime, test_client: AsyncClient):
        async def broken(*args, **kwargs):
            raise RuntimeError("backend down")

        test_runtime.index.engine.lexical_search = broken
        test_runtime.index.engine.embed = broken

        response = await test_client.post("/search", json={"query": "mcp"})
        assert response.status_code == 503


class TestRelationshipEndpoints:
    @pytest.mark.asyncio
    async def test_build_then_related(self, test_client: AsyncClient):
        response = await test_client.post("/conversations/late/relationships", json={})
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["edges"][0]["target_id"] == "early"
        assert data["edges"][0]["relationship_type"] == "builds_on"
        assert data["edges"][0]["metadata"] == {"base_conversation_id": "early"}

        response = await test_client.get("/conversations/late/related")
        assert response.status_code == 200
        related = response.json()["related"]
        assert [r["id"] for r in related] == ["early"]

    @pytest.mark.asyncio
    async def test_build_is_idempotent(self, test_runtime: Runtime, test_client: AsyncClient):
        await test_client.post("/conversations/late/relationships")
        await test_client.post("/conversations/late/relationships")
        assert await test_runtime.relationships.count() == 1

    @pytest.mark.asyncio
    async def test_build_unknown_conversation(self, test_client: AsyncClient):
        response = await test_client.post("/conversations/nope/relationships")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_build_unembedded_conversation(self, test_runtime: Runtime, test_client: AsyncClient):
        await test_runtime.conversations.upsert(conversation_id="fresh", content="new", started_at=days_ago(0))
        response = await test_client.post("/conversations/fresh/relationships")
        assert response.status_code == 404
        assert "embedding" in response.json()["detail"].lower()

    @pytest.mark.asyncio
    async def test_related_unknown_conversation(self, test_client: AsyncClient):
        response = await test_client.get("/conversations/nope/related")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_batch_lifecycle(self, test_runtime: Runtime, test_client: AsyncClient):
        response = await test_client.post("/relationships/batch", json={"limit": 10})
        assert response.status_code == 200

        summary = await test_runtime.job.wait()
        assert summary.success == 3
        assert summary.failed == 0

        status = (await test_client.get("/relationships/batch")).json()
        assert status["status"] == "done"
        assert status["summary"]["edges_created"] == 2

        response = await test_client.delete("/relationships/batch")
        assert response.status_code == 409

        stats = (await test_client.get("/relationships/stats")).json()
        assert stats["total_relationships"] == 2
        assert stats["by_type"] == {"builds_on": 2}


class TestAuth:
    @pytest.mark.asyncio
    async def test_api_key_required_when_configured(self, test_runtime: Runtime, test_client: AsyncClient):
        test_runtime.config.api_key = "secret"

        assert (await test_client.post("/search", json={"query": "mcp"})).status_code == 401
        response = await test_client.post(
            "/search",
            json={"query": "mcp"},
            headers={"Authorization": "Bearer secret"},
        )
        assert response.status_code == 200
        assert (await test_client.get("/health")).status_code == 200


class TestEmbeddingEndpoints:
    @pytest.mark.asyncio
    async def test_status_counts(self, test_runtime: Runtime, test_client: AsyncClient):
        await test_runtime.conversations.upsert(conversation_id="fresh", content="new", started_at=days_ago(0))

        response = await test_client.get("/embeddings/status")
        assert response.status_code == 200
        assert response.json() == {
            "model": test_runtime.config.embedding_model,
            "total": 4,
            "completed": 3,
            "pending": 1,
            "failed": 0,
        }

    @pytest.mark.asyncio
    async def test_batch_embeds_pending_and_failed(self, test_runtime: Runtime, test_client: AsyncClient):
        await test_runtime.conversations.upsert(conversation_id="fresh", content="new", started_at=days_ago(0))
        await test_runtime.conversations.upsert(conversation_id="broken", content="old", started_at=days_ago(2))
        await test_runtime.conversations.mark_embedding_failed("broken", "rate limited")

        response = await test_client.post("/embeddings/batch", json={"limit": 10})
        assert response.status_code == 200
        assert response.json() == {"embedded": 2, "failed": 0}

        status = (await test_client.get("/embeddings/status")).json()
        assert status["completed"] == 5
        assert status["pending"] == status["failed"] == 0

    @pytest.mark.asyncio
    async def test_batch_with_nothing_pending(self, test_client: AsyncClient):
        response = await test_client.post("/embeddings/batch")
        assert response.json() == {"embedded": 0, "failed": 0}


class TestBatchJobStatus:
    @pytest.mark.asyncio
    async def test_restart_reports_running_immediately(self, test_runtime: Runtime, test_client: AsyncClient):
        await test_client.post("/relationships/batch")
        await test_runtime.job.wait()
        assert (await test_client.get("/relationships/batch")).json()["status"] == "done"

        assert test_runtime.job.start(limit=10)
        status = test_runtime.job.get_status()
        assert status["status"] == "running"
        assert status["summary"] is None
        await test_runtime.job.wait()
