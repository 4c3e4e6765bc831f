import hashlib
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import aiosqlite
import numpy as np
import pytest_asyncio

import chatrecall.database as database
import chatrecall.server.runtime as runtime_module
from chatrecall.config import Config
from chatrecall.embedder import Embedder, EmbeddingConfig
from chatrecall.server.runtime import Runtime, reset_runtime
from chatrecall.store.base import ConversationDatabase

TEST_EMBEDDING_DIM = 768

BASE_TIME = datetime(2025, 1, 1, tzinfo=UTC)


@pytest_asyncio.fixture
async def conn(tmp_path: Path) -> AsyncGenerator[aiosqlite.Connection]:
    conn = await database.connect(tmp_path / "test_conversations.db", vec=True)
    await ConversationDatabase(conn, TEST_EMBEDDING_DIM).init_schema()
    yield conn
    await conn.close()


def mock_embedding(text: str) -> np.ndarray:
    h = hashlib.md5(text.encode()).hexdigest()
    # MD5 is 32 chars, repeat to get TEST_EMBEDDING_DIM
    arr = np.array([int(c, 16) / 15.0 for c in h] * (TEST_EMBEDDING_DIM // 32))
    norm = np.linalg.norm(arr)
    return arr / norm if norm > 0 else arr


def unit_vector(index: int, dim: int = TEST_EMBEDDING_DIM) -> np.ndarray:
    v = np.zeros(dim)
    v[index] = 1.0
    return v


def blend(a: np.ndarray, b: np.ndarray, similarity: float) -> np.ndarray:
    """Unit vector whose cosine similarity to orthogonal unit vector a is `similarity`."""
    v = similarity * a + np.sqrt(1 - similarity**2) * b
    return v / np.linalg.norm(v)


def days_ago(n: int) -> datetime:
    return BASE_TIME - timedelta(days=n)


async def _seed(runtime: Runtime) -> None:
    base = unit_vector(0)
    rows = [
        ("early", "proj", days_ago(10), "Setting up the MCP server for claude desktop", base),
        ("late", "proj", days_ago(1), "Extending the MCP server with a search tool", blend(base, unit_vector(1), 0.9)),
        ("other", None, days_ago(5), "Sourdough starter feeding schedule", unit_vector(2)),
    ]
    for cid, project, started_at, content, vector in rows:
        await runtime.conversations.upsert(
            conversation_id=cid,
            content=content,
            started_at=started_at,
            project=project,
            platform="claude",
            primary_user_text=content,
        )
        await runtime.conversations.set_embedding(cid, vector)


@pytest_asyncio.fixture
async def test_runtime(tmp_path: Path) -> AsyncGenerator[Runtime]:
    """Isolated runtime with a mock embedder and three seeded conversations"""
    await reset_runtime()

    config = Config(db_dir=tmp_path / "db", openai_api_key="test-key")
    embedder = Embedder(EmbeddingConfig(model="test-embedding", dim=TEST_EMBEDDING_DIM))

    async def mock_embed_one(text: str):
        return mock_embedding(text)

    async def mock_embed(texts: list[str]):
        return np.array([mock_embedding(t) for t in texts])

    embedder.embed_one = mock_embed_one
    embedder.embed = mock_embed

    runtime = Runtime(config=config, embedder=embedder)
    await runtime.connect()
    await _seed(runtime)

    # Set global runtime for API endpoints
    runtime_module._runtime = runtime

    yield runtime

    await runtime.close()
    await reset_runtime()
