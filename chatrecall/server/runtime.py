import asyncio

import chatrecall.database as database
from chatrecall.config import Config, get_config
from chatrecall.embedder import Embedder
from chatrecall.logging import get_logger
from chatrecall.relationships.graph import GraphBuilder
from chatrecall.search.index import ConversationIndex
from chatrecall.server.jobs import RelationshipJob
from chatrecall.store.base import ConversationDatabase
from chatrecall.store.conversations import ConversationRepository
from chatrecall.store.graph import SqliteGraphStore
from chatrecall.store.relationships import RelationshipRepository

_logger = get_logger(__name__)


class Runtime:
    def __init__(self, config: Config | None = None, embedder: Embedder | None = None):
        self.config = config or get_config()
        self.embedder = embedder or Embedder(self.config.embedding)

        self.db: ConversationDatabase | None = None
        self.conversations: ConversationRepository | None = None
        self.relationships: RelationshipRepository | None = None
        self.index: ConversationIndex | None = None
        self.graph: GraphBuilder | None = None
        self.job: RelationshipJob | None = None
        self._conn = None
        self._connected = False

    async def connect(self) -> None:
        if self._connected:
            return

        self.config.db_dir.mkdir(parents=True, exist_ok=True)
        self._conn = await database.connect(self.config.conversations_db_path, vec=True)
        self.db = ConversationDatabase(self._conn, self.embedder.config.dim)
        await self.db.init_schema()
        if self.db.dim_changed:
            _logger.warning("Embedding dimension changed, conversations need re-embedding")

        self.conversations = ConversationRepository(self._conn)
        self.relationships = RelationshipRepository(self._conn)

        self.index = ConversationIndex(
            repo=self.conversations,
            embedder=self.embedder,
            rrf_k=self.config.rrf_k,
            lexical_weight=self.config.lexical_weight,
            vector_weight=self.config.vector_weight,
            lexical_timeout=self.config.lexical_timeout,
            vector_timeout=self.config.vector_timeout,
        )
        self.graph = GraphBuilder(
            store=SqliteGraphStore(self.conversations, self.relationships),
            min_similarity=self.config.relationship_min_similarity,
            max_neighbors=self.config.relationship_max_neighbors,
            concurrency=self.config.batch_concurrency,
        )
        self.job = RelationshipJob(self.graph)
        self._connected = True

    async def get_status(self) -> dict:
        return {
            "conversations": await self.conversations.count(),
            "embedding_status": await self.conversations.count_by_status(),
            "relationships": await self.relationships.count(),
            "embedding_model": self.config.embedding_model,
        }

    async def close(self) -> None:
        if self.job:
            await self.job.stop()
        if self._conn:
            await self._conn.close()
            self._conn = None
        self._connected = False


_runtime: Runtime | None = None
_runtime_lock = asyncio.Lock()


async def get_runtime_async() -> Runtime:
    global _runtime
    async with _runtime_lock:
        if _runtime is None:
            _runtime = Runtime()
            await _runtime.connect()
    return _runtime


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is None:
        raise RuntimeError("Runtime not initialized. Call get_runtime_async() first.")
    if not _runtime._connected:
        raise RuntimeError("Runtime not connected. Call await runtime.connect() first.")
    return _runtime


async def reset_runtime() -> None:
    global _runtime
    if _runtime is not None:
        await _runtime.close()
        _runtime = None
