import numpy as np

from chatrecall.relationships.models import ConversationSummary, RelationshipEdge
from chatrecall.search.types import SearchHit
from chatrecall.store.conversations import ConversationRepository
from chatrecall.store.relationships import RelationshipRepository


class SqliteGraphStore:
    """GraphStore backed by the conversation and relationship repositories."""

    def __init__(self, conversations: ConversationRepository, relationships: RelationshipRepository):
        self.conversations = conversations
        self.relationships = relationships

    async def get_embedding(self, conversation_id: str) -> np.ndarray | None:
        return await self.conversations.get_embedding(conversation_id)

    async def neighbors(self, vector: np.ndarray, limit: int, exclude_id: str) -> list[SearchHit]:
        return await self.conversations.vector_search(vector, limit=limit, exclude_id=exclude_id)

    async def get_summary(self, conversation_id: str) -> ConversationSummary | None:
        return await self.conversations.get_summary(conversation_id)

    async def get_summaries(self, conversation_ids: list[str]) -> dict[str, ConversationSummary]:
        return await self.conversations.get_summaries(conversation_ids)

    async def upsert_edge(self, edge: RelationshipEdge) -> None:
        await self.relationships.upsert(edge)

    async def list_unlinked(self, limit: int) -> list[str]:
        return await self.conversations.list_unlinked(limit)
