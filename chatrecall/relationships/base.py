from typing import Protocol

import numpy as np

from chatrecall.relationships.models import ConversationSummary, RelationshipEdge
from chatrecall.search.types import SearchHit


class GraphStore(Protocol):
    """Collaborators the graph builder needs: vectors, summaries and edge persistence."""

    async def get_embedding(self, conversation_id: str) -> np.ndarray | None: ...

    async def neighbors(self, vector: np.ndarray, limit: int, exclude_id: str) -> list[SearchHit]: ...

    async def get_summary(self, conversation_id: str) -> ConversationSummary | None: ...

    async def get_summaries(self, conversation_ids: list[str]) -> dict[str, ConversationSummary]: ...

    async def upsert_edge(self, edge: RelationshipEdge) -> None: ...

    async def list_unlinked(self, limit: int) -> list[str]: ...
