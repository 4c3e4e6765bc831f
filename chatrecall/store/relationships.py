import json
from datetime import UTC, datetime

import aiosqlite

from chatrecall.relationships.models import RelatedConversation, RelationshipEdge, RelationshipStats
from chatrecall.utils import to_iso

# Atomic per-key upsert; an older detection never overwrites a newer one
_SQL_UPSERT = """
    INSERT INTO conversation_relationships (
        source_conversation_id, related_conversation_id, similarity_score,
        relationship_type, metadata, detected_at, created_at
    )
    VALUES (?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT (source_conversation_id, related_conversation_id) DO UPDATE SET
        similarity_score = excluded.similarity_score,
        relationship_type = excluded.relationship_type,
        metadata = excluded.metadata,
        detected_at = excluded.detected_at
    WHERE excluded.detected_at >= conversation_relationships.detected_at
"""

_SQL_GET = """
    SELECT * FROM conversation_relationships
    WHERE source_conversation_id = ? AND related_conversation_id = ?
"""

_SQL_LIST_FOR_SOURCE = """
    SELECT * FROM conversation_relationships
    WHERE source_conversation_id = ?
    ORDER BY similarity_score DESC, related_conversation_id
"""

_SQL_RELATED = """
    SELECT cr.related_conversation_id, cr.relationship_type, cr.similarity_score,
           c.project, c.started_at
    FROM conversation_relationships cr
    JOIN conversations c ON c.conversation_id = cr.related_conversation_id
    WHERE cr.source_conversation_id = ?
    AND cr.similarity_score >= ?
    ORDER BY cr.similarity_score DESC
"""

_SQL_COUNT = "SELECT COUNT(*) FROM conversation_relationships"
_SQL_COUNT_FOR_SOURCE = "SELECT COUNT(*) FROM conversation_relationships WHERE source_conversation_id = ?"

_SQL_STATS = """
    SELECT relationship_type, COUNT(*) AS total, AVG(similarity_score) AS avg_score
    FROM conversation_relationships
    GROUP BY relationship_type
"""


def _row_to_edge(row: aiosqlite.Row) -> RelationshipEdge:
    return RelationshipEdge(
        source_id=row["source_conversation_id"],
        target_id=row["related_conversation_id"],
        similarity_score=row["similarity_score"],
        relationship_type=row["relationship_type"],
        detected_at=row["detected_at"],
        metadata=row["metadata"],
    )


class RelationshipRepository:
    def __init__(self, conn: aiosqlite.Connection):
        self.conn = conn

    async def upsert(self, edge: RelationshipEdge) -> None:
        await self.conn.execute(
            _SQL_UPSERT,
            (
                edge.source_id,
                edge.target_id,
                edge.similarity_score,
                edge.relationship_type.value,
                json.dumps(edge.metadata),
                to_iso(edge.detected_at),
                to_iso(datetime.now(UTC)),
            ),
        )
        await self.conn.commit()

    async def get(self, source_id: str, target_id: str) -> RelationshipEdge | None:
        rows = await self.conn.execute_fetchall(_SQL_GET, (source_id, target_id))
        return _row_to_edge(rows[0]) if rows else None

    async def list_for_source(self, source_id: str) -> list[RelationshipEdge]:
        rows = await self.conn.execute_fetchall(_SQL_LIST_FOR_SOURCE, (source_id,))
        return [_row_to_edge(r) for r in rows]

    async def related(self, conversation_id: str, min_similarity: float) -> list[RelatedConversation]:
        rows = await self.conn.execute_fetchall(_SQL_RELATED, (conversation_id, min_similarity))
        return [
            RelatedConversation(
                id=r["related_conversation_id"],
                relationship_type=r["relationship_type"],
                similarity_score=r["similarity_score"],
                project=r["project"],
                started_at=r["started_at"],
            )
            for r in rows
        ]

    async def count(self) -> int:
        rows = await self.conn.execute_fetchall(_SQL_COUNT)
        return rows[0][0]

    async def count_for_source(self, source_id: str) -> int:
        rows = await self.conn.execute_fetchall(_SQL_COUNT_FOR_SOURCE, (source_id,))
        return rows[0][0]

    async def stats(self) -> RelationshipStats:
        rows = await self.conn.execute_fetchall(_SQL_STATS)
        by_type: dict[str, int] = {}
        total = 0
        score_sum = 0.0
        for row in rows:
            by_type[row["relationship_type"]] = row["total"]
            total += row["total"]
            score_sum += row["avg_score"] * row["total"]
        return RelationshipStats(
            total_relationships=total,
            by_type=by_type,
            avg_similarity=score_sum / total if total else 0.0,
        )
