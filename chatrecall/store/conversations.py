import hashlib
import json
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

import aiosqlite
import numpy as np

from chatrecall.database import deserialize_embedding, serialize_embedding
from chatrecall.relationships.models import ConversationSummary
from chatrecall.search.types import HitSource, SearchFilters, SearchHit
from chatrecall.utils import parse_datetime, to_iso

_SQL_GET = "SELECT * FROM conversations WHERE conversation_id = ?"
_SQL_GET_ROWID = "SELECT id, content_hash, embedding_status FROM conversations WHERE conversation_id = ?"
_SQL_GET_MANY = "SELECT * FROM conversations WHERE conversation_id IN ({placeholders})"
_SQL_GET_EMBEDDING = "SELECT embedding FROM conversations WHERE conversation_id = ? AND embedding_status = 'completed'"
_SQL_COUNT = "SELECT COUNT(*) FROM conversations"
_SQL_COUNT_BY_STATUS = "SELECT embedding_status, COUNT(*) AS cnt FROM conversations GROUP BY embedding_status"
_SQL_DELETE = "DELETE FROM conversations WHERE id = ?"

_SQL_INSERT = """
    INSERT INTO conversations (
        conversation_id, platform, project, title, content, primary_user_text,
        topics, content_hash, started_at, embedding_status, indexed_at
    )
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?)
"""

_SQL_UPDATE = """
    UPDATE conversations
    SET platform = ?, project = ?, title = ?, content = ?, primary_user_text = ?,
        topics = ?, content_hash = ?, started_at = ?, indexed_at = ?
    WHERE id = ?
"""

# Changed content invalidates the stored vector
_SQL_RESET_EMBEDDING = """
    UPDATE conversations
    SET embedding = NULL, embedding_status = 'pending', embedding_error = NULL
    WHERE id = ?
"""

_SQL_SET_EMBEDDING = """
    UPDATE conversations
    SET embedding = ?, embedding_status = 'completed', embedding_error = NULL
    WHERE id = ?
"""

_SQL_MARK_FAILED = """
    UPDATE conversations
    SET embedding_status = 'failed', embedding_error = ?
    WHERE conversation_id = ?
"""

_SQL_INSERT_VEC = "INSERT INTO conversations_vec (conversation_rowid, embedding) VALUES (?, ?)"
_SQL_DELETE_VEC = "DELETE FROM conversations_vec WHERE conversation_rowid = ?"

_SQL_FTS_SEARCH = """
    SELECT c.conversation_id, c.started_at, bm25(conversations_fts) AS score
    FROM conversations_fts
    JOIN conversations c ON conversations_fts.rowid = c.id
    WHERE conversations_fts MATCH ?{filters}
    ORDER BY score
    LIMIT ?
"""

_SQL_VECTOR_SEARCH = """
    SELECT c.conversation_id, c.started_at, knn.distance
    FROM (
        SELECT conversation_rowid, distance
        FROM conversations_vec
        WHERE embedding MATCH ? AND k = ?
    ) knn
    JOIN conversations c ON c.id = knn.conversation_rowid
    WHERE 1 = 1{filters}
    ORDER BY knn.distance
    LIMIT ?
"""

_SQL_LIST_UNEMBEDDED = """
    SELECT conversation_id, title, content
    FROM conversations
    WHERE embedding_status IN ('pending', 'failed')
    ORDER BY started_at DESC
    LIMIT ?
"""

_SQL_LIST_UNLINKED = """
    SELECT c.conversation_id
    FROM conversations c
    WHERE c.embedding_status = 'completed'
    AND NOT EXISTS (
        SELECT 1 FROM conversation_relationships cr
        WHERE cr.source_conversation_id = c.conversation_id
    )
    ORDER BY c.started_at DESC
    LIMIT ?
"""


@dataclass
class Conversation:
    id: str
    platform: str
    project: str | None
    title: str | None
    content: str
    primary_user_text: str | None
    topics: list[str]
    started_at: datetime
    embedding_status: str
    embedding_error: str | None


def _row_to_conversation(row: aiosqlite.Row) -> Conversation:
    return Conversation(
        id=row["conversation_id"],
        platform=row["platform"],
        project=row["project"],
        title=row["title"],
        content=row["content"],
        primary_user_text=row["primary_user_text"],
        topics=json.loads(row["topics"]) if row["topics"] else [],
        started_at=parse_datetime(row["started_at"]),
        embedding_status=row["embedding_status"],
        embedding_error=row["embedding_error"],
    )


def _row_to_summary(row: aiosqlite.Row) -> ConversationSummary:
    return ConversationSummary(
        id=row["conversation_id"],
        project=row["project"],
        platform=row["platform"],
        started_at=row["started_at"],
        topics=row["topics"],
        primary_user_text=row["primary_user_text"],
    )


def _filter_clause(filters: SearchFilters | None, alias: str = "c") -> tuple[str, list]:
    if filters is None:
        return "", []
    clauses: list[str] = []
    params: list = []
    if filters.project:
        clauses.append(f"{alias}.project = ?")
        params.append(filters.project)
    if filters.platform:
        clauses.append(f"{alias}.platform = ?")
        params.append(filters.platform)
    if filters.date_from:
        clauses.append(f"{alias}.started_at >= ?")
        params.append(to_iso(filters.date_from))
    if filters.date_to:
        clauses.append(f"{alias}.started_at <= ?")
        params.append(to_iso(filters.date_to))
    sql = "".join(f" AND {c}" for c in clauses)
    return sql, params


def fts_query(query: str) -> str:
    """Quote every term so user input never reaches FTS5 query syntax."""
    terms = query.split()
    return " ".join(f'"{t.replace(chr(34), chr(34) + chr(34))}"' for t in terms)


class ConversationRepository:
    def __init__(self, conn: aiosqlite.Connection):
        self.conn = conn

    @staticmethod
    def hash_content(content: str, title: str | None = None) -> str:
        return hashlib.md5(f"{title or ''}\n{content}".encode()).hexdigest()

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
        """Insert or refresh a conversation. Returns True when its content changed."""
        content_hash = self.hash_content(content, title)
        now = to_iso(datetime.now(UTC))
        topics_json = json.dumps(sorted(set(topics)))

        existing = await self.conn.execute_fetchall(_SQL_GET_ROWID, (conversation_id,))
        if existing:
            rowid = existing[0]["id"]
            changed = existing[0]["content_hash"] != content_hash
            await self.conn.execute(
                _SQL_UPDATE,
                (platform, project, title, content, primary_user_text,
                 topics_json, content_hash, to_iso(started_at), now, rowid),
            )
            if changed:
                await self.conn.execute(_SQL_DELETE_VEC, (rowid,))
                await self.conn.execute(_SQL_RESET_EMBEDDING, (rowid,))
        else:
            changed = True
            await self.conn.execute(
                _SQL_INSERT,
                (conversation_id, platform, project, title, content, primary_user_text,
                 topics_json, content_hash, to_iso(started_at), now),
            )

        await self.conn.commit()
        return changed

    async def exists_with_hash(self, conversation_id: str, content_hash: str) -> bool:
        """True only when this exact content is stored and embedded; pending or failed rows need another pass."""
        rows = await self.conn.execute_fetchall(_SQL_GET_ROWID, (conversation_id,))
        return bool(rows) and rows[0]["content_hash"] == content_hash and rows[0]["embedding_status"] == "completed"

    async def set_embedding(self, conversation_id: str, embedding: np.ndarray) -> None:
        rows = await self.conn.execute_fetchall(_SQL_GET_ROWID, (conversation_id,))
        if not rows:
            raise KeyError(conversation_id)
        rowid = rows[0]["id"]
        embedding_bytes = serialize_embedding(embedding)
        await self.conn.execute(_SQL_SET_EMBEDDING, (embedding_bytes, rowid))
        await self.conn.execute(_SQL_DELETE_VEC, (rowid,))
        await self.conn.execute(_SQL_INSERT_VEC, (rowid, embedding_bytes))
        await self.conn.commit()

    async def mark_embedding_failed(self, conversation_id: str, error: str) -> None:
        await self.conn.execute(_SQL_MARK_FAILED, (error, conversation_id))
        await self.conn.commit()

    async def get(self, conversation_id: str) -> Conversation | None:
        rows = await self.conn.execute_fetchall(_SQL_GET, (conversation_id,))
        return _row_to_conversation(rows[0]) if rows else None

    async def get_summary(self, conversation_id: str) -> ConversationSummary | None:
        rows = await self.conn.execute_fetchall(_SQL_GET, (conversation_id,))
        return _row_to_summary(rows[0]) if rows else None

    async def get_summaries(self, conversation_ids: list[str]) -> dict[str, ConversationSummary]:
        if not conversation_ids:
            return {}
        placeholders = ",".join("?" * len(conversation_ids))
        rows = await self.conn.execute_fetchall(
            _SQL_GET_MANY.format(placeholders=placeholders), conversation_ids,
        )
        return {r["conversation_id"]: _row_to_summary(r) for r in rows}

    async def get_embedding(self, conversation_id: str) -> np.ndarray | None:
        rows = await self.conn.execute_fetchall(_SQL_GET_EMBEDDING, (conversation_id,))
        if not rows:
            return None
        return deserialize_embedding(rows[0]["embedding"])

    async def fts_search(
        self,
        query: str,
        filters: SearchFilters | None = None,
        limit: int = 20,
    ) -> list[SearchHit]:
        match = fts_query(query)
        if not match:
            return []
        filter_sql, filter_params = _filter_clause(filters)
        rows = await self.conn.execute_fetchall(
            _SQL_FTS_SEARCH.format(filters=filter_sql),
            [match, *filter_params, limit],
        )
        # bm25() is lower-is-better and negative for matches
        return [
            SearchHit(
                record_id=row["conversation_id"],
                raw_score=-row["score"],
                source=HitSource.LEXICAL,
                started_at=row["started_at"],
            )
            for row in rows
        ]

    async def vector_search(
        self,
        query_embedding: np.ndarray,
        filters: SearchFilters | None = None,
        limit: int = 20,
        exclude_id: str | None = None,
    ) -> list[SearchHit]:
        filter_sql, filter_params = _filter_clause(filters)
        if exclude_id is not None:
            filter_sql += " AND c.conversation_id != ?"
            filter_params.append(exclude_id)

        # Over-fetch from the knn scan since filters are applied after it
        k = limit * 2 + (1 if exclude_id is not None else 0)
        rows = await self.conn.execute_fetchall(
            _SQL_VECTOR_SEARCH.format(filters=filter_sql),
            [serialize_embedding(query_embedding), k, *filter_params, limit],
        )
        return [
            SearchHit(
                record_id=row["conversation_id"],
                raw_score=1.0 - row["distance"],
                source=HitSource.VECTOR,
                started_at=row["started_at"],
            )
            for row in rows
        ]

    async def list_unembedded(self, limit: int = 100) -> list[tuple[str, str | None, str]]:
        """(conversation_id, title, content) for pending and failed rows, newest first."""
        rows = await self.conn.execute_fetchall(_SQL_LIST_UNEMBEDDED, (limit,))
        return [(row["conversation_id"], row["title"], row["content"]) for row in rows]

    async def list_unlinked(self, limit: int = 100) -> list[str]:
        rows = await self.conn.execute_fetchall(_SQL_LIST_UNLINKED, (limit,))
        return [row["conversation_id"] for row in rows]

    async def delete(self, conversation_id: str) -> bool:
        rows = await self.conn.execute_fetchall(_SQL_GET_ROWID, (conversation_id,))
        if not rows:
            return False
        rowid = rows[0]["id"]
        await self.conn.execute(_SQL_DELETE_VEC, (rowid,))
        await self.conn.execute(_SQL_DELETE, (rowid,))
        await self.conn.commit()
        return True

    async def count(self) -> int:
        rows = await self.conn.execute_fetchall(_SQL_COUNT)
        return rows[0][0]

    async def count_by_status(self) -> dict[str, int]:
        rows = await self.conn.execute_fetchall(_SQL_COUNT_BY_STATUS)
        return {row["embedding_status"]: row["cnt"] for row in rows}
