import aiosqlite

from chatrecall.logging import get_logger

_logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS conversations (
    id INTEGER PRIMARY KEY,
    conversation_id TEXT NOT NULL UNIQUE,
    platform TEXT NOT NULL DEFAULT 'other',
    project TEXT,
    title TEXT,
    content TEXT NOT NULL DEFAULT '',
    primary_user_text TEXT,
    topics TEXT DEFAULT '[]',           -- JSON array of topic names
    content_hash TEXT,
    started_at TIMESTAMP NOT NULL,
    embedding BLOB,
    embedding_status TEXT NOT NULL DEFAULT 'pending'
        CHECK (embedding_status IN ('pending', 'completed', 'failed')),
    embedding_error TEXT,
    indexed_at TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_conversations_project ON conversations(project);
CREATE INDEX IF NOT EXISTS idx_conversations_platform ON conversations(platform);
CREATE INDEX IF NOT EXISTS idx_conversations_started ON conversations(started_at DESC);
CREATE INDEX IF NOT EXISTS idx_conversations_embedding_status ON conversations(embedding_status);

CREATE VIRTUAL TABLE IF NOT EXISTS conversations_fts USING fts5(
    title, content,
    content='conversations',
    content_rowid='id'
);

CREATE TRIGGER IF NOT EXISTS conversations_ai AFTER INSERT ON conversations BEGIN
    INSERT INTO conversations_fts(rowid, title, content) VALUES (new.id, new.title, new.content);
END;

CREATE TRIGGER IF NOT EXISTS conversations_ad AFTER DELETE ON conversations BEGIN
    INSERT INTO conversations_fts(conversations_fts, rowid, title, content)
    VALUES ('delete', old.id, old.title, old.content);
END;

CREATE TRIGGER IF NOT EXISTS conversations_au AFTER UPDATE OF title, content ON conversations BEGIN
    INSERT INTO conversations_fts(conversations_fts, rowid, title, content)
    VALUES ('delete', old.id, old.title, old.content);
    INSERT INTO conversations_fts(rowid, title, content) VALUES (new.id, new.title, new.content);
END;

-- Directed, typed edges; at most one per ordered pair
CREATE TABLE IF NOT EXISTS conversation_relationships (
    source_conversation_id TEXT NOT NULL
        REFERENCES conversations(conversation_id) ON DELETE CASCADE,
    related_conversation_id TEXT NOT NULL
        REFERENCES conversations(conversation_id) ON DELETE CASCADE,
    similarity_score REAL NOT NULL CHECK (similarity_score >= 0 AND similarity_score <= 1),
    relationship_type TEXT NOT NULL CHECK (relationship_type IN (
        'near_duplicate', 'builds_on', 'solves_same_problem', 'references', 'contradicts', 'related'
    )),
    metadata TEXT DEFAULT '{}',
    detected_at TIMESTAMP NOT NULL,
    created_at TIMESTAMP NOT NULL,
    PRIMARY KEY (source_conversation_id, related_conversation_id),
    CHECK (source_conversation_id != related_conversation_id)
);

CREATE INDEX IF NOT EXISTS idx_conv_rel_related ON conversation_relationships(related_conversation_id);
CREATE INDEX IF NOT EXISTS idx_conv_rel_score ON conversation_relationships(similarity_score DESC);
CREATE INDEX IF NOT EXISTS idx_conv_rel_type ON conversation_relationships(relationship_type);
"""


class ConversationDatabase:
    def __init__(self, conn: aiosqlite.Connection, embedding_dim: int):
        self.conn = conn
        self.embedding_dim = embedding_dim
        self.dim_changed = False

    async def init_schema(self) -> None:
        await self.conn.executescript(SCHEMA)
        await self.conn.execute(
            "CREATE TABLE IF NOT EXISTS meta (key TEXT PRIMARY KEY, value TEXT)"
        )

        stored_dim = await self._get_meta("embedding_dim")
        if stored_dim is None or int(stored_dim) != self.embedding_dim:
            _logger.info(
                "Rebuilding conversation vec table (stored=%s, current=%d)",
                stored_dim,
                self.embedding_dim,
            )
            await self.conn.execute("DROP TABLE IF EXISTS conversations_vec")
            # Stale vectors are unusable at a new dimension; everything must be re-embedded
            rows = await self.conn.execute_fetchall(
                "SELECT EXISTS(SELECT 1 FROM conversations WHERE embedding IS NOT NULL)"
            )
            if rows and rows[0][0]:
                self.dim_changed = True
                await self.conn.execute(
                    "UPDATE conversations SET embedding = NULL, embedding_status = 'pending'"
                )

        await self._init_vec_table()
        await self._set_meta("embedding_dim", str(self.embedding_dim))
        await self.conn.commit()

    async def _init_vec_table(self) -> None:
        await self.conn.execute(f"""
            CREATE VIRTUAL TABLE IF NOT EXISTS conversations_vec USING vec0(
                conversation_rowid INTEGER PRIMARY KEY,
                embedding float[{self.embedding_dim}] distance_metric=cosine
            );
        """)

    async def _get_meta(self, key: str) -> str | None:
        rows = await self.conn.execute_fetchall("SELECT value FROM meta WHERE key = ?", (key,))
        return rows[0][0] if rows else None

    async def _set_meta(self, key: str, value: str) -> None:
        await self.conn.execute("INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", (key, value))
