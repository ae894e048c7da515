import json
import math
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiosqlite

from .schemas import KnowledgeChunk


VECTOR_WEIGHT = 0.7
KEYWORD_WEIGHT = 0.3
MIN_SIMILARITY = 0.3

_TERM_RE = re.compile(r"\w+")


def utc_now() -> str:
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat() + "Z"


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if not norm_a or not norm_b:
        return 0.0
    return dot / (norm_a * norm_b)


def keyword_score(query_text: str, text: str) -> float:
    terms = {t for t in _TERM_RE.findall(query_text.lower()) if len(t) > 1}
    if not terms:
        return 0.0
    words = set(_TERM_RE.findall(text.lower()))
    return len(terms & words) / len(terms)


def _message_row(row: aiosqlite.Row) -> dict:
    return {
        "id": row["id"],
        "conversation_id": row["conversation_id"],
        "role": row["role"],
        "content": row["content"],
        "confidence": row["confidence"],
        "sources": json.loads(row["sources_json"] or "[]"),
        "tool_calls": json.loads(row["tool_calls_json"] or "[]"),
        "tokens_input": row["tokens_input"],
        "tokens_output": row["tokens_output"],
        "created_at": row["created_at"],
    }


class Database:
    """Conversation history plus the tenant-partitioned knowledge chunks."""

    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS conversations(
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT,
                    user_id TEXT,
                    title TEXT,
                    summary TEXT,
                    summary_updated_at TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_conversations_owner ON conversations(tenant_id, user_id, updated_at);
                CREATE TABLE IF NOT EXISTS messages(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id TEXT,
                    role TEXT,
                    content TEXT,
                    confidence TEXT,
                    sources_json TEXT,
                    tool_calls_json TEXT,
                    tokens_input INTEGER DEFAULT 0,
                    tokens_output INTEGER DEFAULT 0,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, id);
                CREATE TABLE IF NOT EXISTS knowledge_chunks(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id TEXT,
                    source_url TEXT,
                    source_title TEXT,
                    chunk_index INTEGER,
                    text TEXT,
                    embedding_json TEXT,
                    metadata_json TEXT,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_chunks_tenant ON knowledge_chunks(tenant_id, source_url);
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    # Conversations

    async def create_conversation(
        self,
        tenant_id: str,
        user_id: str,
        title: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> dict:
        convo_id = conversation_id or uuid.uuid4().hex
        created_at = utc_now()
        await self.execute(
            "INSERT INTO conversations(id, tenant_id, user_id, title, summary, created_at, updated_at) "
            "VALUES (?,?,?,?,NULL,?,?)",
            (convo_id, tenant_id, user_id, title or "New chat", created_at, created_at),
        )
        return {
            "id": convo_id,
            "tenant_id": tenant_id,
            "user_id": user_id,
            "title": title or "New chat",
            "created_at": created_at,
            "updated_at": created_at,
        }

    async def get_conversation(
        self,
        conversation_id: str,
        tenant_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT id, tenant_id, user_id, title, summary, created_at, updated_at FROM conversations WHERE id=?",
            (conversation_id,),
        )
        if not row:
            return None
        if tenant_id is not None and row["tenant_id"] != tenant_id:
            return None
        if user_id is not None and row["user_id"] != user_id:
            return None
        return {
            "id": row["id"],
            "tenant_id": row["tenant_id"],
            "user_id": row["user_id"],
            "title": row["title"],
            "has_summary": bool(row["summary"]),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    async def list_conversations(self, tenant_id: str, user_id: str, limit: int = 50) -> List[dict]:
        rows = await self.fetchall(
            "SELECT id, title, created_at, updated_at, "
            "(SELECT COUNT(*) FROM messages WHERE conversation_id=conversations.id) AS message_count, "
            "(SELECT content FROM messages WHERE conversation_id=conversations.id ORDER BY id DESC LIMIT 1) AS latest_message "
            "FROM conversations WHERE tenant_id=? AND user_id=? ORDER BY updated_at DESC, created_at DESC LIMIT ?",
            (tenant_id, user_id, limit),
        )
        return [
            {
                "id": r["id"],
                "title": r["title"],
                "created_at": r["created_at"],
                "updated_at": r["updated_at"],
                "message_count": r["message_count"],
                "latest_message": r["latest_message"],
            }
            for r in rows
        ]

    async def update_conversation_title(self, conversation_id: str, title: str) -> None:
        await self.execute(
            "UPDATE conversations SET title=?, updated_at=? WHERE id=?",
            (title, utc_now(), conversation_id),
        )

    async def touch_conversation(self, conversation_id: str, updated_at: Optional[str] = None) -> str:
        stamp = updated_at or utc_now()
        await self.execute("UPDATE conversations SET updated_at=? WHERE id=?", (stamp, conversation_id))
        return stamp

    async def delete_conversation(self, conversation_id: str) -> None:
        await self.execute("DELETE FROM messages WHERE conversation_id=?", (conversation_id,))
        await self.execute("DELETE FROM conversations WHERE id=?", (conversation_id,))

    async def get_summary(self, conversation_id: str) -> Optional[str]:
        row = await self.fetchone("SELECT summary FROM conversations WHERE id=?", (conversation_id,))
        if not row:
            return None
        return row["summary"] or None

    async def update_summary(self, conversation_id: str, summary: str) -> None:
        await self.execute(
            "UPDATE conversations SET summary=?, summary_updated_at=? WHERE id=?",
            (summary, utc_now(), conversation_id),
        )

    # Messages

    async def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        *,
        confidence: Optional[str] = None,
        sources: Optional[List[dict]] = None,
        tool_calls: Optional[List[dict]] = None,
        tokens_input: int = 0,
        tokens_output: int = 0,
    ) -> dict:
        created_at = utc_now()
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "INSERT INTO messages(conversation_id, role, content, confidence, sources_json, tool_calls_json, "
                "tokens_input, tokens_output, created_at) VALUES (?,?,?,?,?,?,?,?,?)",
                (
                    conversation_id,
                    role,
                    content,
                    confidence,
                    json.dumps(sources or []),
                    json.dumps(tool_calls or []),
                    tokens_input,
                    tokens_output,
                    created_at,
                ),
            )
            await db.commit()
            message_id = cursor.lastrowid
        await self.touch_conversation(conversation_id, updated_at=created_at)
        return {"id": message_id, "created_at": created_at}

    async def list_messages(self, conversation_id: str, limit: int = 200) -> List[dict]:
        """Most recent ``limit`` messages, oldest first."""
        rows = await self.fetchall(
            "SELECT * FROM (SELECT id, conversation_id, role, content, confidence, sources_json, tool_calls_json, "
            "tokens_input, tokens_output, created_at FROM messages WHERE conversation_id=? ORDER BY id DESC LIMIT ?) "
            "ORDER BY id ASC",
            (conversation_id, limit),
        )
        return [_message_row(r) for r in rows]

    async def count_messages(self, conversation_id: str) -> int:
        row = await self.fetchone("SELECT COUNT(*) AS cnt FROM messages WHERE conversation_id=?", (conversation_id,))
        return int(row["cnt"]) if row else 0

    # Knowledge

    async def upsert_knowledge_chunks(
        self,
        tenant_id: str,
        source_url: str,
        source_title: str,
        chunks: List[str],
        embeddings: List[List[float]],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Replace every stored chunk of ``source_url`` for the tenant."""
        if len(chunks) != len(embeddings):
            raise ValueError("chunks and embeddings must have the same length")
        created_at = utc_now()
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "DELETE FROM knowledge_chunks WHERE tenant_id=? AND source_url=?",
                (tenant_id, source_url),
            )
            await db.executemany(
                "INSERT INTO knowledge_chunks(tenant_id, source_url, source_title, chunk_index, text, embedding_json, "
                "metadata_json, created_at) VALUES (?,?,?,?,?,?,?,?)",
                [
                    (
                        tenant_id,
                        source_url,
                        source_title,
                        index,
                        text,
                        json.dumps(vector),
                        json.dumps(metadata or {}),
                        created_at,
                    )
                    for index, (text, vector) in enumerate(zip(chunks, embeddings))
                ],
            )
            await db.commit()
        return len(chunks)

    async def hybrid_search(
        self,
        tenant_id: str,
        embedding: List[float],
        query_text: str,
        limit: int,
    ) -> List[KnowledgeChunk]:
        """Score = 0.7 * cosine + 0.3 * keyword overlap; pure vector search when ``query_text`` is blank."""
        rows = await self.fetchall(
            "SELECT source_url, source_title, chunk_index, text, embedding_json, metadata_json "
            "FROM knowledge_chunks WHERE tenant_id=?",
            (tenant_id,),
        )
        use_keywords = bool(query_text and query_text.strip())
        scored: List[KnowledgeChunk] = []
        for row in rows:
            vector_score = cosine_similarity(embedding, json.loads(row["embedding_json"] or "[]"))
            if vector_score < MIN_SIMILARITY:
                continue
            score = vector_score
            if use_keywords:
                score = VECTOR_WEIGHT * vector_score + KEYWORD_WEIGHT * keyword_score(query_text, row["text"])
            metadata = json.loads(row["metadata_json"] or "{}")
            metadata["chunk_index"] = row["chunk_index"]
            scored.append(
                KnowledgeChunk(
                    tenant_id=tenant_id,
                    source_url=row["source_url"],
                    source_title=row["source_title"] or "",
                    text=row["text"],
                    similarity=score,
                    metadata=metadata,
                )
            )
        scored.sort(key=lambda c: c.similarity, reverse=True)
        return scored[:limit]
