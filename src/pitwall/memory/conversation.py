"""
Conversation memory: an append-only message log with per-query analytics.

Independent of checkpointing. Checkpoints capture workflow internals for
recovery; the conversation log records what the user asked and what they were
told, plus one analytics row per processed query.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import aiosqlite

from ..config import MemoryConfig
from ..exceptions import StoreError

logger = logging.getLogger(__name__)

ROLES = ("user", "assistant", "system")
DAY_MS = 86_400_000

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS conversations (
        thread_id TEXT PRIMARY KEY,
        user_context TEXT,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        message_count INTEGER NOT NULL DEFAULT 0,
        last_handler TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        thread_id TEXT NOT NULL,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        handler_type TEXT,
        confidence REAL,
        query_type TEXT,
        processing_time_ms INTEGER,
        node_sequence TEXT,
        created_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS query_analytics (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        thread_id TEXT NOT NULL,
        query TEXT NOT NULL,
        handler_type TEXT NOT NULL,
        confidence REAL,
        processing_time_ms INTEGER,
        success INTEGER NOT NULL,
        error_message TEXT,
        created_at INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(thread_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_analytics_handler ON query_analytics(handler_type, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_conversations_updated ON conversations(updated_at)",
]


@dataclass
class Message:
    """One entry in a conversation log."""

    thread_id: str
    role: str
    content: str
    handler_type: Optional[str] = None
    confidence: Optional[float] = None
    query_type: Optional[str] = None
    processing_time_ms: Optional[int] = None
    node_sequence: Sequence[str] = field(default_factory=tuple)
    created_at: Optional[int] = None  # epoch ms, assigned on save
    id: Optional[int] = None

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Invalid message role '{self.role}'. Expected one of {', '.join(ROLES)}")
        if not self.thread_id:
            raise ValueError("Message thread_id must not be empty")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "thread_id": self.thread_id,
            "role": self.role,
            "content": self.content,
            "handler_type": self.handler_type,
            "confidence": self.confidence,
            "query_type": self.query_type,
            "processing_time_ms": self.processing_time_ms,
            "node_sequence": list(self.node_sequence),
            "created_at": self.created_at,
        }


class ConversationMemory:
    """
    SQLite-backed conversation log.

    Each thread is capped at ``max_messages_per_thread``; the oldest messages
    are trimmed first. Conversations not updated for ``max_age_days`` are
    removed by ``cleanup_old_conversations``.

    Args:
        config: Database path and retention settings
        clock: Time source in epoch seconds, injectable for tests
    """

    def __init__(self, config: Optional[MemoryConfig] = None, clock: Callable[[], float] = time.time):
        self.config = config or MemoryConfig()
        self._clock = clock
        self._db: Optional[aiosqlite.Connection] = None

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def setup(self) -> None:
        if self._db is not None:
            return
        db_path = self.config.db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._db = await aiosqlite.connect(db_path, isolation_level=None)
            self._db.row_factory = aiosqlite.Row
            await self._db.execute("PRAGMA journal_mode=WAL")
            for statement in SCHEMA:
                await self._db.execute(statement)
        except aiosqlite.Error as e:
            raise StoreError(f"Failed to open conversation database {db_path}: {e}", operation="setup", backend="conversation") from e
        logger.info(f"Conversation memory ready at {db_path}")

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.info("Conversation memory closed")

    async def __aenter__(self) -> "ConversationMemory":
        await self.setup()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StoreError("Conversation memory used before setup()", backend="conversation")
        return self._db

    async def _fetchall(self, sql: str, params: tuple, operation: str) -> List[aiosqlite.Row]:
        try:
            async with self.db.execute(sql, params) as cursor:
                return await cursor.fetchall()
        except aiosqlite.Error as e:
            raise StoreError(f"Conversation {operation} failed: {e}", operation=operation, backend="conversation") from e

    async def _execute(self, sql: str, params: tuple, operation: str) -> aiosqlite.Cursor:
        try:
            return await self.db.execute(sql, params)
        except aiosqlite.Error as e:
            raise StoreError(f"Conversation {operation} failed: {e}", operation=operation, backend="conversation") from e

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def save_message(self, message: Message, user_context: Optional[Dict[str, Any]] = None) -> int:
        """
        Append a message, upsert its conversation row and trim the thread.

        Returns:
            The new message id
        """
        now = self._now_ms()
        created_at = message.created_at if message.created_at is not None else now
        await self._execute(
            """
            INSERT INTO conversations (thread_id, user_context, created_at, updated_at, message_count)
            VALUES (?, ?, ?, ?, 0)
            ON CONFLICT(thread_id) DO NOTHING
            """,
            (message.thread_id, json.dumps(user_context or {}, default=str), now, now),
            "save_message",
        )
        cursor = await self._execute(
            """
            INSERT INTO messages (thread_id, role, content, handler_type, confidence,
                                  query_type, processing_time_ms, node_sequence, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                message.thread_id,
                message.role,
                message.content,
                message.handler_type,
                message.confidence,
                message.query_type,
                message.processing_time_ms,
                json.dumps(list(message.node_sequence)),
                created_at,
            ),
            "save_message",
        )
        message_id = cursor.lastrowid
        await cursor.close()

        await self._trim(message.thread_id)
        await self._execute(
            """
            UPDATE conversations
            SET updated_at = ?,
                message_count = (SELECT COUNT(*) FROM messages WHERE thread_id = ?),
                last_handler = COALESCE(?, last_handler)
            WHERE thread_id = ?
            """,
            (now, message.thread_id, message.handler_type, message.thread_id),
            "save_message",
        )
        message.id = message_id
        message.created_at = created_at
        logger.debug(f"Message {message_id} saved to {message.thread_id} ({message.role}, {len(message.content)} chars)")
        return message_id

    async def _trim(self, thread_id: str) -> None:
        cursor = await self._execute(
            """
            DELETE FROM messages
            WHERE thread_id = ? AND id NOT IN (
                SELECT id FROM messages WHERE thread_id = ?
                ORDER BY created_at DESC, id DESC LIMIT ?
            )
            """,
            (thread_id, thread_id, self.config.max_messages_per_thread),
            "trim",
        )
        if cursor.rowcount > 0:
            logger.debug(f"Trimmed {cursor.rowcount} old messages from {thread_id}")
        await cursor.close()

    async def save_exchange(
        self,
        thread_id: str,
        query: str,
        result: Dict[str, Any],
        user_context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Record one processed query: the user message, the assistant reply and
        an analytics row.

        ``result`` is the dict returned by ``Pitwall.process_query``.
        """
        metadata = result.get("metadata") or {}
        handler = metadata.get("handler") or "unknown"
        processing_time = metadata.get("processing_time_ms")

        await self.save_message(
            Message(thread_id=thread_id, role="user", content=query, query_type=metadata.get("query_type")),
            user_context=user_context,
        )
        await self.save_message(
            Message(
                thread_id=thread_id,
                role="assistant",
                content=result.get("response") or "",
                handler_type=handler,
                confidence=result.get("confidence"),
                query_type=metadata.get("query_type"),
                processing_time_ms=processing_time,
                node_sequence=metadata.get("node_sequence") or (),
            )
        )
        cursor = await self._execute(
            """
            INSERT INTO query_analytics (thread_id, query, handler_type, confidence,
                                         processing_time_ms, success, error_message, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                thread_id,
                query[:500],
                handler,
                result.get("confidence"),
                processing_time,
                1 if result.get("success") else 0,
                result.get("error"),
                self._now_ms(),
            ),
            "save_exchange",
        )
        await cursor.close()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def _to_message(row: aiosqlite.Row) -> Message:
        return Message(
            id=row["id"],
            thread_id=row["thread_id"],
            role=row["role"],
            content=row["content"],
            handler_type=row["handler_type"],
            confidence=row["confidence"],
            query_type=row["query_type"],
            processing_time_ms=row["processing_time_ms"],
            node_sequence=tuple(json.loads(row["node_sequence"] or "[]")),
            created_at=row["created_at"],
        )

    async def get_history(
        self, thread_id: str, limit: int = 50, offset: int = 0, role: Optional[str] = None
    ) -> List[Message]:
        """Messages for a thread, oldest first."""
        sql = "SELECT * FROM messages WHERE thread_id = ?"
        params: list = [thread_id]
        if role is not None:
            sql += " AND role = ?"
            params.append(role)
        sql += " ORDER BY created_at ASC, id ASC LIMIT ? OFFSET ?"
        params.extend([max(limit, 0), max(offset, 0)])
        rows = await self._fetchall(sql, tuple(params), "get_history")
        return [self._to_message(row) for row in rows]

    async def get_summary(self, thread_id: str) -> Optional[Dict[str, Any]]:
        """Statistics for one thread, or None if it has no conversation row."""
        conversations = await self._fetchall(
            "SELECT * FROM conversations WHERE thread_id = ?", (thread_id,), "get_summary"
        )
        if not conversations:
            return None
        conversation = conversations[0]

        stats = (await self._fetchall(
            """
            SELECT COUNT(*) AS total_messages,
                   SUM(CASE WHEN role = 'user' THEN 1 ELSE 0 END) AS user_messages,
                   SUM(CASE WHEN role = 'assistant' THEN 1 ELSE 0 END) AS assistant_messages,
                   AVG(confidence) AS average_confidence,
                   AVG(processing_time_ms) AS average_processing_time_ms,
                   MIN(created_at) AS first_message_at,
                   MAX(created_at) AS last_message_at
            FROM messages WHERE thread_id = ?
            """,
            (thread_id,),
            "get_summary",
        ))[0]
        usage = await self._fetchall(
            """
            SELECT handler_type, COUNT(*) AS usage_count, AVG(confidence) AS average_confidence
            FROM messages WHERE thread_id = ? AND handler_type IS NOT NULL
            GROUP BY handler_type ORDER BY usage_count DESC, handler_type ASC
            """,
            (thread_id,),
            "get_summary",
        )
        return {
            "thread_id": thread_id,
            "created_at": conversation["created_at"],
            "updated_at": conversation["updated_at"],
            "user_context": json.loads(conversation["user_context"] or "{}"),
            "last_handler": conversation["last_handler"],
            "message_count": stats["total_messages"],
            "user_messages": stats["user_messages"] or 0,
            "assistant_messages": stats["assistant_messages"] or 0,
            "average_confidence": stats["average_confidence"],
            "average_processing_time_ms": stats["average_processing_time_ms"],
            "first_message_at": stats["first_message_at"],
            "last_message_at": stats["last_message_at"],
            "handlers_used": [dict(row) for row in usage],
        }

    async def get_analytics(self, days: int = 7, handler_type: Optional[str] = None) -> Dict[str, Any]:
        """Per-handler query counts, confidence, latency and success rate."""
        cutoff = self._now_ms() - int(days * DAY_MS)
        sql = """
            SELECT handler_type,
                   COUNT(*) AS query_count,
                   AVG(confidence) AS average_confidence,
                   AVG(processing_time_ms) AS average_processing_time_ms,
                   SUM(success) AS successful_queries
            FROM query_analytics
            WHERE created_at >= ?
        """
        params: list = [cutoff]
        if handler_type is not None:
            sql += " AND handler_type = ?"
            params.append(handler_type)
        sql += " GROUP BY handler_type ORDER BY query_count DESC, handler_type ASC"
        rows = await self._fetchall(sql, tuple(params), "get_analytics")

        handlers = []
        for row in rows:
            entry = dict(row)
            entry["failed_queries"] = entry["query_count"] - entry["successful_queries"]
            entry["success_rate"] = entry["successful_queries"] / entry["query_count"]
            handlers.append(entry)
        total = sum(h["query_count"] for h in handlers)
        successful = sum(h["successful_queries"] for h in handlers)
        return {
            "period_days": days,
            "handlers": handlers,
            "total_queries": total,
            "overall_success_rate": successful / total if total else 0.0,
        }

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def cleanup_old_conversations(self, max_age_days: Optional[float] = None) -> int:
        """
        Delete conversations (with their messages and analytics) not updated
        within ``max_age_days``.

        Returns:
            Number of conversations deleted
        """
        days = self.config.max_age_days if max_age_days is None else max_age_days
        cutoff = self._now_ms() - int(days * DAY_MS)
        stale = "SELECT thread_id FROM conversations WHERE updated_at < ?"
        for table in ("messages", "query_analytics"):
            cursor = await self._execute(
                f"DELETE FROM {table} WHERE thread_id IN ({stale})", (cutoff,), "cleanup"
            )
            await cursor.close()
        cursor = await self._execute("DELETE FROM conversations WHERE updated_at < ?", (cutoff,), "cleanup")
        deleted = cursor.rowcount
        await cursor.close()
        if deleted:
            logger.info(f"Cleaned up {deleted} old conversations (older than {days} days)")
        return deleted

    async def get_health(self) -> Dict[str, Any]:
        """Connectivity and row counts; never raises."""
        try:
            rows = await self._fetchall(
                """
                SELECT (SELECT COUNT(*) FROM conversations) AS conversation_count,
                       (SELECT COUNT(*) FROM messages) AS message_count,
                       (SELECT COUNT(*) FROM messages WHERE created_at >= ?) AS recent_activity
                """,
                (self._now_ms() - DAY_MS,),
                "health",
            )
        except StoreError as e:
            return {"status": "unhealthy", "error": str(e), "db_path": self.config.db_path}
        return {"status": "healthy", **dict(rows[0]), "db_path": self.config.db_path}
