"""
SQLite checkpoint backend on aiosqlite.

Each write is a single ``INSERT OR REPLACE`` in autocommit mode, so a row is
either fully present or absent; WAL journaling lets readers see the last
committed row while a write is in flight. Ordering uses ``created_at`` with the
rowid as tie-break, since several checkpoints can land in the same millisecond.
"""

import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import aiosqlite

from ..exceptions import StoreError
from .base import Checkpoint, CheckpointBackend, MaxAge, max_age_ms, new_checkpoint_id

logger = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS checkpoints (
        thread_id TEXT NOT NULL,
        checkpoint_ns TEXT NOT NULL DEFAULT '',
        checkpoint_id TEXT NOT NULL,
        parent_checkpoint_id TEXT,
        checkpoint TEXT NOT NULL,
        metadata TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        PRIMARY KEY (thread_id, checkpoint_ns, checkpoint_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_checkpoints_thread ON checkpoints(thread_id, checkpoint_ns, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_checkpoints_created_at ON checkpoints(created_at)",
]

_COLUMNS = "rowid, thread_id, checkpoint_ns, checkpoint_id, parent_checkpoint_id, checkpoint, metadata, created_at"


class SQLiteCheckpointBackend(CheckpointBackend):
    """
    Durable checkpoint store.

    Args:
        db_path: Database file, or ``":memory:"`` for a private in-process database
        clock: Time source in epoch seconds, injectable for tests
    """

    name = "sqlite"

    def __init__(self, db_path: str = "./data/checkpoints.db", clock: Callable[[], float] = time.time):
        self.db_path = db_path
        self._clock = clock
        self._db: Optional[aiosqlite.Connection] = None

    async def setup(self) -> None:
        if self._db is not None:
            return
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._db = await aiosqlite.connect(self.db_path, isolation_level=None)
            self._db.row_factory = aiosqlite.Row
            await self._db.execute("PRAGMA journal_mode=WAL")
            for statement in SCHEMA:
                await self._db.execute(statement)
        except aiosqlite.Error as e:
            raise StoreError(f"Failed to open checkpoint database {self.db_path}: {e}", operation="setup", backend=self.name) from e
        logger.info(f"SQLite checkpoint backend ready at {self.db_path}")

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StoreError("Checkpoint backend used before setup()", backend=self.name)
        return self._db

    @staticmethod
    def _to_checkpoint(row: aiosqlite.Row) -> Checkpoint:
        return Checkpoint(
            thread_id=row["thread_id"],
            namespace=row["checkpoint_ns"],
            checkpoint_id=row["checkpoint_id"],
            parent_checkpoint_id=row["parent_checkpoint_id"],
            state=json.loads(row["checkpoint"]),
            metadata=json.loads(row["metadata"]),
            created_at=row["created_at"],
        )

    async def _fetchall(self, sql: str, params: tuple, operation: str) -> List[aiosqlite.Row]:
        try:
            async with self.db.execute(sql, params) as cursor:
                return await cursor.fetchall()
        except aiosqlite.Error as e:
            raise StoreError(f"Checkpoint {operation} failed: {e}", operation=operation, backend=self.name) from e

    async def _execute(self, sql: str, params: tuple, operation: str) -> int:
        try:
            async with self.db.execute(sql, params) as cursor:
                return cursor.rowcount
        except aiosqlite.Error as e:
            raise StoreError(f"Checkpoint {operation} failed: {e}", operation=operation, backend=self.name) from e

    async def put(
        self,
        thread_id: str,
        namespace: str,
        state: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
        parent_checkpoint_id: Optional[str] = None,
        checkpoint_id: Optional[str] = None,
    ) -> str:
        checkpoint_id = checkpoint_id or new_checkpoint_id()
        await self._execute(
            """
            INSERT OR REPLACE INTO checkpoints
            (thread_id, checkpoint_ns, checkpoint_id, parent_checkpoint_id, checkpoint, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                thread_id,
                namespace,
                checkpoint_id,
                parent_checkpoint_id,
                json.dumps(state, default=str),
                json.dumps(metadata or {}, default=str),
                int(self._clock() * 1000),
            ),
            "put",
        )
        logger.debug(f"Checkpoint saved: {thread_id}/{namespace or '-'}/{checkpoint_id}")
        return checkpoint_id

    async def get(
        self, thread_id: str, namespace: str = "", checkpoint_id: Optional[str] = None
    ) -> Optional[Checkpoint]:
        if checkpoint_id is not None:
            rows = await self._fetchall(
                f"SELECT {_COLUMNS} FROM checkpoints WHERE thread_id = ? AND checkpoint_ns = ? AND checkpoint_id = ?",
                (thread_id, namespace, checkpoint_id),
                "get",
            )
        else:
            rows = await self._fetchall(
                f"SELECT {_COLUMNS} FROM checkpoints WHERE thread_id = ? AND checkpoint_ns = ? "
                "ORDER BY created_at DESC, rowid DESC LIMIT 1",
                (thread_id, namespace),
                "get",
            )
        return self._to_checkpoint(rows[0]) if rows else None

    async def list(
        self,
        thread_id: str,
        namespace: str = "",
        limit: int = 10,
        before: Optional[str] = None,
    ) -> List[Checkpoint]:
        if before is None:
            rows = await self._fetchall(
                f"SELECT {_COLUMNS} FROM checkpoints WHERE thread_id = ? AND checkpoint_ns = ? "
                "ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (thread_id, namespace, max(limit, 0)),
                "list",
            )
        else:
            anchor = await self._fetchall(
                "SELECT rowid, created_at FROM checkpoints WHERE thread_id = ? AND checkpoint_ns = ? AND checkpoint_id = ?",
                (thread_id, namespace, before),
                "list",
            )
            if not anchor:
                return []
            created_at, rowid = anchor[0]["created_at"], anchor[0]["rowid"]
            rows = await self._fetchall(
                f"SELECT {_COLUMNS} FROM checkpoints WHERE thread_id = ? AND checkpoint_ns = ? "
                "AND (created_at < ? OR (created_at = ? AND rowid < ?)) "
                "ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (thread_id, namespace, created_at, created_at, rowid, max(limit, 0)),
                "list",
            )
        return [self._to_checkpoint(row) for row in rows]

    async def delete(
        self, thread_id: str, namespace: str = "", checkpoint_id: Optional[str] = None
    ) -> int:
        if checkpoint_id is not None:
            return await self._execute(
                "DELETE FROM checkpoints WHERE thread_id = ? AND checkpoint_ns = ? AND checkpoint_id = ?",
                (thread_id, namespace, checkpoint_id),
                "delete",
            )
        return await self._execute(
            "DELETE FROM checkpoints WHERE thread_id = ? AND checkpoint_ns = ?",
            (thread_id, namespace),
            "delete",
        )

    async def cleanup(self, max_age: MaxAge) -> int:
        cutoff = int(self._clock() * 1000) - max_age_ms(max_age)
        deleted = await self._execute("DELETE FROM checkpoints WHERE created_at < ?", (cutoff,), "cleanup")
        logger.info(f"Cleaned up {deleted} old checkpoints")
        return deleted

    async def get_stats(self) -> Dict[str, Any]:
        rows = await self._fetchall(
            """
            SELECT COUNT(*) AS total_checkpoints,
                   COUNT(DISTINCT thread_id) AS unique_threads,
                   COUNT(DISTINCT checkpoint_ns) AS unique_namespaces,
                   MIN(created_at) AS oldest_checkpoint,
                   MAX(created_at) AS newest_checkpoint
            FROM checkpoints
            """,
            (),
            "stats",
        )
        return {"backend": self.name, **dict(rows[0])}
