"""
In-memory checkpoint backend for tests and ephemeral deployments.

Rows are JSON-encoded on write and decoded on read, so callers can neither
mutate stored snapshots nor store values the SQLite backend would reject.
"""

import asyncio
import itertools
import json
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from .base import Checkpoint, CheckpointBackend, MaxAge, max_age_ms, new_checkpoint_id

_Key = Tuple[str, str, str]


class InMemoryCheckpointBackend(CheckpointBackend):
    """Dict-backed checkpoint store guarded by an asyncio.Lock."""

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._rows: Dict[_Key, Dict[str, Any]] = {}
        self._sequence = itertools.count()
        self._lock = asyncio.Lock()

    def _to_checkpoint(self, row: Dict[str, Any]) -> Checkpoint:
        return Checkpoint(
            thread_id=row["thread_id"],
            namespace=row["namespace"],
            checkpoint_id=row["checkpoint_id"],
            parent_checkpoint_id=row["parent_checkpoint_id"],
            state=json.loads(row["state"]),
            metadata=json.loads(row["metadata"]),
            created_at=row["created_at"],
        )

    def _scope(self, thread_id: str, namespace: str) -> List[Dict[str, Any]]:
        rows = [r for (t, n, _), r in self._rows.items() if t == thread_id and n == namespace]
        rows.sort(key=lambda r: (r["created_at"], r["seq"]), reverse=True)
        return rows

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
        row = {
            "thread_id": thread_id,
            "namespace": namespace,
            "checkpoint_id": checkpoint_id,
            "parent_checkpoint_id": parent_checkpoint_id,
            "state": json.dumps(state, default=str),
            "metadata": json.dumps(metadata or {}, default=str),
            "created_at": int(self._clock() * 1000),
        }
        async with self._lock:
            row["seq"] = next(self._sequence)
            self._rows[(thread_id, namespace, checkpoint_id)] = row
        return checkpoint_id

    async def get(
        self, thread_id: str, namespace: str = "", checkpoint_id: Optional[str] = None
    ) -> Optional[Checkpoint]:
        async with self._lock:
            if checkpoint_id is not None:
                row = self._rows.get((thread_id, namespace, checkpoint_id))
            else:
                rows = self._scope(thread_id, namespace)
                row = rows[0] if rows else None
        return self._to_checkpoint(row) if row else None

    async def list(
        self,
        thread_id: str,
        namespace: str = "",
        limit: int = 10,
        before: Optional[str] = None,
    ) -> List[Checkpoint]:
        async with self._lock:
            rows = self._scope(thread_id, namespace)
            if before is not None:
                anchor = self._rows.get((thread_id, namespace, before))
                if anchor is None:
                    return []
                bound = (anchor["created_at"], anchor["seq"])
                rows = [r for r in rows if (r["created_at"], r["seq"]) < bound]
            rows = rows[: max(limit, 0)]
        return [self._to_checkpoint(r) for r in rows]

    async def delete(
        self, thread_id: str, namespace: str = "", checkpoint_id: Optional[str] = None
    ) -> int:
        async with self._lock:
            if checkpoint_id is not None:
                return 1 if self._rows.pop((thread_id, namespace, checkpoint_id), None) else 0
            keys = [k for k in self._rows if k[0] == thread_id and k[1] == namespace]
            for key in keys:
                del self._rows[key]
            return len(keys)

    async def cleanup(self, max_age: MaxAge) -> int:
        cutoff = int(self._clock() * 1000) - max_age_ms(max_age)
        async with self._lock:
            expired = [k for k, r in self._rows.items() if r["created_at"] < cutoff]
            for key in expired:
                del self._rows[key]
        return len(expired)

    async def get_stats(self) -> Dict[str, Any]:
        async with self._lock:
            rows = list(self._rows.values())
        created = [r["created_at"] for r in rows]
        return {
            "backend": self.name,
            "total_checkpoints": len(rows),
            "unique_threads": len({r["thread_id"] for r in rows}),
            "unique_namespaces": len({r["namespace"] for r in rows}),
            "oldest_checkpoint": min(created) if created else None,
            "newest_checkpoint": max(created) if created else None,
        }
