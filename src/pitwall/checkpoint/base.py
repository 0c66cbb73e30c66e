"""
Checkpoint types and the storage backend contract.

A checkpoint is an immutable snapshot of a workflow state, identified by the
triple (thread_id, namespace, checkpoint_id). Every backend must provide the
same guarantees: atomic per-row writes, readers that observe either the prior
or the new checkpoint, and newest-first listing.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union

CHECKPOINT_VERSION = "1.0.0"

MaxAge = Union[timedelta, float, int]


def new_checkpoint_id() -> str:
    return uuid.uuid4().hex


def max_age_ms(max_age: MaxAge) -> int:
    """Convert a timedelta or a number of seconds to milliseconds."""
    if isinstance(max_age, timedelta):
        return int(max_age.total_seconds() * 1000)
    return int(float(max_age) * 1000)


@dataclass(frozen=True)
class Checkpoint:
    """One persisted snapshot."""

    thread_id: str
    namespace: str
    checkpoint_id: str
    state: Dict[str, Any]
    metadata: Dict[str, Any] = field(default_factory=dict)
    parent_checkpoint_id: Optional[str] = None
    created_at: int = 0  # epoch milliseconds


class CheckpointBackend(ABC):
    """Abstract base class for checkpoint storage backends."""

    name: str = "abstract"

    async def setup(self) -> None:
        """Prepare the backend (open connections, create tables)."""

    async def close(self) -> None:
        """Release backend resources."""

    async def __aenter__(self) -> "CheckpointBackend":
        await self.setup()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @abstractmethod
    async def put(
        self,
        thread_id: str,
        namespace: str,
        state: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
        parent_checkpoint_id: Optional[str] = None,
        checkpoint_id: Optional[str] = None,
    ) -> str:
        """Persist a checkpoint and return its id."""

    @abstractmethod
    async def get(
        self, thread_id: str, namespace: str = "", checkpoint_id: Optional[str] = None
    ) -> Optional[Checkpoint]:
        """Return the named checkpoint, or the most recent one when no id is given."""

    @abstractmethod
    async def list(
        self,
        thread_id: str,
        namespace: str = "",
        limit: int = 10,
        before: Optional[str] = None,
    ) -> List[Checkpoint]:
        """
        List checkpoints newest first.

        ``before`` is a checkpoint id; only checkpoints written before it are
        returned. An unknown ``before`` id yields an empty list.
        """

    @abstractmethod
    async def delete(
        self, thread_id: str, namespace: str = "", checkpoint_id: Optional[str] = None
    ) -> int:
        """Delete one checkpoint, or every checkpoint in the namespace. Returns the count."""

    @abstractmethod
    async def cleanup(self, max_age: MaxAge) -> int:
        """Delete checkpoints older than ``max_age``. Returns the count."""

    @abstractmethod
    async def get_stats(self) -> Dict[str, Any]:
        """Totals for monitoring."""
