"""
Checkpoint management for workflow recovery and history.

This module provides:
- Snapshotting WorkflowState on every step with versioned metadata
- Parent linkage between successive checkpoints of a thread
- Periodic age-based cleanup
- Failure isolation: storage errors are logged, never raised to the workflow
"""

import asyncio
import logging
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional

from ..config import CheckpointConfig
from ..exceptions import StoreError
from ..state import WorkflowState
from .base import CHECKPOINT_VERSION, Checkpoint, CheckpointBackend
from .memory import InMemoryCheckpointBackend
from .sqlite import SQLiteCheckpointBackend

logger = logging.getLogger(__name__)


def create_backend(config: CheckpointConfig) -> CheckpointBackend:
    if config.backend == "memory":
        return InMemoryCheckpointBackend()
    return SQLiteCheckpointBackend(config.db_path)


class CheckpointManager:
    """
    Workflow-facing wrapper around a CheckpointBackend.

    Features:
    - ``save`` writes a new checkpoint and returns its id, or None on failure
    - ``load_latest`` restores the most recent WorkflowState of a thread
    - ``start``/``stop`` manage the backend and the cleanup loop
    """

    def __init__(self, backend: Optional[CheckpointBackend] = None, config: Optional[CheckpointConfig] = None):
        """
        Initialize checkpoint manager.

        Args:
            backend: Storage backend (built from config when omitted)
            config: Retention and cleanup settings
        """
        self.config = config or CheckpointConfig()
        self.backend = backend or create_backend(self.config)

        self._cleanup_task: Optional[asyncio.Task] = None
        self.failures = 0

    @property
    def max_age(self) -> timedelta:
        return timedelta(days=self.config.max_age_days)

    async def start(self) -> None:
        await self.backend.setup()
        if self.config.auto_cleanup and self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            logger.info(
                f"Checkpoint cleanup scheduled every {self.config.cleanup_interval_hours}h "
                f"(max age {self.config.max_age_days} days)"
            )

    async def stop(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        await self.backend.close()

    async def _cleanup_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.config.cleanup_interval_hours * 3600)
                await self.cleanup()
        except asyncio.CancelledError:
            logger.info("Checkpoint cleanup loop stopped")
            raise

    async def save(self, state: WorkflowState, step: str, namespace: str = "") -> Optional[str]:
        """
        Snapshot ``state`` after ``step``.

        Returns:
            The new checkpoint id, or None if the write failed
        """
        metadata = {
            "timestamp": time.time(),
            "version": CHECKPOINT_VERSION,
            "backend": self.backend.name,
            "step": step,
        }
        try:
            # Parent is the newest checkpoint still stored for this thread and namespace
            parent = await self.backend.get(state.thread_id, namespace)
            checkpoint_id = await self.backend.put(
                state.thread_id,
                namespace,
                state.to_dict(),
                metadata,
                parent_checkpoint_id=parent.checkpoint_id if parent is not None else None,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log_failure(e, "put", state.thread_id)
            return None
        return checkpoint_id

    async def load_latest(self, thread_id: str, namespace: str = "") -> Optional[WorkflowState]:
        checkpoint = await self.get(thread_id, namespace)
        if checkpoint is None:
            return None
        return WorkflowState.from_dict(checkpoint.state)

    async def get(self, thread_id: str, namespace: str = "", checkpoint_id: Optional[str] = None) -> Optional[Checkpoint]:
        try:
            return await self.backend.get(thread_id, namespace, checkpoint_id)
        except Exception as e:
            self._log_failure(e, "get", thread_id)
            return None

    async def history(
        self, thread_id: str, namespace: str = "", limit: int = 10, before: Optional[str] = None
    ) -> List[Checkpoint]:
        try:
            return await self.backend.list(thread_id, namespace, limit=limit, before=before)
        except Exception as e:
            self._log_failure(e, "list", thread_id)
            return []

    async def delete_thread(self, thread_id: str, namespace: str = "") -> int:
        try:
            deleted = await self.backend.delete(thread_id, namespace)
        except Exception as e:
            self._log_failure(e, "delete", thread_id)
            return 0
        return deleted

    async def cleanup(self, max_age: Optional[timedelta] = None) -> int:
        """
        Clean up checkpoints older than ``max_age`` (default: configured retention).

        Returns:
            Number of checkpoints deleted
        """
        try:
            deleted = await self.backend.cleanup(max_age or self.max_age)
        except Exception as e:
            self._log_failure(e, "cleanup")
            return 0
        logger.info(f"Cleaned up {deleted} old checkpoints")
        return deleted

    async def get_stats(self) -> Dict[str, Any]:
        try:
            stats = await self.backend.get_stats()
        except Exception as e:
            self._log_failure(e, "stats")
            stats = {"backend": self.backend.name}
        stats["write_failures"] = self.failures
        return stats

    def _log_failure(self, error: Exception, operation: str, thread_id: Optional[str] = None) -> None:
        self.failures += 1
        if not isinstance(error, StoreError):
            error = StoreError(str(error), operation=operation, backend=self.backend.name, thread_id=thread_id)
        logger.warning(f"Checkpoint {operation} failed, continuing without it: {error}")
