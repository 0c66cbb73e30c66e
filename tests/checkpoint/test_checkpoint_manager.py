"""
Tests for the pitwall.checkpoint.manager module.

This module tests:
- Saving workflow states with step metadata and parent linkage
- Parent linkage resolved from the store after cleanup
- Restoring the latest state of a thread
- Storage failures being logged instead of raised
- Cleanup and statistics
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from pitwall.checkpoint import CheckpointManager, InMemoryCheckpointBackend
from pitwall.checkpoint.manager import create_backend
from pitwall.checkpoint.sqlite import SQLiteCheckpointBackend
from pitwall.config import CheckpointConfig
from pitwall.exceptions import StoreError
from pitwall.state import WorkflowState


# =============================================================================
# Helpers
# =============================================================================

def memory_config(**overrides) -> CheckpointConfig:
    return CheckpointConfig(backend="memory", auto_cleanup=False, **overrides)


def make_state(thread_id: str = "t1") -> WorkflowState:
    return WorkflowState.create(thread_id, "who won monaco?").enter("analyze_query")


class FakeClock:
    """Settable epoch-seconds clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class BrokenBackend(InMemoryCheckpointBackend):
    """Backend whose every operation fails."""

    async def put(self, *args, **kwargs):
        raise StoreError("disk full", operation="put", backend=self.name)

    async def get(self, *args, **kwargs):
        raise RuntimeError("database is locked")

    async def list(self, *args, **kwargs):
        raise RuntimeError("database is locked")

    async def cleanup(self, max_age):
        raise RuntimeError("database is locked")


# =============================================================================
# Save and Load Tests
# =============================================================================

class TestSaveAndLoad:
    """Tests for snapshotting workflow states."""

    @pytest.mark.asyncio
    async def test_save_records_step_and_version(self):
        manager = CheckpointManager(InMemoryCheckpointBackend(), memory_config())
        await manager.start()

        checkpoint_id = await manager.save(make_state(), "analyze_query")

        checkpoint = await manager.get("t1", checkpoint_id=checkpoint_id)
        assert checkpoint.metadata["step"] == "analyze_query"
        assert checkpoint.metadata["version"] == "1.0.0"
        assert checkpoint.metadata["backend"] == "memory"
        assert checkpoint.state["node_sequence"] == ["analyze_query"]

    @pytest.mark.asyncio
    async def test_parent_linkage_per_thread_and_namespace(self):
        manager = CheckpointManager(InMemoryCheckpointBackend(), memory_config())

        first = await manager.save(make_state(), "a")
        second = await manager.save(make_state(), "b")
        other_ns = await manager.save(make_state(), "a", namespace="replay")

        assert (await manager.get("t1", checkpoint_id=second)).parent_checkpoint_id == first
        assert (await manager.get("t1", "replay", other_ns)).parent_checkpoint_id is None

    @pytest.mark.asyncio
    async def test_load_latest(self):
        manager = CheckpointManager(InMemoryCheckpointBackend(), memory_config())
        state = make_state().update(selected_handler="race", confidence=0.8)
        await manager.save(state, "route")

        restored = await manager.load_latest("t1")

        assert restored == state

    @pytest.mark.asyncio
    async def test_load_latest_missing_thread(self):
        manager = CheckpointManager(InMemoryCheckpointBackend(), memory_config())

        assert await manager.load_latest("unknown") is None

    @pytest.mark.asyncio
    async def test_history_and_delete_thread(self):
        manager = CheckpointManager(InMemoryCheckpointBackend(), memory_config())
        for step in ("a", "b", "c"):
            await manager.save(make_state(), step)

        history = await manager.history("t1", limit=2)
        deleted = await manager.delete_thread("t1")
        fresh = await manager.save(make_state(), "a")

        assert [c.metadata["step"] for c in history] == ["c", "b"]
        assert deleted == 3
        assert (await manager.get("t1", checkpoint_id=fresh)).parent_checkpoint_id is None

    @pytest.mark.asyncio
    async def test_parent_after_cleanup_points_to_stored_checkpoint(self):
        clock = FakeClock()
        manager = CheckpointManager(InMemoryCheckpointBackend(clock=clock), memory_config())
        for i in range(50):
            await manager.save(make_state(f"t{i}"), "a")
        clock.advance(10 * 24 * 3600)

        deleted = await manager.cleanup()
        restarted = await manager.save(make_state("t0"), "a")
        clock.advance(1)
        following = await manager.save(make_state("t0"), "b")

        assert deleted == 50
        assert (await manager.get("t0", checkpoint_id=restarted)).parent_checkpoint_id is None
        assert (await manager.get("t0", checkpoint_id=following)).parent_checkpoint_id == restarted

    @pytest.mark.asyncio
    async def test_parent_from_store_across_managers(self):
        backend = InMemoryCheckpointBackend()
        first = await CheckpointManager(backend, memory_config()).save(make_state(), "a")

        second = await CheckpointManager(backend, memory_config()).save(make_state(), "b")

        assert (await backend.get("t1", "", second)).parent_checkpoint_id == first


# =============================================================================
# Failure Isolation Tests
# =============================================================================

class TestFailureIsolation:
    """Tests for storage errors never reaching the workflow."""

    @pytest.mark.asyncio
    async def test_failed_save_returns_none(self):
        manager = CheckpointManager(BrokenBackend(), memory_config())

        assert await manager.save(make_state(), "a") is None
        assert manager.failures == 1

    @pytest.mark.asyncio
    async def test_failed_reads_return_empty(self):
        manager = CheckpointManager(BrokenBackend(), memory_config())

        assert await manager.load_latest("t1") is None
        assert await manager.history("t1") == []
        assert await manager.cleanup() == 0

        stats = await manager.get_stats()
        assert stats["write_failures"] == 3

    @pytest.mark.asyncio
    async def test_failures_are_logged(self, caplog):
        manager = CheckpointManager(BrokenBackend(), memory_config())

        with caplog.at_level("WARNING"):
            await manager.save(make_state(), "a")

        assert "Checkpoint put failed" in caplog.text


# =============================================================================
# Lifecycle and Cleanup Tests
# =============================================================================

class TestLifecycle:
    """Tests for backend selection, cleanup and the cleanup loop."""

    def test_create_backend(self):
        assert isinstance(create_backend(memory_config()), InMemoryCheckpointBackend)
        assert isinstance(create_backend(CheckpointConfig(db_path=":memory:")), SQLiteCheckpointBackend)

    @pytest.mark.asyncio
    async def test_cleanup_uses_configured_age(self):
        backend = InMemoryCheckpointBackend()
        backend.cleanup = AsyncMock(return_value=4)
        manager = CheckpointManager(backend, memory_config(max_age_days=2))

        assert await manager.cleanup() == 4
        backend.cleanup.assert_awaited_once_with(timedelta(days=2))

    @pytest.mark.asyncio
    async def test_cleanup_loop_started_and_stopped(self):
        manager = CheckpointManager(InMemoryCheckpointBackend(), CheckpointConfig(backend="memory"))

        await manager.start()
        assert manager._cleanup_task is not None

        await manager.stop()
        assert manager._cleanup_task is None

    @pytest.mark.asyncio
    async def test_stats(self):
        manager = CheckpointManager(InMemoryCheckpointBackend(), memory_config())
        await manager.save(make_state("t1"), "a")
        await manager.save(make_state("t2"), "a")

        stats = await manager.get_stats()

        assert stats["total_checkpoints"] == 2
        assert stats["unique_threads"] == 2
        assert stats["write_failures"] == 0
