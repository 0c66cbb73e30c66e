"""
Checkpoint store: durable snapshots of workflow state per conversation thread.
"""

from .base import CHECKPOINT_VERSION, Checkpoint, CheckpointBackend
from .manager import CheckpointManager, create_backend
from .memory import InMemoryCheckpointBackend
from .sqlite import SQLiteCheckpointBackend

__all__ = [
    "CHECKPOINT_VERSION",
    "Checkpoint",
    "CheckpointBackend",
    "CheckpointManager",
    "InMemoryCheckpointBackend",
    "SQLiteCheckpointBackend",
    "create_backend",
]
