"""
Pitwall - F1 query orchestration engine.

Routes Formula 1 analysis queries through a multi-tier router to specialized
handlers, merges their answers, checkpoints workflow state per conversation
thread, keeps a conversation log and streams progress events.
"""

__version__ = "0.1.0"

from .app import Pitwall
from .checkpoint import CheckpointManager, InMemoryCheckpointBackend, SQLiteCheckpointBackend
from .config import PitwallConfig
from .engine import WorkflowEngine
from .exceptions import PitwallError
from .handlers import Handler, HandlerOutput, HandlerRegistry
from .memory import ConversationMemory, Message
from .routing import Router, RoutingDecision
from .state import HandlerResult, QueryIntent, WorkflowState
from .streaming import EventBroadcaster, StreamFilter

__all__ = [
    "__version__",
    "Pitwall",
    "PitwallConfig",
    "PitwallError",
    "Router",
    "RoutingDecision",
    "WorkflowEngine",
    "WorkflowState",
    "HandlerResult",
    "QueryIntent",
    "Handler",
    "HandlerOutput",
    "HandlerRegistry",
    "CheckpointManager",
    "InMemoryCheckpointBackend",
    "SQLiteCheckpointBackend",
    "EventBroadcaster",
    "StreamFilter",
    "ConversationMemory",
    "Message",
]
