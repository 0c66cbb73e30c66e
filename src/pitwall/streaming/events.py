"""
Stream event and filter types.
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

# Stream types
STREAM_QUERY = "query"
STREAM_HANDLER = "handler"
STREAM_WORKFLOW = "workflow"
STREAM_HEALTH = "health"

# Event names
QUERY_START = "query_start"
QUERY_COMPLETE = "query_complete"
QUERY_ERROR = "query_error"
WORKFLOW_STEP = "workflow_step"
WORKFLOW_COMPLETE = "workflow_complete"
HANDLER_START = "handler_start"
HANDLER_COMPLETE = "handler_complete"
HANDLER_ERROR = "handler_error"
HEALTH = "health"
HEARTBEAT = "heartbeat"


def _epoch_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class StreamFilter:
    """
    Topic filter. ``None`` on any dimension is a wildcard.

    Used both for subscriptions and for publishing: an event reaches a
    connection when no dimension is set to different values on the two sides.
    """

    stream_type: Optional[str] = None
    thread_id: Optional[str] = None
    handler_type: Optional[str] = None

    def matches(self, other: "StreamFilter") -> bool:
        for name in ("stream_type", "thread_id", "handler_type"):
            mine, theirs = getattr(self, name), getattr(other, name)
            if mine is not None and theirs is not None and mine != theirs:
                return False
        return True

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "stream_type": self.stream_type,
            "thread_id": self.thread_id,
            "handler_type": self.handler_type,
        }


ANY = StreamFilter()


@dataclass(frozen=True)
class StreamEvent:
    """One delivered event: name, JSON-safe payload and epoch milliseconds."""

    event: str
    payload: Dict[str, Any]
    timestamp: int = field(default_factory=_epoch_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.event, "payload": self.payload, "timestamp": self.timestamp}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    def to_sse(self) -> str:
        """Server-sent events wire format."""
        return f"event: {self.event}\ndata: {json.dumps(self.payload, default=str)}\n\n"
