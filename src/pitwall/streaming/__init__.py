"""
Streaming: broadcast workflow progress events to subscribed connections.
"""

from .broadcaster import Connection, EventBroadcaster
from .events import StreamEvent, StreamFilter

__all__ = ["Connection", "EventBroadcaster", "StreamEvent", "StreamFilter"]
