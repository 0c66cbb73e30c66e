"""
Conversation memory: per-thread message log and query analytics.
"""

from .conversation import ConversationMemory, Message

__all__ = ["ConversationMemory", "Message"]
