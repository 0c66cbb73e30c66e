"""
Handler interface.

A handler is a specialized analysis unit: given the query and the structured
intent it returns a confidence-scored text result. Handlers report problems
either by raising or by returning a HandlerOutput with ``error`` set; the
engine treats both as a failed branch.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..state import QueryIntent


@dataclass
class HandlerOutput:
    """Value returned by Handler.execute."""

    output: str
    confidence: float
    error: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Handler(ABC):
    """Base class for analysis handlers registered by name."""

    name: str = ""
    description: str = ""

    @abstractmethod
    async def execute(self, query: str, intent: QueryIntent) -> HandlerOutput:
        """Analyze ``query`` and return the result."""

    async def close(self) -> None:
        """Release resources held by the handler."""
