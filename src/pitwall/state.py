"""
Workflow state threaded through the engine graph.

``WorkflowState`` is a frozen dataclass: steps never mutate it, they return a
delta that ``update`` merges into a new state object. Append-only fields
(``errors``, ``handler_results``, ``node_sequence``) can only grow, and once
``final_response`` is set the state refuses further updates except sealing it
at the terminal node.
"""

import time
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

from .exceptions import StateError

TERMINAL_NODE = "END"


def clamp_confidence(value: Any) -> float:
    """Clamp a confidence value into [0, 1]; non-numeric values become 0."""
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if value != value:  # NaN
        return 0.0
    return max(0.0, min(1.0, value))


@dataclass(frozen=True)
class HandlerResult:
    """Outcome of one handler invocation."""

    handler: str
    output: str = ""
    confidence: float = 0.0
    success: bool = False
    error: Optional[str] = None
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HandlerResult":
        return cls(
            handler=data["handler"],
            output=data.get("output", ""),
            confidence=clamp_confidence(data.get("confidence", 0.0)),
            success=bool(data.get("success", False)),
            error=data.get("error"),
            duration_ms=int(data.get("duration_ms", 0)),
        )


@dataclass(frozen=True)
class QueryIntent:
    """Structured intent extracted from the query before routing."""

    primary_handler: Optional[str] = None
    secondary_handlers: Tuple[str, ...] = ()
    query_type: str = "general"
    complexity: str = "simple"  # simple | moderate | complex
    requires_multiple: bool = False
    entities: Dict[str, List[str]] = field(default_factory=dict)
    source: str = "keywords"  # model | keywords

    @property
    def is_complex(self) -> bool:
        return self.complexity == "complex"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["secondary_handlers"] = list(self.secondary_handlers)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueryIntent":
        return cls(
            primary_handler=data.get("primary_handler"),
            secondary_handlers=tuple(data.get("secondary_handlers") or ()),
            query_type=data.get("query_type", "general"),
            complexity=data.get("complexity", "simple"),
            requires_multiple=bool(data.get("requires_multiple", False)),
            entities=dict(data.get("entities") or {}),
            source=data.get("source", "keywords"),
        )


@dataclass(frozen=True)
class WorkflowState:
    """
    The unit of work threaded through the workflow graph.

    Attributes:
        thread_id: Stable conversation identifier
        query: Sanitized query text
        user_context: Opaque key/value bag passed to the router and handlers
        selected_handler: Primary handler name, None until routed
        secondary_handlers: Additional handlers, in execution order
        handler_results: One entry per handler actually invoked
        final_response: Response text, empty until synthesis
        confidence: Overall confidence, always within [0, 1]
        errors: Recoverable error messages, append-only
        node_sequence: Step names visited, append-only
        metadata: Timings, counters, routing details
    """

    thread_id: str
    query: str
    user_context: Dict[str, Any] = field(default_factory=dict)
    selected_handler: Optional[str] = None
    secondary_handlers: Tuple[str, ...] = ()
    handler_results: Tuple[HandlerResult, ...] = ()
    final_response: str = ""
    confidence: float = 0.0
    errors: Tuple[str, ...] = ()
    node_sequence: Tuple[str, ...] = ()
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        thread_id: str,
        query: str,
        user_context: Optional[Dict[str, Any]] = None,
    ) -> "WorkflowState":
        return cls(
            thread_id=thread_id,
            query=query,
            user_context=dict(user_context or {}),
            metadata={"started_at": time.time()},
        )

    @property
    def is_final(self) -> bool:
        return bool(self.final_response)

    @property
    def is_complete(self) -> bool:
        return bool(self.node_sequence) and self.node_sequence[-1] == TERMINAL_NODE

    @property
    def successful_results(self) -> List[HandlerResult]:
        return [r for r in self.handler_results if r.success]

    def update(self, **changes: Any) -> "WorkflowState":
        """
        Return a new state with ``changes`` merged in.

        ``errors`` and ``handler_results`` are appended rather than replaced,
        ``metadata`` is merged key by key, ``confidence`` is clamped, and all
        other fields are replaced.

        Raises:
            StateError: If this state already carries a final response, or an
                unknown field is named.
        """
        if self.is_final:
            raise StateError(
                "Cannot update a finalized workflow state", thread_id=self.thread_id
            )
        unknown = set(changes) - set(self.__dataclass_fields__)
        if unknown:
            raise StateError(f"Unknown state fields: {', '.join(sorted(unknown))}")
        if "node_sequence" in changes:
            raise StateError("node_sequence only grows through enter()")

        if "errors" in changes:
            changes["errors"] = self.errors + tuple(changes["errors"])
        if "handler_results" in changes:
            changes["handler_results"] = self.handler_results + tuple(changes["handler_results"])
        if "metadata" in changes:
            changes["metadata"] = {**self.metadata, **changes["metadata"]}
        if "secondary_handlers" in changes:
            changes["secondary_handlers"] = tuple(changes["secondary_handlers"])
        if "confidence" in changes:
            changes["confidence"] = clamp_confidence(changes["confidence"])
        return replace(self, **changes)

    def enter(self, step: str) -> "WorkflowState":
        """Record a visit to ``step``. The terminal node can be entered once."""
        if self.is_complete:
            raise StateError("Workflow already reached the terminal node", thread_id=self.thread_id)
        if step == TERMINAL_NODE:
            metadata = {**self.metadata, "completed_at": time.time()}
            return replace(self, node_sequence=self.node_sequence + (step,), metadata=metadata)
        if self.is_final:
            raise StateError(
                f"Cannot enter step '{step}' after the response was finalized",
                thread_id=self.thread_id,
            )
        return replace(self, node_sequence=self.node_sequence + (step,))

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe representation used for checkpoints."""
        return {
            "thread_id": self.thread_id,
            "query": self.query,
            "user_context": self.user_context,
            "selected_handler": self.selected_handler,
            "secondary_handlers": list(self.secondary_handlers),
            "handler_results": [r.to_dict() for r in self.handler_results],
            "final_response": self.final_response,
            "confidence": self.confidence,
            "errors": list(self.errors),
            "node_sequence": list(self.node_sequence),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowState":
        return cls(
            thread_id=data["thread_id"],
            query=data["query"],
            user_context=dict(data.get("user_context") or {}),
            selected_handler=data.get("selected_handler"),
            secondary_handlers=tuple(data.get("secondary_handlers") or ()),
            handler_results=tuple(HandlerResult.from_dict(r) for r in data.get("handler_results") or ()),
            final_response=data.get("final_response", ""),
            confidence=clamp_confidence(data.get("confidence", 0.0)),
            errors=tuple(data.get("errors") or ()),
            node_sequence=tuple(data.get("node_sequence") or ()),
            metadata=dict(data.get("metadata") or {}),
        )

    def get_statistics(self) -> Dict[str, Any]:
        """Summary counters for logging and the public result metadata."""
        started = self.metadata.get("started_at")
        completed = self.metadata.get("completed_at") or time.time()
        return {
            "handlers_invoked": len(self.handler_results),
            "handlers_succeeded": len(self.successful_results),
            "error_count": len(self.errors),
            "steps": len(self.node_sequence),
            "processing_time_ms": int((completed - started) * 1000) if started else 0,
        }
