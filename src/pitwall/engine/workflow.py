"""
Workflow engine: drives a WorkflowState through analysis, routing, handler
execution and synthesis.

    START -> analyze_query -> route -> execute -> synthesize -> END
                                          |            |
                                          +--> error <-+--> END

``execute`` is the only point of real parallelism. Handler calls run as
tasks shielded from caller cancellation: when a run is cancelled the handlers
finish in the background, their results are dropped and no further
checkpoint is written.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Set

from ..checkpoint.manager import CheckpointManager
from ..config import EngineConfig
from ..exceptions import HandlerFailure, SynthesisFailure, UnknownHandlerError
from ..handlers.registry import HandlerRegistry
from ..models.client import ModelClient
from ..routing.router import Router
from ..routing.types import RoutingDecision
from ..state import HandlerResult, QueryIntent, WorkflowState, clamp_confidence
from ..streaming.broadcaster import EventBroadcaster
from ..streaming.events import (
    HANDLER_COMPLETE,
    HANDLER_ERROR,
    HANDLER_START,
    WORKFLOW_COMPLETE,
)
from ..utils.parsing import decode_json_reply
from ..utils.query import detect_query_type, extract_entities, normalize_entities
from .graph import END, START, WorkflowGraph

logger = logging.getLogger(__name__)

APOLOGY = (
    "I'm sorry, I couldn't complete the analysis for your F1 question. "
    "Please try rephrasing it or ask again in a moment."
)

# Keyword guesser: queries longer than this are treated as complex
COMPLEX_WORD_COUNT = 40

ANALYSIS_SYSTEM_PROMPT = (
    "You are an expert F1 query analyzer. Classify queries and decide which "
    "specialized handlers should answer them."
)

ANALYSIS_PROMPT = """Analyze this F1 query and determine which specialized handlers should handle it.

Query: "{query}"

Available handlers:
{handlers}

Respond with JSON:
{{
  "primary_handler": "handler_name",
  "secondary_handlers": ["handler_name"],
  "query_type": "description",
  "complexity": "simple|moderate|complex",
  "requires_multiple": false,
  "entities": {{"drivers": [], "teams": [], "seasons": [], "races": []}}
}}"""

SYNTHESIS_SYSTEM_PROMPT = (
    "You are an expert F1 analyst. Merge specialist analyses into one clear, "
    "accurate answer."
)

SYNTHESIS_PROMPT = """Original query: "{query}"

Specialist results:
{results}

Write one response that answers the query directly, keeps the specialists' facts
and numbers, and notes where they disagree."""

INTENT_SCHEMA = {
    "type": "object",
    "properties": {
        "primary_handler": {"type": "string"},
        "secondary_handlers": {"type": "array", "items": {"type": "string"}},
        "query_type": {"type": "string"},
        "complexity": {"type": "string"},
        "requires_multiple": {"type": "boolean"},
    },
    "required": ["primary_handler"],
}

COMPLEXITY_LEVELS = ("simple", "moderate", "complex")


def guess_intent(query: str, router: Router) -> QueryIntent:
    """
    Deterministic intent from keyword matches.

    Every handler with a keyword match beyond the best one becomes a secondary
    handler (at most two). Long queries, or queries touching three or more
    handlers, are complex.
    """
    names = [name for _, name, _ in router.score_keywords(query)]
    secondary = tuple(names[1:3])
    if len(query.split()) > COMPLEX_WORD_COUNT or len(names) >= 3:
        complexity = "complex"
    elif secondary:
        complexity = "moderate"
    else:
        complexity = "simple"
    return QueryIntent(
        primary_handler=names[0] if names else None,
        secondary_handlers=secondary,
        query_type=detect_query_type(query),
        complexity=complexity,
        requires_multiple=bool(secondary),
        entities=extract_entities(query),
        source="keywords",
    )


class WorkflowEngine:
    """
    Runs the analysis workflow for one query at a time per ``run`` call.

    Args:
        router: Handler selection
        registry: Handlers by name
        model_client: Used for intent analysis and synthesis; without one the
            engine uses the keyword guesser and the synthesis fallback
        checkpoints: Optional checkpoint manager, written after every step
        broadcaster: Optional event broadcaster for progress events
        config: Timeouts and synthesis constants
    """

    def __init__(
        self,
        router: Router,
        registry: HandlerRegistry,
        model_client: Optional[ModelClient] = None,
        checkpoints: Optional[CheckpointManager] = None,
        broadcaster: Optional[EventBroadcaster] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.router = router
        self.registry = registry
        self.model_client = model_client
        self.checkpoints = checkpoints
        self.broadcaster = broadcaster
        self.config = config or EngineConfig()
        self._inflight: Set[asyncio.Task] = set()
        self.graph = self._build_graph()

    def _build_graph(self) -> WorkflowGraph:
        graph = WorkflowGraph()
        graph.add_step("analyze_query", self.analyze_query)
        graph.add_step("route", self.route)
        graph.add_step("execute", self.execute)
        graph.add_step("synthesize", self.synthesize)
        graph.add_step("error", self.error)

        graph.add_edge(START, "analyze_query")
        graph.add_edge("analyze_query", "route")
        graph.add_edge("route", "execute")
        graph.add_conditional_edge("execute", self._after_execute, ("synthesize", "error"))
        graph.add_conditional_edge("synthesize", self._after_synthesize, (END, "error"))
        graph.add_edge("error", END)
        graph.validate()
        return graph

    @staticmethod
    def _after_execute(state: WorkflowState) -> str:
        return "error" if state.metadata.get("fatal_error") else "synthesize"

    @staticmethod
    def _after_synthesize(state: WorkflowState) -> str:
        return END if state.is_final else "error"

    async def run(self, state: WorkflowState) -> WorkflowState:
        """
        Process ``state`` to completion.

        Raises:
            StateError: If the graph runs past its step budget
            asyncio.CancelledError: If the caller cancels the run
        """
        logger.info(f"Workflow started for thread {state.thread_id}")
        final = await self.graph.run(
            state,
            max_steps=self.config.max_steps,
            before_step=self._before_step,
            after_step=self._after_step,
        )
        stats = final.get_statistics()
        logger.info(
            f"Workflow finished for thread {final.thread_id}: "
            f"{' -> '.join(final.node_sequence)} "
            f"(confidence {final.confidence:.2f}, {stats['processing_time_ms']}ms)"
        )
        return final

    async def _before_step(self, step: str, state: WorkflowState) -> None:
        await self._emit_workflow(state, step, {"status": "started"})

    async def _after_step(self, step: str, state: WorkflowState) -> None:
        if step == END:
            await self._emit_workflow(
                state, step, {"confidence": state.confidence, **state.get_statistics()}, event=WORKFLOW_COMPLETE
            )
        else:
            await self._emit_workflow(state, step, {"status": "completed", "confidence": state.confidence})
        if self.checkpoints is not None and self.config.checkpointing_enabled:
            await self.checkpoints.save(state, step, namespace=self.config.checkpoint_namespace)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def analyze_query(self, state: WorkflowState) -> WorkflowState:
        intent = await self._extract_intent(state.query)
        logger.info(
            f"Query intent ({intent.source}): primary={intent.primary_handler}, "
            f"secondary={list(intent.secondary_handlers)}, complexity={intent.complexity}"
        )
        return state.update(metadata={"intent": intent.to_dict(), "query_type": intent.query_type})

    async def _extract_intent(self, query: str) -> QueryIntent:
        if self.model_client is None:
            return guess_intent(query, self.router)

        handlers = "\n".join(f"- {p.name}: {p.description}" for p in self.router.profiles)
        try:
            reply = await asyncio.wait_for(
                self.model_client.invoke(ANALYSIS_SYSTEM_PROMPT, ANALYSIS_PROMPT.format(query=query, handlers=handlers)),
                timeout=self.config.analysis_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Query analysis timed out after {self.config.analysis_timeout}s; using keyword analysis")
            return guess_intent(query, self.router)
        except Exception as e:
            logger.warning(f"Query analysis failed ({type(e).__name__}: {e}); using keyword analysis")
            return guess_intent(query, self.router)

        decoded = decode_json_reply(reply, schema=INTENT_SCHEMA)
        if decoded.stage == "default":
            logger.warning("Query analysis reply was not usable JSON; using keyword analysis")
            return guess_intent(query, self.router)

        data = decoded.data
        known = set(self.router.handler_names)
        primary = data.get("primary_handler")
        complexity = str(data.get("complexity", "simple")).lower()
        return QueryIntent(
            primary_handler=primary if primary in known else None,
            secondary_handlers=tuple(h for h in data.get("secondary_handlers") or () if h in known),
            query_type=str(data.get("query_type") or detect_query_type(query)),
            complexity=complexity if complexity in COMPLEXITY_LEVELS else "simple",
            requires_multiple=bool(data.get("requires_multiple", False)),
            entities=normalize_entities(data.get("entities"), query),
            source="model",
        )

    async def route(self, state: WorkflowState) -> WorkflowState:
        intent = self._intent(state)
        errors: List[str] = []
        try:
            decision = await self.router.route(state.query, state.user_context)
        except Exception as e:
            logger.warning(f"Routing failed ({type(e).__name__}: {e}); using keyword-only routing")
            errors.append(f"Routing failed: {e}")
            decision = self.router.route_by_keywords_only(state.query)

        decision = decision.with_complexity(intent.is_complex)
        secondary = self._secondary_handlers(decision, intent)
        return state.update(
            selected_handler=decision.handler,
            secondary_handlers=secondary,
            confidence=decision.confidence,
            errors=errors,
            metadata={"routing_reason": decision.reason, "routing": decision.to_dict()},
        )

    def _secondary_handlers(self, decision: RoutingDecision, intent: QueryIntent) -> List[str]:
        if not intent.requires_multiple:
            return []
        secondary: List[str] = []
        for name in intent.secondary_handlers:
            if name != decision.handler and name not in secondary and name in self.registry:
                secondary.append(name)
        return secondary

    async def execute(self, state: WorkflowState) -> WorkflowState:
        names = [state.selected_handler, *state.secondary_handlers]
        try:
            handlers = [(name, self.registry.require(name)) for name in names]
        except UnknownHandlerError as e:
            logger.error(str(e))
            return state.update(errors=[str(e)], metadata={"fatal_error": e.error_code})

        intent = self._intent(state)
        concurrent = len(handlers) > 1 and not state.metadata.get("routing", {}).get("complex", False)
        if concurrent:
            tasks = [self._spawn(self._invoke_handler(state, name, handler, intent)) for name, handler in handlers]
            results = list(await asyncio.shield(asyncio.gather(*tasks)))
        else:
            results = []
            for name, handler in handlers:
                results.append(await asyncio.shield(self._spawn(self._invoke_handler(state, name, handler, intent))))

        failed = [r for r in results if not r.success]
        return state.update(
            handler_results=results,
            errors=[f"{r.handler}: {r.error}" for r in failed],
            metadata={"execution_mode": "concurrent" if concurrent else "sequential"},
        )

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _invoke_handler(self, state: WorkflowState, name: str, handler, intent: QueryIntent) -> HandlerResult:
        """Run one handler; failures become unsuccessful results, never exceptions."""
        await self._emit_handler(state, name, HANDLER_START, {})
        started = time.monotonic()
        error: Optional[str] = None
        output = None
        try:
            output = await asyncio.wait_for(handler.execute(state.query, intent), timeout=self.config.handler_timeout)
        except asyncio.TimeoutError:
            error = f"timed out after {self.config.handler_timeout}s"
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
        else:
            if output.error:
                error = output.error
        duration_ms = int((time.monotonic() - started) * 1000)

        if error is not None:
            failure = HandlerFailure(error, handler_name=name, thread_id=state.thread_id)
            logger.warning(str(failure))
            await self._emit_handler(state, name, HANDLER_ERROR, {"error": error, "duration_ms": duration_ms})
            return HandlerResult(handler=name, success=False, error=error, duration_ms=duration_ms)

        confidence = clamp_confidence(output.confidence)
        await self._emit_handler(state, name, HANDLER_COMPLETE, {"confidence": confidence, "duration_ms": duration_ms})
        return HandlerResult(
            handler=name,
            output=output.output,
            confidence=confidence,
            success=True,
            duration_ms=duration_ms,
        )

    async def synthesize(self, state: WorkflowState) -> WorkflowState:
        successes = state.successful_results
        if not successes:
            logger.warning(f"No handler succeeded for thread {state.thread_id}")
            return state.update(errors=["No handler produced a result"], metadata={"synthesis_method": "none"})

        handlers_used = [r.handler for r in successes]
        if len(successes) == 1 and successes[0].confidence > self.config.direct_confidence_threshold:
            return state.update(
                final_response=successes[0].output,
                confidence=successes[0].confidence,
                metadata={"synthesis_method": "direct", "handlers_used": handlers_used},
            )

        try:
            response = await self._enhance(state, successes)
        except SynthesisFailure as e:
            logger.warning(str(e))
            return state.update(
                final_response=successes[0].output,
                confidence=self.config.enhancement_fallback_confidence,
                errors=[str(e)],
                metadata={"synthesis_method": "fallback", "handlers_used": handlers_used},
            )

        mean = sum(r.confidence for r in successes) / len(successes)
        if len(successes) == 1:
            # A lone low-confidence answer is not raised above the fallback level
            confidence = min(mean, self.config.enhancement_fallback_confidence)
        else:
            confidence = mean + min(0.1, 0.05 * (len(successes) - 1))
        return state.update(
            final_response=response,
            confidence=confidence,
            metadata={"synthesis_method": "enhanced", "handlers_used": handlers_used},
        )

    async def _enhance(self, state: WorkflowState, successes: List[HandlerResult]) -> str:
        if self.model_client is None:
            raise SynthesisFailure("No model client available for synthesis", thread_id=state.thread_id)
        results = "\n\n".join(f"[{r.handler}] (confidence {r.confidence:.2f})\n{r.output}" for r in successes)
        try:
            response = await asyncio.wait_for(
                self.model_client.invoke(SYNTHESIS_SYSTEM_PROMPT, SYNTHESIS_PROMPT.format(query=state.query, results=results)),
                timeout=self.config.synthesis_timeout,
            )
        except asyncio.TimeoutError as e:
            raise SynthesisFailure(
                f"Synthesis timed out after {self.config.synthesis_timeout}s", thread_id=state.thread_id
            ) from e
        except Exception as e:
            raise SynthesisFailure(f"Synthesis failed: {e}", thread_id=state.thread_id) from e
        if not response or not response.strip():
            raise SynthesisFailure("Synthesis returned an empty response", thread_id=state.thread_id)
        return response.strip()

    async def error(self, state: WorkflowState) -> WorkflowState:
        logger.error(f"Workflow for thread {state.thread_id} failed: {'; '.join(state.errors) or 'unknown error'}")
        return state.update(
            final_response=APOLOGY,
            confidence=min(state.confidence, self.config.error_confidence),
            metadata={"synthesis_method": "error", "failed": True},
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _intent(state: WorkflowState) -> QueryIntent:
        return QueryIntent.from_dict(state.metadata.get("intent") or {})

    async def _emit_workflow(self, state: WorkflowState, step: str, data: Dict[str, Any], **kwargs) -> None:
        if self.broadcaster is None:
            return
        try:
            await self.broadcaster.stream_workflow_state(state.thread_id, step, data, **kwargs)
        except Exception as e:
            logger.warning(f"Failed to publish workflow event for {state.thread_id}: {e}")

    async def _emit_handler(self, state: WorkflowState, handler: str, event: str, data: Dict[str, Any]) -> None:
        if self.broadcaster is None:
            return
        try:
            await self.broadcaster.stream_handler_event(state.thread_id, handler, event, data)
        except Exception as e:
            logger.warning(f"Failed to publish handler event for {state.thread_id}: {e}")

    def get_workflow_info(self) -> Dict[str, Any]:
        return {
            "steps": list(self.graph.steps),
            "handlers": self.registry.names(),
            "checkpointing": self.checkpoints is not None and self.config.checkpointing_enabled,
            "inflight_handlers": len(self._inflight),
        }
