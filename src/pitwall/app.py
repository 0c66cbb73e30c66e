"""
Application entry point: wires the components together and exposes
``process_query``.

No component is global. ``Pitwall`` builds (or accepts) the model and data
clients, handler registry, router, checkpoint manager, event broadcaster,
conversation memory and workflow engine, and ties their lifecycles to
``start``/``stop``.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from .checkpoint.manager import CheckpointManager
from .config import PitwallConfig
from .data.client import F1DataClient
from .engine.workflow import APOLOGY, WorkflowEngine
from .exceptions import PitwallError
from .handlers.analysis import DEFAULT_HANDLER_CLASSES
from .handlers.registry import HandlerRegistry
from .memory.conversation import ConversationMemory, Message
from .models.client import ModelClient, OpenAICompatibleClient
from .routing.router import Router
from .state import WorkflowState
from .streaming.broadcaster import EventBroadcaster
from .streaming.events import QUERY_COMPLETE, QUERY_ERROR, QUERY_START
from .utils.query import generate_thread_id, sanitize_query, sanitize_user_context

logger = logging.getLogger(__name__)

INVALID_QUERY_RESPONSE = "Please provide an F1 question of at most 2000 characters."


class Pitwall:
    """
    F1 query orchestration application.

    Args:
        config: Aggregate configuration (defaults when omitted)
        model_client: Model used by the router, engine and handlers
        data_client: F1 data API client used by the default handlers
        registry: Handlers by name; the five default handlers when omitted
        checkpoints: Checkpoint manager; built from config when omitted
        broadcaster: Event broadcaster; built from config when omitted
        memory: Conversation memory; built from config when omitted
        use_memory: Set False to skip the conversation log entirely
    """

    def __init__(
        self,
        config: Optional[PitwallConfig] = None,
        model_client: Optional[ModelClient] = None,
        data_client: Optional[F1DataClient] = None,
        registry: Optional[HandlerRegistry] = None,
        checkpoints: Optional[CheckpointManager] = None,
        broadcaster: Optional[EventBroadcaster] = None,
        memory: Optional[ConversationMemory] = None,
        use_memory: bool = True,
    ):
        self.config = config or PitwallConfig()
        self.model_client = model_client or OpenAICompatibleClient(self.config.model, self.config.retry)
        self.data_client = data_client or F1DataClient(self.config.data)

        if registry is None:
            registry = HandlerRegistry()
            for handler_cls in DEFAULT_HANDLER_CLASSES:
                registry.register(handler_cls(self.model_client, self.data_client))
        self.registry = registry

        self.router = Router(model_client=self.model_client, config=self.config.router)
        self.checkpoints = checkpoints or CheckpointManager(config=self.config.checkpoint)
        self.broadcaster = broadcaster or EventBroadcaster(self.config.streaming)
        self.memory = memory if memory is not None else (ConversationMemory(self.config.memory) if use_memory else None)
        self.engine = WorkflowEngine(
            router=self.router,
            registry=self.registry,
            model_client=self.model_client,
            checkpoints=self.checkpoints if self.config.engine.checkpointing_enabled else None,
            broadcaster=self.broadcaster,
            config=self.config.engine,
        )
        self._started = False

    @classmethod
    def from_config(cls, data: Optional[Dict[str, Any]] = None, **kwargs) -> "Pitwall":
        """Build from a nested config dict (see ``PitwallConfig.from_dict``)."""
        return cls(config=PitwallConfig.from_dict(data), **kwargs)

    @classmethod
    def from_env(cls, **kwargs) -> "Pitwall":
        return cls(config=PitwallConfig.from_env(), **kwargs)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        await self.checkpoints.start()
        if self.memory is not None:
            await self.memory.setup()
        await self.broadcaster.start()
        self._started = True
        logger.info(f"Pitwall started with handlers: {', '.join(self.registry.names())}")

    async def stop(self) -> None:
        if not self._started:
            return
        await self.broadcaster.stop()
        await self.checkpoints.stop()
        if self.memory is not None:
            await self.memory.close()
        await self.registry.close()
        await self.data_client.close()
        await self.model_client.close()
        self._started = False
        logger.info("Pitwall stopped")

    async def __aenter__(self) -> "Pitwall":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def process_query(
        self,
        query: Any,
        thread_id: Optional[str] = None,
        user_context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Answer one query. Never raises (except on cancellation).

        Returns:
            ``{success, thread_id, response, confidence, metadata}`` plus
            ``error`` when the query could not be answered
        """
        thread_id = thread_id or generate_thread_id()
        started = time.monotonic()

        try:
            clean_query = sanitize_query(query)
        except ValueError as e:
            logger.warning(f"Rejected query for thread {thread_id}: {e}")
            return {
                "success": False,
                "thread_id": thread_id,
                "response": INVALID_QUERY_RESPONSE,
                "confidence": 0.0,
                "metadata": {"processing_time_ms": 0},
                "error": str(e),
            }
        context = sanitize_user_context(user_context)

        await self.broadcaster.stream_query_processing(thread_id, QUERY_START, {"query": clean_query})
        try:
            final = await self.engine.run(WorkflowState.create(thread_id, clean_query, context))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Workflow failed for thread {thread_id}: {e}")
            code = e.error_code if isinstance(e, PitwallError) else "INTERNAL_ERROR"
            result = {
                "success": False,
                "thread_id": thread_id,
                "response": APOLOGY,
                "confidence": 0.0,
                "metadata": {"processing_time_ms": int((time.monotonic() - started) * 1000)},
                "error": code,
            }
            await self.broadcaster.stream_query_processing(thread_id, QUERY_ERROR, {"error": code})
            await self._remember(thread_id, clean_query, result, context)
            return result

        result = self._build_result(final, started)
        await self.broadcaster.stream_query_processing(
            thread_id,
            QUERY_COMPLETE,
            {"success": result["success"], "confidence": result["confidence"], "handler": final.selected_handler},
        )
        await self._remember(thread_id, clean_query, result, context)
        return result

    @staticmethod
    def _build_result(final: WorkflowState, started: float) -> Dict[str, Any]:
        failed = bool(final.metadata.get("failed"))
        routing = final.metadata.get("routing") or {}
        result = {
            "success": not failed,
            "thread_id": final.thread_id,
            "response": final.final_response,
            "confidence": final.confidence,
            "metadata": {
                "handler": final.selected_handler,
                "secondary_handlers": list(final.secondary_handlers),
                "handlers_used": final.metadata.get("handlers_used", []),
                "routing_reason": final.metadata.get("routing_reason"),
                "routing_tier": routing.get("tier"),
                "synthesis_method": final.metadata.get("synthesis_method"),
                "query_type": final.metadata.get("query_type"),
                "node_sequence": list(final.node_sequence),
                "error_count": len(final.errors),
                "processing_time_ms": int((time.monotonic() - started) * 1000),
            },
        }
        if failed:
            result["error"] = "ANALYSIS_FAILED"
        return result

    async def _remember(self, thread_id: str, query: str, result: Dict[str, Any], context: Dict[str, Any]) -> None:
        if self.memory is None:
            return
        try:
            await self.memory.save_exchange(thread_id, query, result, user_context=context)
        except Exception as e:
            logger.warning(f"Failed to save conversation for thread {thread_id}: {e}")

    # ------------------------------------------------------------------
    # History, maintenance and health
    # ------------------------------------------------------------------

    async def get_history(self, thread_id: str, limit: int = 50, offset: int = 0) -> List[Message]:
        if self.memory is None:
            return []
        return await self.memory.get_history(thread_id, limit=limit, offset=offset)

    async def get_thread_state(self, thread_id: str) -> Optional[WorkflowState]:
        """Latest checkpointed state of a thread."""
        return await self.checkpoints.load_latest(thread_id, self.config.engine.checkpoint_namespace)

    async def cleanup(self) -> Dict[str, int]:
        """Run checkpoint and conversation retention once."""
        checkpoints = await self.checkpoints.cleanup()
        conversations = 0
        if self.memory is not None:
            conversations = await self.memory.cleanup_old_conversations()
        return {"checkpoints": checkpoints, "conversations": conversations}

    async def get_health(self) -> Dict[str, Any]:
        health = {
            "status": "healthy",
            "handlers": self.registry.names(),
            "routing": self.router.get_routing_stats(),
            "streaming": self.broadcaster.get_connection_stats(),
            "checkpoints": await self.checkpoints.get_stats(),
            "data_api": await self.data_client.health_check(),
        }
        if self.memory is not None:
            health["memory"] = await self.memory.get_health()
            if health["memory"]["status"] != "healthy":
                health["status"] = "degraded"
        if health["data_api"].get("status") == "unhealthy":
            health["status"] = "degraded"
        await self.broadcaster.stream_health_event({"status": health["status"]})
        return health
