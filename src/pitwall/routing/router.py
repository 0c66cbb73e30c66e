"""
Multi-tier query router.

The Router maps a query (plus optional user context) to a handler name and a
confidence. Tiers are evaluated in strict order and the first one whose
confidence reaches its threshold wins:

1. Explicit mention of a handler's domain ("driver analysis")
2. Keyword density scoring
3. User-context affinity (preferred analysis type, favourite drivers/teams)
4. Model-backed classification, bounded by a timeout
5. Fallback to the default handler

Model-tier failures (timeout, transport error, unparseable or unknown reply)
are logged and skip the tier. Malformed user context raises TypeError; the
workflow engine recovers with ``route_by_keywords_only``.
"""

import asyncio
import json
import logging
import re
from collections import Counter
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from ..config import RouterConfig
from ..exceptions import ConfigurationError, ModelError, RoutingTierFailure
from ..models.client import ModelClient
from ..state import clamp_confidence
from ..utils.parsing import decode_json_reply
from .types import DEFAULT_PROFILES, HandlerProfile, RoutingDecision, RoutingTier

logger = logging.getLogger(__name__)

ROUTER_SYSTEM_PROMPT = """You are an F1 query router. Analyze the query and determine which specialized handler should answer it.

Available handlers:
{handlers}

Respond with JSON: {{"handler": "handler_name", "confidence": 0.0-1.0, "reason": "explanation"}}"""

# Handlers the context tier maps favourite drivers and teams to.
DRIVER_AFFINITY_HANDLER = "driver"
TEAM_AFFINITY_HANDLER = "season"


def _keyword_pattern(keyword: str) -> re.Pattern:
    # Word-prefix match: "race" matches "races" but not "embrace"
    return re.compile(r"\b" + re.escape(keyword.lower()))


class Router:
    """
    Multi-tier router over a read-only handler table.

    Args:
        profiles: Routing table, in declaration order (also the tie-break
            order and the "most common" order used by the fallback)
        model_client: Optional model for the classification tier
        config: Thresholds, fixed confidences and the model timeout
    """

    def __init__(
        self,
        profiles: Optional[Sequence[HandlerProfile]] = None,
        model_client: Optional[ModelClient] = None,
        config: Optional[RouterConfig] = None,
    ):
        self.config = config or RouterConfig()
        self.profiles: List[HandlerProfile] = list(profiles if profiles is not None else DEFAULT_PROFILES)
        if not self.profiles:
            raise ConfigurationError("Router needs at least one handler profile", config_key="profiles")
        names = [p.name for p in self.profiles]
        if len(set(names)) != len(names):
            raise ConfigurationError("Duplicate handler names in routing table", config_key="profiles")
        if self.config.default_handler not in names:
            raise ConfigurationError(
                f"Default handler '{self.config.default_handler}' is not in the routing table",
                config_key="default_handler",
            )
        self.model_client = model_client

        self._by_name = {p.name: p for p in self.profiles}
        self._patterns = {p.name: [(kw, _keyword_pattern(kw)) for kw in p.keywords] for p in self.profiles}

        self._tier_counts: Counter = Counter()
        self._handler_counts: Counter = Counter()
        self._confidence_total = 0.0
        logger.info(f"Router initialized with handlers: {', '.join(names)}")

    @property
    def handler_names(self) -> List[str]:
        return [p.name for p in self.profiles]

    @property
    def most_common_handlers(self) -> List[str]:
        """Two non-default handlers in declaration order."""
        return [n for n in self.handler_names if n != self.config.default_handler][:2]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def route(self, query: str, user_context: Optional[Mapping[str, Any]] = None) -> RoutingDecision:
        """
        Select a handler for ``query``.

        Args:
            query: Sanitized query text
            user_context: Optional user preferences

        Returns:
            A validated RoutingDecision

        Raises:
            TypeError: If user_context is malformed
        """
        user_context = user_context or {}
        if not isinstance(user_context, Mapping):
            raise TypeError(f"user_context must be a mapping, got {type(user_context).__name__}")

        decision = self._route_explicit(query)
        if decision is None or decision.confidence < self.config.explicit_threshold:
            decision = self._route_keywords(query)
            if decision is None or decision.confidence < self.config.keyword_threshold:
                decision = self._route_context(query, user_context)
                if decision is None or decision.confidence < self.config.context_threshold:
                    decision = await self._route_model(query, user_context)
                    if decision is None or decision.confidence < self.config.model_threshold:
                        decision = self.fallback_decision()

        if not self.validate_decision(decision):
            logger.warning(f"Rejected invalid routing decision {decision}; using fallback")
            decision = self.fallback_decision()
        self._record(decision)
        logger.info(
            f"Routed query to '{decision.handler}' via {decision.tier.value} "
            f"(confidence {decision.confidence:.2f})"
        )
        return decision

    def route_by_keywords_only(self, query: str) -> RoutingDecision:
        """Recovery path: best keyword match regardless of threshold, else fallback."""
        decision = self._route_keywords(query if isinstance(query, str) else str(query))
        if decision is None:
            decision = self.fallback_decision()
        else:
            decision = RoutingDecision(
                handler=decision.handler,
                confidence=decision.confidence,
                reason=f"Keyword-only recovery: {decision.reason}",
                alternatives=decision.alternatives,
                tier=RoutingTier.KEYWORD_ONLY,
            )
        self._record(decision)
        return decision

    def validate_decision(self, decision: Optional[RoutingDecision]) -> bool:
        if decision is None:
            return False
        if decision.handler not in self._by_name:
            return False
        return 0.0 <= decision.confidence <= 1.0

    def fallback_decision(self) -> RoutingDecision:
        return RoutingDecision(
            handler=self.config.default_handler,
            confidence=self.config.fallback_confidence,
            reason="no clear match",
            alternatives=tuple(self.most_common_handlers),
            tier=RoutingTier.FALLBACK,
        )

    def get_routing_stats(self) -> Dict[str, Any]:
        total = sum(self._tier_counts.values())
        return {
            "total_routes": total,
            "by_tier": dict(self._tier_counts),
            "by_handler": dict(self._handler_counts),
            "average_confidence": self._confidence_total / total if total else 0.0,
        }

    # ------------------------------------------------------------------
    # Tiers
    # ------------------------------------------------------------------

    def _route_explicit(self, query: str) -> Optional[RoutingDecision]:
        lower = query.lower()
        for profile in self.profiles:
            if any(mention in lower for mention in profile.explicit_mentions):
                return RoutingDecision(
                    handler=profile.name,
                    confidence=self.config.explicit_confidence,
                    reason=f"Explicit mention of {profile.name} analysis",
                    tier=RoutingTier.EXPLICIT,
                )
        return None

    def score_keywords(self, query: str) -> List[Tuple[float, str, List[str]]]:
        """
        Keyword scores for every handler with at least one match.

        Returns:
            (confidence, handler, matched keywords) tuples, best first; equal
            confidences keep declaration order
        """
        lower = query.lower()
        scored = []
        for profile in self.profiles:
            matched = [kw for kw, pattern in self._patterns[profile.name] if pattern.search(lower)]
            if not matched:
                continue
            density = len(matched) / len(profile.keywords)
            confidence = min(profile.base_confidence, density * 0.8 + 0.2)
            scored.append((confidence, profile.name, matched))
        # sort() is stable
        scored.sort(key=lambda item: item[0], reverse=True)
        return scored

    def _route_keywords(self, query: str) -> Optional[RoutingDecision]:
        scored = self.score_keywords(query)
        if not scored:
            return None
        confidence, name, matched = scored[0]
        return RoutingDecision(
            handler=name,
            confidence=confidence,
            reason=f"Keyword match: {', '.join(matched)}",
            alternatives=tuple(n for _, n, _ in scored[1:3]),
            tier=RoutingTier.KEYWORD,
        )

    def _route_context(self, query: str, user_context: Mapping[str, Any]) -> Optional[RoutingDecision]:
        if not user_context:
            return None
        lower = query.lower()
        best: Optional[RoutingDecision] = None

        def consider(handler: str, confidence: float, reason: str) -> None:
            nonlocal best
            if handler in self._by_name and (best is None or confidence > best.confidence):
                best = RoutingDecision(handler=handler, confidence=confidence, reason=reason, tier=RoutingTier.CONTEXT)

        preferences = user_context.get("analysis_preferences") or {}
        if not isinstance(preferences, Mapping):
            raise TypeError("analysis_preferences must be a mapping")
        favorite_type = preferences.get("favorite_analysis_type")
        if favorite_type:
            consider(str(favorite_type), 0.6, "User analysis preference")

        drivers = self._string_list(user_context, "favorite_drivers")
        if any(d.lower() in lower for d in drivers if d):
            consider(DRIVER_AFFINITY_HANDLER, 0.7, "Query mentions user's favorite driver")

        teams = self._string_list(user_context, "favorite_teams")
        if any(t.lower() in lower for t in teams if t):
            consider(TEAM_AFFINITY_HANDLER, 0.6, "Query mentions user's favorite team")

        return best

    @staticmethod
    def _string_list(user_context: Mapping[str, Any], key: str) -> List[str]:
        value = user_context.get(key) or []
        if isinstance(value, str) or not isinstance(value, (list, tuple)):
            raise TypeError(f"{key} must be a list of strings")
        return [str(v) for v in value]

    async def _route_model(self, query: str, user_context: Mapping[str, Any]) -> Optional[RoutingDecision]:
        if self.model_client is None or not self.config.model_tier_enabled:
            return None
        try:
            return await asyncio.wait_for(
                self._classify_with_model(query, user_context), timeout=self.config.model_timeout
            )
        except asyncio.TimeoutError:
            failure = RoutingTierFailure(
                f"Model classification timed out after {self.config.model_timeout}s", tier=RoutingTier.MODEL.value
            )
        except ModelError as e:
            failure = RoutingTierFailure(f"Model classification failed: {e}", tier=RoutingTier.MODEL.value)
        except RoutingTierFailure as e:
            failure = e
        except Exception as e:
            failure = RoutingTierFailure(f"Model classification raised {type(e).__name__}: {e}", tier=RoutingTier.MODEL.value)
        logger.warning(f"Router tier skipped: {failure}")
        return None

    async def _classify_with_model(self, query: str, user_context: Mapping[str, Any]) -> RoutingDecision:
        handlers = "\n".join(f"- {p.name}: {p.description}" for p in self.profiles)
        system_prompt = ROUTER_SYSTEM_PROMPT.format(handlers=handlers)
        user_prompt = (
            f'Query: "{query}"\n\n'
            f"User Context: {json.dumps(dict(user_context), indent=2, default=str)}\n\n"
            "Which handler should answer this query?"
        )
        reply = await self.model_client.invoke(system_prompt, user_prompt)
        decoded = decode_json_reply(reply)
        handler = decoded.data.get("handler") or decoded.data.get("agent")
        if not handler:
            raise RoutingTierFailure("Model reply did not name a handler", tier=RoutingTier.MODEL.value)
        if handler not in self._by_name:
            raise RoutingTierFailure(f"Model named unknown handler '{handler}'", tier=RoutingTier.MODEL.value)
        return RoutingDecision(
            handler=handler,
            confidence=clamp_confidence(decoded.data.get("confidence", 0.5)),
            reason=str(decoded.data.get("reason") or "Model contextual analysis"),
            tier=RoutingTier.MODEL,
        )

    def _record(self, decision: RoutingDecision) -> None:
        self._tier_counts[decision.tier.value] += 1
        self._handler_counts[decision.handler] += 1
        self._confidence_total += decision.confidence
