"""
Types shared by the router and the workflow engine.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Tuple


class RoutingTier(str, Enum):
    """Routing strategies, in evaluation order."""
    EXPLICIT = "explicit"
    KEYWORD = "keyword"
    CONTEXT = "context"
    MODEL = "model"
    FALLBACK = "fallback"
    KEYWORD_ONLY = "keyword_only"  # engine-side recovery after a router exception


@dataclass(frozen=True)
class RoutingDecision:
    """
    Outcome of one routing call.

    Attributes:
        handler: Name of the selected handler
        confidence: Confidence in [0, 1]
        reason: Human-readable explanation
        alternatives: Runner-up handler names, best first
        tier: Tier that produced the decision
        complex: Whether the query needs strictly sequential execution
    """

    handler: str
    confidence: float
    reason: str
    alternatives: Tuple[str, ...] = ()
    tier: RoutingTier = RoutingTier.FALLBACK
    complex: bool = False

    def with_complexity(self, complex: bool) -> "RoutingDecision":
        return replace(self, complex=complex)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "handler": self.handler,
            "confidence": self.confidence,
            "reason": self.reason,
            "alternatives": list(self.alternatives),
            "tier": self.tier.value,
            "complex": self.complex,
        }


@dataclass(frozen=True)
class HandlerProfile:
    """Routing table entry for one handler."""

    name: str
    description: str
    keywords: Tuple[str, ...]
    base_confidence: float
    explicit_mentions: Tuple[str, ...] = field(default_factory=tuple)


DEFAULT_PROFILES: List[HandlerProfile] = [
    HandlerProfile(
        name="season",
        description="Season and championship standings, constructor performance",
        keywords=("season", "championship", "standings", "constructor", "team", "points"),
        base_confidence=0.9,
        explicit_mentions=("season analysis", "championship analysis", "constructor analysis"),
    ),
    HandlerProfile(
        name="driver",
        description="Individual driver performance, career analysis, comparisons",
        keywords=("driver", "hamilton", "verstappen", "leclerc", "norris", "performance"),
        base_confidence=0.9,
        explicit_mentions=("driver analysis", "driver performance", "driver comparison"),
    ),
    HandlerProfile(
        name="race",
        description="Race strategy, circuit analysis, qualifying, race-specific insights",
        keywords=("race", "circuit", "strategy", "qualifying", "lap", "monaco", "silverstone"),
        base_confidence=0.85,
        explicit_mentions=("race analysis", "race strategy", "circuit analysis"),
    ),
    HandlerProfile(
        name="championship",
        description="Championship predictions, probability calculations, forecasts",
        keywords=("predict", "forecast", "winner", "champion", "probability", "outcome"),
        base_confidence=0.8,
        explicit_mentions=("championship prediction", "title prediction", "championship forecast"),
    ),
    HandlerProfile(
        name="historical",
        description="Cross-era comparisons, historical data, legacy analysis",
        keywords=("compare", "historical", "era", "legacy", "evolution", "schumacher", "senna"),
        base_confidence=0.8,
        explicit_mentions=("historical analysis", "historical comparison", "era comparison"),
    ),
]
