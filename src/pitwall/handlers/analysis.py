"""
F1 analysis handlers.

Each handler fetches the data it needs from the F1 data API, then asks the
model to answer the query from that data.
"""

import asyncio
import json
import logging
from abc import abstractmethod
from datetime import datetime
from typing import Any, Dict, List

from ..data.client import F1DataClient
from ..models.client import ModelClient
from ..state import QueryIntent
from .base import Handler, HandlerOutput

logger = logging.getLogger(__name__)

BASE_CONFIDENCE = 0.5
MAX_CONFIDENCE = 0.95


class AnalysisHandler(Handler):
    """
    Shared flow for the data-backed handlers: fetch, prompt, score.

    Subclasses set ``name``, ``description`` and ``system_prompt`` and
    implement ``gather_data``.
    """

    system_prompt: str = "You are an expert Formula 1 analyst."

    def __init__(self, model_client: ModelClient, data_client: F1DataClient):
        self.model_client = model_client
        self.data_client = data_client

    @abstractmethod
    async def gather_data(self, intent: QueryIntent) -> Dict[str, Dict[str, Any]]:
        """Return ``{label: data tool result}`` for the prompt."""

    @staticmethod
    def target_years(intent: QueryIntent, limit: int = 2) -> List[int]:
        seasons = [int(s) for s in intent.entities.get("seasons", []) if str(s).isdigit()]
        return seasons[:limit] or [datetime.now().year]

    def build_prompt(self, query: str, intent: QueryIntent, data: Dict[str, Dict[str, Any]]) -> str:
        payload = {label: result.get("data") for label, result in data.items()}
        return (
            f"Query: {query}\n\n"
            f"Entities: {json.dumps(intent.entities)}\n\n"
            f"Data:\n{json.dumps(payload, indent=2, default=str)}\n\n"
            "Answer the query using the data above. Be specific and cite numbers."
        )

    @staticmethod
    def score(output: str, data: Dict[str, Dict[str, Any]]) -> float:
        confidence = BASE_CONFIDENCE
        if len(output) > 500:
            confidence += 0.1
        confidence += 0.05 * sum(1 for result in data.values() if result.get("success") and result.get("source") == "api")
        return min(confidence, MAX_CONFIDENCE)

    async def execute(self, query: str, intent: QueryIntent) -> HandlerOutput:
        data = await self.gather_data(intent)
        output = await self.model_client.invoke(self.system_prompt, self.build_prompt(query, intent, data))
        if not output.strip():
            return HandlerOutput(output="", confidence=0.0, error=f"{self.name} handler produced no output")
        sources = sorted({result.get("source", "api") for result in data.values()})
        return HandlerOutput(
            output=output.strip(),
            confidence=self.score(output, data),
            metadata={"data_sources": sources, "tools": [r.get("tool") for r in data.values()]},
        )


class SeasonAnalysisHandler(AnalysisHandler):
    name = "season"
    description = "Season and championship standings, constructor performance"
    system_prompt = (
        "You are an expert Formula 1 season analyst. Explain standings, constructor "
        "performance and season trends."
    )

    async def gather_data(self, intent: QueryIntent) -> Dict[str, Dict[str, Any]]:
        year = self.target_years(intent, limit=1)[0]
        drivers, constructors = await asyncio.gather(
            self.data_client.get_driver_standings(year),
            self.data_client.get_constructor_standings(year),
        )
        return {f"driver_standings_{year}": drivers, f"constructor_standings_{year}": constructors}


class DriverPerformanceHandler(AnalysisHandler):
    name = "driver"
    description = "Individual driver performance, career analysis, comparisons"
    system_prompt = (
        "You are an expert Formula 1 driver performance analyst. Compare drivers on "
        "results, consistency and head-to-head record."
    )

    async def gather_data(self, intent: QueryIntent) -> Dict[str, Dict[str, Any]]:
        data = {}
        for year in self.target_years(intent):
            data[f"drivers_{year}"] = await self.data_client.get_drivers(year)
            data[f"driver_standings_{year}"] = await self.data_client.get_driver_standings(year)
        return data


class RaceStrategyHandler(AnalysisHandler):
    name = "race"
    description = "Race strategy, circuit analysis, qualifying, race-specific insights"
    system_prompt = (
        "You are an expert Formula 1 race strategist. Discuss circuits, tyre strategy, "
        "qualifying and race execution."
    )

    async def gather_data(self, intent: QueryIntent) -> Dict[str, Dict[str, Any]]:
        year = self.target_years(intent, limit=1)[0]
        return {f"races_{year}": await self.data_client.get_races(year)}


class ChampionshipPredictorHandler(AnalysisHandler):
    name = "championship"
    description = "Championship predictions, probability calculations, forecasts"
    system_prompt = (
        "You are a Formula 1 championship forecaster. Estimate title probabilities "
        "from the current standings and remaining races, stating your assumptions."
    )

    async def gather_data(self, intent: QueryIntent) -> Dict[str, Dict[str, Any]]:
        year = self.target_years(intent, limit=1)[0]
        standings, races = await asyncio.gather(
            self.data_client.get_driver_standings(year),
            self.data_client.get_races(year),
        )
        return {f"driver_standings_{year}": standings, f"races_{year}": races}


class HistoricalComparisonHandler(AnalysisHandler):
    name = "historical"
    description = "Cross-era comparisons, historical data, legacy analysis"
    system_prompt = (
        "You are a Formula 1 historian. Compare eras fairly, accounting for regulation "
        "and reliability changes."
    )

    async def gather_data(self, intent: QueryIntent) -> Dict[str, Dict[str, Any]]:
        data = {"seasons": await self.data_client.get_seasons()}
        for year in self.target_years(intent):
            data[f"driver_standings_{year}"] = await self.data_client.get_driver_standings(year)
        return data


DEFAULT_HANDLER_CLASSES = (
    SeasonAnalysisHandler,
    DriverPerformanceHandler,
    RaceStrategyHandler,
    ChampionshipPredictorHandler,
    HistoricalComparisonHandler,
)
