from .analysis import (
    DEFAULT_HANDLER_CLASSES,
    AnalysisHandler,
    ChampionshipPredictorHandler,
    DriverPerformanceHandler,
    HistoricalComparisonHandler,
    RaceStrategyHandler,
    SeasonAnalysisHandler,
)
from .base import Handler, HandlerOutput
from .registry import HandlerRegistry

__all__ = [
    "Handler",
    "HandlerOutput",
    "HandlerRegistry",
    "AnalysisHandler",
    "SeasonAnalysisHandler",
    "DriverPerformanceHandler",
    "RaceStrategyHandler",
    "ChampionshipPredictorHandler",
    "HistoricalComparisonHandler",
    "DEFAULT_HANDLER_CLASSES",
]
