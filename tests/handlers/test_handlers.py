"""
Tests for the pitwall.handlers package.

This module tests:
- Handler registration, lookup and unknown-name errors
- The shared analysis flow (data gathering, prompting, scoring)
- Analysis handlers without a data-gathering step cannot be built
- Data requested by each default handler
"""

from unittest.mock import AsyncMock, Mock

import pytest

from pitwall.exceptions import ConfigurationError, UnknownHandlerError
from pitwall.handlers import (
    DEFAULT_HANDLER_CLASSES,
    AnalysisHandler,
    ChampionshipPredictorHandler,
    DriverPerformanceHandler,
    Handler,
    HandlerOutput,
    HandlerRegistry,
    HistoricalComparisonHandler,
    RaceStrategyHandler,
    SeasonAnalysisHandler,
)
from pitwall.routing import DEFAULT_PROFILES
from pitwall.state import QueryIntent


# =============================================================================
# Helpers
# =============================================================================

class EchoHandler(Handler):
    name = "echo"
    description = "Repeats the query"

    def __init__(self):
        self.closed = False

    async def execute(self, query: str, intent: QueryIntent) -> HandlerOutput:
        return HandlerOutput(output=query, confidence=1.0)

    async def close(self) -> None:
        self.closed = True


def api_result(tool: str, source: str = "api") -> dict:
    return {"success": True, "data": {"tool": tool}, "source": source, "tool": tool}


def make_data_client(source: str = "api") -> Mock:
    client = Mock()
    for method, tool in [
        ("get_seasons", "get_f1_seasons"),
        ("get_races", "get_f1_races"),
        ("get_drivers", "get_f1_drivers"),
        ("get_driver_standings", "get_f1_driver_standings"),
        ("get_constructor_standings", "get_f1_constructor_standings"),
    ]:
        setattr(client, method, AsyncMock(return_value=api_result(tool, source)))
    return client


def make_model(reply: str = "Verstappen leads by 63 points.") -> Mock:
    model = Mock()
    model.invoke = AsyncMock(return_value=reply)
    return model


def intent_for(*seasons: str) -> QueryIntent:
    return QueryIntent(entities={"seasons": list(seasons)})


# =============================================================================
# Registry Tests
# =============================================================================

class TestHandlerRegistry:
    """Tests for the handler registry."""

    def test_register_and_get(self):
        registry = HandlerRegistry()
        handler = EchoHandler()

        assert registry.register(handler) == "echo"
        assert registry.get("echo") is handler
        assert "echo" in registry
        assert len(registry) == 1
        assert registry.names() == ["echo"]

    def test_register_same_instance_twice(self):
        registry = HandlerRegistry()
        handler = EchoHandler()
        registry.register(handler)

        assert registry.register(handler) == "echo"

    def test_name_collision(self):
        registry = HandlerRegistry()
        registry.register(EchoHandler())

        with pytest.raises(ConfigurationError):
            registry.register(EchoHandler())

    def test_register_under_alias(self):
        registry = HandlerRegistry()

        assert registry.register(EchoHandler(), name="parrot") == "parrot"
        assert "echo" not in registry

    def test_require_unknown(self):
        registry = HandlerRegistry()
        registry.register(EchoHandler())

        with pytest.raises(UnknownHandlerError) as exc_info:
            registry.require("weather")

        assert exc_info.value.error_code == "UNKNOWN_HANDLER"
        assert exc_info.value.available_handlers == ["echo"]

    def test_unregister(self):
        registry = HandlerRegistry()
        registry.register(EchoHandler())

        registry.unregister("echo")
        registry.unregister("echo")

        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_execute_and_close(self):
        registry = HandlerRegistry()
        handler = EchoHandler()
        registry.register(handler)

        output = await registry.execute("echo", "box box", QueryIntent())
        await registry.close()

        assert output.output == "box box"
        assert output.ok
        assert handler.closed


# =============================================================================
# Analysis Handler Tests
# =============================================================================

class TestAnalysisHandler:
    """Tests for the shared fetch, prompt and score flow."""

    def test_default_handlers_match_routing_table(self):
        assert [cls.name for cls in DEFAULT_HANDLER_CLASSES] == [p.name for p in DEFAULT_PROFILES]

    @pytest.mark.asyncio
    async def test_execute(self):
        model = make_model()
        handler = SeasonAnalysisHandler(model, make_data_client())

        output = await handler.execute("2023 standings?", intent_for("2023"))

        assert output.output == "Verstappen leads by 63 points."
        assert output.confidence == pytest.approx(0.6)
        assert output.metadata["data_sources"] == ["api"]
        system_prompt, prompt = model.invoke.await_args.args
        assert system_prompt == SeasonAnalysisHandler.system_prompt
        assert "driver_standings_2023" in prompt

    @pytest.mark.asyncio
    async def test_mock_data_lowers_confidence(self):
        handler = SeasonAnalysisHandler(make_model(), make_data_client(source="mock"))

        output = await handler.execute("2023 standings?", intent_for("2023"))

        assert output.confidence == 0.5
        assert output.metadata["data_sources"] == ["mock"]

    @pytest.mark.asyncio
    async def test_empty_model_reply_is_an_error(self):
        handler = RaceStrategyHandler(make_model("   "), make_data_client())

        output = await handler.execute("monaco strategy", intent_for())

        assert not output.ok
        assert output.confidence == 0.0

    def test_score(self):
        data = {"a": api_result("x"), "b": api_result("y"), "c": api_result("z", source="mock")}

        assert SeasonAnalysisHandler.score("short", data) == pytest.approx(0.6)
        assert SeasonAnalysisHandler.score("x" * 501, data) == pytest.approx(0.7)

    def test_score_capped(self):
        data = {str(i): api_result(str(i)) for i in range(20)}

        assert SeasonAnalysisHandler.score("x" * 501, data) == 0.95

    def test_target_years(self):
        assert SeasonAnalysisHandler.target_years(intent_for("2021", "2008", "1994")) == [2021, 2008]
        assert len(SeasonAnalysisHandler.target_years(intent_for())) == 1

    def test_gather_data_must_be_overridden(self):
        class Incomplete(AnalysisHandler):
            name = "incomplete"

        with pytest.raises(TypeError):
            AnalysisHandler(make_model(), make_data_client())
        with pytest.raises(TypeError):
            Incomplete(make_model(), make_data_client())


class TestDataGathering:
    """Tests for the data each default handler requests."""

    @pytest.mark.asyncio
    async def test_driver_handler_fetches_each_season(self):
        data_client = make_data_client()
        handler = DriverPerformanceHandler(make_model(), data_client)

        data = await handler.gather_data(intent_for("2021", "2022"))

        assert set(data) == {"drivers_2021", "driver_standings_2021", "drivers_2022", "driver_standings_2022"}

    @pytest.mark.asyncio
    async def test_race_handler(self):
        data_client = make_data_client()
        handler = RaceStrategyHandler(make_model(), data_client)

        data = await handler.gather_data(intent_for("2024"))

        assert list(data) == ["races_2024"]
        data_client.get_races.assert_awaited_once_with(2024)

    @pytest.mark.asyncio
    async def test_championship_handler(self):
        handler = ChampionshipPredictorHandler(make_model(), make_data_client())

        data = await handler.gather_data(intent_for("2024"))

        assert set(data) == {"driver_standings_2024", "races_2024"}

    @pytest.mark.asyncio
    async def test_historical_handler(self):
        data_client = make_data_client()
        handler = HistoricalComparisonHandler(make_model(), data_client)

        data = await handler.gather_data(intent_for("1988"))

        assert set(data) == {"seasons", "driver_standings_1988"}
        data_client.get_seasons.assert_awaited_once()
