"""
Client for the upstream F1 data API.

Every read goes through ``invoke_tool``. Connection failures, timeouts and 5xx
responses never reach the caller: they are logged and answered with a fixed
mock payload, so handlers always receive a structured value. Results carry a
``source`` of ``"api"`` or ``"mock"`` so handlers can lower their confidence
on mock data.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

import aiohttp

from ..config import DataApiConfig

logger = logging.getLogger(__name__)


def _mock_payload(tool: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
    year = parameters.get("year", 2024)
    payloads = {
        "get_f1_seasons": {
            "seasons": [
                {"year": 2024, "races": 24},
                {"year": 2023, "races": 22},
                {"year": 2022, "races": 22},
            ]
        },
        "get_current_f1_season": {"season": 2024, "races": 24, "status": "active"},
        "get_f1_races": {
            "season": year,
            "races": [
                {"round": 1, "name": "Bahrain Grand Prix", "date": "2024-03-02"},
                {"round": 2, "name": "Saudi Arabian Grand Prix", "date": "2024-03-09"},
                {"round": 3, "name": "Australian Grand Prix", "date": "2024-03-24"},
            ],
        },
        "get_f1_drivers": {
            "season": year,
            "drivers": [
                {"name": "Max Verstappen", "team": "Red Bull Racing", "number": 1},
                {"name": "Lewis Hamilton", "team": "Mercedes", "number": 44},
                {"name": "Charles Leclerc", "team": "Ferrari", "number": 16},
            ],
        },
        "get_f1_constructors": {
            "season": year,
            "constructors": [
                {"name": "Red Bull Racing", "championships": 6},
                {"name": "Mercedes", "championships": 8},
                {"name": "Ferrari", "championships": 16},
            ],
        },
        "get_f1_driver_standings": {
            "season": year,
            "standings": [
                {"position": 1, "driver": "Max Verstappen", "points": 437},
                {"position": 2, "driver": "Lando Norris", "points": 374},
                {"position": 3, "driver": "Charles Leclerc", "points": 356},
            ],
        },
        "get_f1_constructor_standings": {
            "season": year,
            "standings": [
                {"position": 1, "constructor": "McLaren", "points": 666},
                {"position": 2, "constructor": "Ferrari", "points": 652},
                {"position": 3, "constructor": "Red Bull Racing", "points": 589},
            ],
        },
    }
    data = payloads.get(tool, {"message": f"Mock data for {tool}", "parameters": parameters})
    return {"success": True, "data": data, "source": "mock", "tool": tool}


class F1DataClient:
    """
    Read-only access to F1 seasons, races, drivers and standings.

    Args:
        config: Endpoint and timeout settings
        session: Optional shared aiohttp session (owned by the caller)
    """

    def __init__(self, config: Optional[DataApiConfig] = None, session: Optional[aiohttp.ClientSession] = None):
        self.config = config or DataApiConfig()
        self._session = session
        self._owns_session = session is None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                base_url=self.config.base_url,
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
            )
            self._owns_session = True
        return self._session

    async def _post(self, tool: str, parameters: Dict[str, Any]) -> Tuple[int, Any]:
        session = await self._ensure_session()
        async with session.post("/tools/invoke", json={"tool": tool, "parameters": parameters}) as response:
            if response.status >= 400:
                return response.status, await response.text()
            return response.status, await response.json(content_type=None)

    async def invoke_tool(self, tool: str, parameters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Call one data tool.

        Returns:
            ``{"success", "data", "source", "tool"}``; ``success`` is False only
            for client errors (4xx), which are not masked with mock data
        """
        parameters = parameters or {}
        try:
            status, body = await self._post(tool, parameters)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            return self._fallback(tool, parameters, f"connection failure: {e}")

        if status >= 500:
            return self._fallback(tool, parameters, f"server error {status}")
        if status >= 400:
            logger.warning(f"F1 data tool {tool} rejected request with {status}")
            return {"success": False, "data": None, "source": "api", "tool": tool, "error": f"HTTP {status}"}

        data = body.get("data", body) if isinstance(body, dict) else body
        return {"success": True, "data": data, "source": "api", "tool": tool}

    def _fallback(self, tool: str, parameters: Dict[str, Any], reason: str) -> Dict[str, Any]:
        if not self.config.mock_fallback:
            logger.warning(f"F1 data tool {tool} failed ({reason}); mock fallback disabled")
            return {"success": False, "data": None, "source": "api", "tool": tool, "error": reason}
        logger.warning(f"F1 data tool {tool} failed ({reason}), using mock data")
        return _mock_payload(tool, parameters)

    async def get_seasons(self) -> Dict[str, Any]:
        return await self.invoke_tool("get_f1_seasons")

    async def get_current_season(self) -> Dict[str, Any]:
        return await self.invoke_tool("get_current_f1_season")

    async def get_races(self, year: int) -> Dict[str, Any]:
        return await self.invoke_tool("get_f1_races", {"year": year})

    async def get_drivers(self, year: int) -> Dict[str, Any]:
        return await self.invoke_tool("get_f1_drivers", {"year": year})

    async def get_constructors(self, year: int) -> Dict[str, Any]:
        return await self.invoke_tool("get_f1_constructors", {"year": year})

    async def get_driver_standings(self, year: int) -> Dict[str, Any]:
        return await self.invoke_tool("get_f1_driver_standings", {"year": year})

    async def get_constructor_standings(self, year: int) -> Dict[str, Any]:
        return await self.invoke_tool("get_f1_constructor_standings", {"year": year})

    async def get_race_results(self, year: int, round_number: int) -> Dict[str, Any]:
        return await self.invoke_tool("get_f1_race_results", {"year": year, "round": round_number})

    async def health_check(self) -> Dict[str, Any]:
        result = await self.get_current_season()
        if not result["success"]:
            status = "unhealthy"
        else:
            status = "healthy" if result["source"] == "api" else "mock_healthy"
        return {
            "status": status,
            "base_url": self.config.base_url,
        }

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None
