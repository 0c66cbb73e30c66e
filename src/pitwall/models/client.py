"""
Language model clients.

The engine treats the model as an opaque ``invoke(system_prompt, user_prompt)
-> text`` call. ``OpenAICompatibleClient`` implements it against any
chat-completions endpoint with aiohttp, wrapping each request in the retry
policy and a circuit breaker. Every transport, status or timeout problem
surfaces as ModelError.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import aiohttp

from ..config import ModelConfig, RetryConfig
from ..exceptions import ModelError
from ..utils.resilience import RETRYABLE_STATUS_CODES, CircuitBreaker, retry_with_backoff

logger = logging.getLogger(__name__)


class ModelClient(ABC):
    """Opaque text-in, text-out model call."""

    @abstractmethod
    async def invoke(self, system_prompt: str, user_prompt: str) -> str:
        """
        Run one completion.

        Raises:
            ModelError: On transport failure, timeout or an error status
        """

    async def close(self) -> None:
        """Release network resources. Default: nothing to release."""


class OpenAICompatibleClient(ModelClient):
    """
    aiohttp client for OpenAI-compatible ``/chat/completions`` endpoints.

    Keeps one ClientSession for connection pooling. Requests are retried with
    exponential backoff on timeouts, connection errors and retryable statuses;
    repeated failures open the circuit breaker and subsequent calls fail fast.
    """

    def __init__(self, config: ModelConfig, retry_config: Optional[RetryConfig] = None):
        self.config = config
        self.retry_config = retry_config or RetryConfig()
        self.breaker = CircuitBreaker(f"model:{config.name}", self.retry_config)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=100,  # Total connection limit
                limit_per_host=30,  # Per-host connection limit
                ttl_dns_cache=300  # DNS cache timeout
            )
            self._session = aiohttp.ClientSession(connector=connector)
        return self._session

    def get_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def get_endpoint_url(self) -> str:
        return f"{self.config.base_url.rstrip('/')}/chat/completions"

    def format_request_payload(self, system_prompt: str, user_prompt: str) -> Dict[str, Any]:
        messages: List[Dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})
        return {
            "model": self.config.name,
            "messages": messages,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }

    @staticmethod
    def extract_content(data: Dict[str, Any]) -> str:
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ModelError(
                f"Malformed completion response: missing {e}", is_retryable=False
            ) from e
        if not isinstance(content, str):
            raise ModelError("Completion content is not text", is_retryable=False)
        return content

    async def _request_once(self, system_prompt: str, user_prompt: str) -> str:
        session = await self._ensure_session()
        try:
            async with session.post(
                self.get_endpoint_url(),
                headers=self.get_headers(),
                json=self.format_request_payload(system_prompt, user_prompt),
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
            ) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise ModelError(
                        f"Model endpoint returned {response.status}: {body[:200]}",
                        status_code=response.status,
                        is_retryable=response.status in RETRYABLE_STATUS_CODES,
                    )
                data = await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise ModelError(f"Model request timed out after {self.config.timeout}s") from e
        except aiohttp.ClientError as e:
            raise ModelError(f"Model transport error: {e}") from e
        return self.extract_content(data)

    async def invoke(self, system_prompt: str, user_prompt: str) -> str:
        start = time.time()

        async def attempt() -> str:
            return await self.breaker.call(lambda: self._request_once(system_prompt, user_prompt))

        content = await retry_with_backoff(
            attempt, self.retry_config, operation=f"model call ({self.config.name})"
        )
        logger.debug(f"Model {self.config.name} replied in {time.time() - start:.2f}s")
        return content

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
