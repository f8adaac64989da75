"""
Base provider caller for OpenAI-compatible chat completion endpoints.
"""

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from captionrelay.errors import NetworkError

logger = logging.getLogger(__name__)

_TRAILING_V1 = re.compile(r"/v1$", re.IGNORECASE)


def normalize_base_url(api_url: str | None) -> str:
    """
    Strip trailing slashes and a trailing /v1 segment.

    "https://host/v1/", "https://host/v1" and "https://host" all become
    "https://host".
    """
    if not api_url:
        return ""
    trimmed = api_url.strip().rstrip("/")
    return _TRAILING_V1.sub("", trimmed)


def parse_body(text: str) -> Any:
    """Decode a JSON body, wrapping anything unparsable as {"raw": text}."""
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return {"raw": text}


@dataclass
class ProviderResponse:
    """HTTP status plus parsed body of one provider call."""

    status: int
    json: Any

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class ProviderCaller(ABC):
    """
    Abstract base class for provider callers.

    One call is one HTTP request: no retries happen here, the dispatch
    engine decides whether to try again.
    """

    @abstractmethod
    async def _post_chat(
        self,
        base_url: str,
        api_key: str,
        body: dict[str, Any],
        timeout: float | None,
    ) -> ProviderResponse:
        """
        Send one chat completion request. Must be implemented by subclasses.

        Args:
            base_url: Normalized base URL (no trailing /v1)
            api_key: Bearer key, "" to send unauthenticated
            body: JSON request body
            timeout: Seconds, or None for no limit

        Returns:
            ProviderResponse, also for non-2xx statuses

        Raises:
            NetworkError: On connection failure or timeout
        """
        pass

    async def call(
        self,
        base_url: str,
        api_key: str,
        body: dict[str, Any],
        timeout_ms: float = 0,
    ) -> ProviderResponse:
        """
        POST {base}/v1/chat/completions with a wall-clock budget.

        A timeout_ms of 0 or less means no local timeout.
        """
        normalized = normalize_base_url(base_url)
        timeout = timeout_ms / 1000 if timeout_ms and timeout_ms > 0 else None
        coro = self._post_chat(normalized, api_key, body, timeout)
        if timeout is None:
            return await coro
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise NetworkError(f"Request timed out after {timeout:g}s") from e

    async def list_models(self, base_url: str, api_key: str = "") -> ProviderResponse:
        """List models offered by an endpoint. Optional for subclasses."""
        raise NotImplementedError(f"{type(self).__name__} cannot list models")

    async def close(self) -> None:
        """Release transport resources."""

    async def __aenter__(self) -> "ProviderCaller":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
