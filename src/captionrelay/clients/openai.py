"""
OpenAI-compatible provider caller.
"""

import logging
from typing import Any

import httpx
from openai import APIConnectionError, APIStatusError, AsyncOpenAI

from captionrelay.clients.base import (
    ProviderCaller,
    ProviderResponse,
    normalize_base_url,
    parse_body,
)
from captionrelay.errors import NetworkError

logger = logging.getLogger(__name__)

# Keys of the chat completion body passed as typed arguments
_TYPED_KEYS = ("model", "messages")
MODELS_TIMEOUT = 30.0


class OpenAICompatibleCaller(ProviderCaller):
    """
    Caller for any endpoint speaking the OpenAI Chat Completions API.

    Uses the official OpenAI SDK with its own retries disabled; every HTTP
    status comes back as a ProviderResponse instead of an exception so the
    dispatch engine sees the provider's error body.

    All per-call clients share one httpx connection pool.

    Example:
        async with OpenAICompatibleCaller() as caller:
            resp = await caller.call(
                "https://api.example.com/v1",
                "sk-...",
                {"model": "gpt-4o", "messages": [...]},
                timeout_ms=60_000,
            )
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        default_headers: dict[str, str] | None = None,
    ):
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient()
        self.default_headers = default_headers

    def _client(
        self,
        base_url: str,
        api_key: str,
        timeout: float | None = None,
    ) -> AsyncOpenAI:
        # An empty key makes the SDK omit the Authorization header
        return AsyncOpenAI(
            api_key=api_key or "",
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
            http_client=self._http_client,
            default_headers=self.default_headers,
        )

    async def close(self) -> None:
        """Close the HTTP client if this caller created it."""
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _post_chat(
        self,
        base_url: str,
        api_key: str,
        body: dict[str, Any],
        timeout: float | None,
    ) -> ProviderResponse:
        """Send a request to {base_url}/v1/chat/completions."""
        client = self._client(f"{base_url}/v1", api_key, timeout)
        extra_body = {
            key: value
            for key, value in body.items()
            if key not in _TYPED_KEYS and key != "stream"
        }

        logger.debug(f"POST {base_url}/v1/chat/completions model={body.get('model')}")

        try:
            raw = await client.chat.completions.with_raw_response.create(
                model=body.get("model") or "",
                messages=body.get("messages") or [],
                extra_body=extra_body or None,
            )
        except APIStatusError as e:
            return ProviderResponse(
                status=e.status_code,
                json=parse_body(e.response.text),
            )
        except APIConnectionError as e:
            raise NetworkError(f"{type(e).__name__}: {e}") from e

        http_response = raw.http_response
        return ProviderResponse(
            status=http_response.status_code,
            json=parse_body(http_response.text),
        )

    async def list_models(self, base_url: str, api_key: str = "") -> ProviderResponse:
        """
        GET {base}/v1/models, falling back to {base}/models on 404/405.

        Returns the first successful response, the first non-404/405 error,
        or the last error.
        """
        base = normalize_base_url(base_url)
        last = ProviderResponse(status=500, json={"error": "Model fetch failed"})

        for candidate in (f"{base}/v1", base):
            client = self._client(candidate, api_key, MODELS_TIMEOUT)
            try:
                raw = await client.models.with_raw_response.list()
            except APIStatusError as e:
                last = ProviderResponse(
                    status=e.status_code,
                    json=parse_body(e.response.text),
                )
                if e.status_code not in (404, 405):
                    return last
                logger.debug(f"{candidate}/models returned {e.status_code}, trying next")
                continue
            except APIConnectionError as e:
                raise NetworkError(f"{type(e).__name__}: {e}") from e

            http_response = raw.http_response
            return ProviderResponse(
                status=http_response.status_code,
                json=parse_body(http_response.text),
            )

        return last

    async def __aenter__(self) -> "OpenAICompatibleCaller":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()
