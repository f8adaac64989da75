"""
Provider callers for OpenAI-compatible chat completion endpoints.
"""

from captionrelay.clients.base import (
    ProviderCaller,
    ProviderResponse,
    normalize_base_url,
    parse_body,
)
from captionrelay.clients.openai import OpenAICompatibleCaller

__all__ = [
    "ProviderCaller",
    "ProviderResponse",
    "OpenAICompatibleCaller",
    "normalize_base_url",
    "parse_body",
]
