"""
CaptionRelay - LLM captioning with ordered provider fallback

Runs image captioning requests through configurable "schedule groups":
ordered chains of OpenAI-compatible channels with
- Per-step retries, intervals and timeouts
- Round-robin API key rotation per channel
- System/user message injection
- Character-length acceptance rule
- Full attempt trace for every dispatch
"""

from captionrelay.clients import OpenAICompatibleCaller, ProviderCaller, ProviderResponse
from captionrelay.dispatch import (
    DispatchContext,
    DispatchEngine,
    KeyRotator,
    RetryPolicy,
    inject_messages,
)
from captionrelay.errors import (
    AcceptanceError,
    BadRequestError,
    CaptionRelayError,
    ConfigurationError,
    NetworkError,
    NotFoundError,
    ProviderError,
    RequestError,
)
from captionrelay.pipeline import LabelingPipeline, PipelineConfig
from captionrelay.store import StateStore
from captionrelay.types import (
    AppState,
    AttemptLog,
    Channel,
    DispatchRequest,
    DispatchResult,
    GlobalRules,
    ImageInput,
    LabelResult,
    ScheduleGroup,
    Step,
)
from captionrelay.validation import LengthValidator, accept, extract_content

__version__ = "0.1.0"
__all__ = [
    # Types
    "AppState",
    "Channel",
    "Step",
    "ScheduleGroup",
    "GlobalRules",
    "ImageInput",
    "AttemptLog",
    "DispatchRequest",
    "DispatchResult",
    "LabelResult",
    # Errors
    "CaptionRelayError",
    "RequestError",
    "BadRequestError",
    "NotFoundError",
    "ConfigurationError",
    "NetworkError",
    "ProviderError",
    "AcceptanceError",
    # Clients
    "ProviderCaller",
    "ProviderResponse",
    "OpenAICompatibleCaller",
    # Dispatch
    "DispatchEngine",
    "DispatchContext",
    "KeyRotator",
    "RetryPolicy",
    "inject_messages",
    # Validation
    "LengthValidator",
    "accept",
    "extract_content",
    # Pipeline
    "LabelingPipeline",
    "PipelineConfig",
    # Store
    "StateStore",
]
