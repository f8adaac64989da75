"""
Core types and data structures for CaptionRelay.

Persisted configuration is modelled with pydantic and keeps the camelCase
field names of the JSON state file. Per-dispatch records are plain
dataclasses.
"""

import base64
import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from captionrelay.validation.validators import extract_content

DEFAULT_MIN_CHARS = 200
DEFAULT_MAX_CHARS = 200
DEFAULT_TIMEOUT_SEC = 60.0


class InjectPosition(str, Enum):
    """Where an injected message goes relative to the original messages."""

    FRONT = "front"
    BACK = "back"


class _ConfigModel(BaseModel):
    # Unknown keys are kept so a load/save cycle never drops data
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class Channel(_ConfigModel):
    """An LLM provider endpoint plus its pool of API keys."""

    id: str
    name: str = ""
    api_url: str = Field(default="", alias="apiUrl")
    api_keys: list[str] = Field(default_factory=list, alias="apiKeys")

    def usable_keys(self) -> list[str]:
        """Non-blank keys, unmodified and in configured order."""
        return [key for key in self.api_keys if key and key.strip()]


class Step(_ConfigModel):
    """One provider+model+retry policy entry of a schedule group."""

    channel_id: str | None = Field(default=None, alias="channelId")
    model: str = ""
    retries: int = 0  # additional attempts after the first
    interval: float = 0.0  # seconds between attempts of this step
    concurrency: int | None = None
    timeout_sec: float | None = Field(default=None, alias="timeoutSec")
    enabled: bool = True

    @property
    def attempts(self) -> int:
        return max(1, self.retries + 1)


class ScheduleGroup(_ConfigModel):
    """Ordered fallback chain of steps plus message injection settings."""

    id: str
    name: str = ""
    system_inject: InjectPosition = Field(
        default=InjectPosition.FRONT, alias="systemInject"
    )
    user_inject: InjectPosition = Field(
        default=InjectPosition.FRONT, alias="userInject"
    )
    system_inject_text: str = Field(default="", alias="systemInjectText")
    user_inject_text: str = Field(default="", alias="userInjectText")
    inject_text: str = Field(default="", alias="injectText")  # legacy name
    concurrency: int | None = None
    timeout_sec: float | None = Field(default=None, alias="timeoutSec")
    steps: list[Step] = Field(default_factory=list)

    @property
    def effective_system_text(self) -> str:
        return self.system_inject_text or self.inject_text

    def enabled_steps(self) -> list[Step]:
        return [step for step in self.steps if step.enabled]

    def step_timeout(self, step: Step) -> float:
        """Step timeout, falling back to the group timeout, then 60s."""
        if _positive(step.timeout_sec):
            return float(step.timeout_sec)
        if _positive(self.timeout_sec):
            return float(self.timeout_sec)
        return DEFAULT_TIMEOUT_SEC


class GlobalRules(_ConfigModel):
    """Acceptance window and retry switch used when a call has no overrides."""

    min_chars: int | None = Field(default=DEFAULT_MIN_CHARS, alias="minChars")
    max_chars: int | None = Field(default=DEFAULT_MAX_CHARS, alias="maxChars")
    auto_retry: bool = Field(default=True, alias="autoRetry")


class ImageGroup(_ConfigModel):
    """A named directory of images to label."""

    id: str
    path: str = ""
    note: str = ""


class PromptPreset(_ConfigModel):
    id: str
    name: str = ""
    content: str = Field(default="", validation_alias=AliasChoices("content", "text"))


class PromptLibrary(_ConfigModel):
    system: list[PromptPreset] = Field(default_factory=list)
    user: list[PromptPreset] = Field(default_factory=list)


class AppState(_ConfigModel):
    """Everything persisted in the state file."""

    channels: list[Channel] = Field(default_factory=list)
    groups: list[ImageGroup] = Field(default_factory=list)
    schedule_groups: list[ScheduleGroup] = Field(
        default_factory=list,
        validation_alias=AliasChoices("scheduleGroups", "schedule_groups"),
        serialization_alias="scheduleGroups",
    )
    tags: dict[str, Any] = Field(default_factory=dict)
    global_rules: GlobalRules = Field(
        default_factory=GlobalRules,
        validation_alias=AliasChoices("globalRules", "global_rules"),
        serialization_alias="globalRules",
    )
    prompts: PromptLibrary = Field(default_factory=PromptLibrary)
    preview_results: list[Any] = Field(
        default_factory=list,
        validation_alias=AliasChoices("previewResults", "preview_results"),
        serialization_alias="previewResults",
    )
    label_logs: list[dict[str, Any]] = Field(
        default_factory=list,
        validation_alias=AliasChoices("labelLogs", "label_logs"),
        serialization_alias="labelLogs",
    )


def _positive(value: float | None) -> bool:
    return value is not None and math.isfinite(value) and value > 0


@dataclass
class ImageInput:
    """
    Represents an image input for captioning.
    Supports both file paths and base64-encoded data.
    """

    source: str | Path  # File path or URL
    base64_data: str | None = None  # Pre-encoded base64 data
    mime_type: str = "image/png"  # MIME type for encoding

    def to_base64(self) -> str:
        """Convert image to base64-encoded data URL."""
        if self.base64_data:
            return f"data:{self.mime_type};base64,{self.base64_data}"

        path = Path(self.source)
        if path.exists():
            with open(path, "rb") as f:
                encoded = base64.b64encode(f.read()).decode("utf-8")

            mime = MIME_TYPES.get(path.suffix.lower(), self.mime_type)
            return f"data:{mime};base64,{encoded}"

        # Assume it's a URL
        return str(self.source)

    def is_url(self) -> bool:
        """Check if source is a URL."""
        source_str = str(self.source)
        return source_str.startswith(("http://", "https://"))


MIME_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
}


@dataclass
class AttemptLog:
    """One concrete provider call made for one step."""

    step_index: int
    channel_id: str
    model: str
    attempt: int
    status: int  # 0 when no HTTP response was received
    ok: bool
    length: int | None = None
    error: str | None = None
    detail: Any = None
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "stepIndex": self.step_index,
            "channelId": self.channel_id,
            "model": self.model,
            "attempt": self.attempt,
            "status": self.status,
            "ok": self.ok,
        }
        if self.length is not None:
            data["length"] = self.length
        if self.error is not None:
            data["error"] = self.error
        if self.detail is not None:
            data["detail"] = self.detail
        data["durationMs"] = self.duration_ms
        return data


@dataclass
class StepError:
    """An error recorded against a step (one per failed attempt or step)."""

    step_index: int
    channel_id: str | None
    model: str
    kind: str
    error: Any
    length: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "step": {
                "stepIndex": self.step_index,
                "channelId": self.channel_id,
                "model": self.model,
            },
            "kind": self.kind,
            "error": self.error,
        }
        if self.length is not None:
            data["length"] = self.length
        return data


@dataclass
class DispatchRequest:
    """One dispatch call: a schedule group, a payload and optional overrides."""

    schedule_group_id: str
    payload: Any
    min_chars: int | None = None
    max_chars: int | None = None
    auto_retry: bool | None = None
    # Decoupled knobs; both default to auto_retry when left as None
    retry_on_transient_failure: bool | None = None
    continue_chain_on_step_error: bool | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DispatchRequest":
        """Build from the camelCase wire shape."""
        return cls(
            schedule_group_id=data.get("scheduleGroupId", ""),
            payload=data.get("payload"),
            min_chars=_finite_or_none(data.get("minChars")),
            max_chars=_finite_or_none(data.get("maxChars")),
            auto_retry=data.get("autoRetry"),
            retry_on_transient_failure=data.get("retryOnTransientFailure"),
            continue_chain_on_step_error=data.get("continueChainOnStepError"),
        )


def _finite_or_none(value: Any) -> int | float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value if math.isfinite(value) else None


@dataclass
class DispatchResult:
    """Outcome of one dispatch, successful or not, with the full trace."""

    ok: bool
    step: dict[str, Any] | None = None  # {"channelId", "model"} on success
    attempt: int | None = None
    response: Any = None  # raw provider JSON on success
    errors: list[StepError] = field(default_factory=list)
    attempts: list[AttemptLog] = field(default_factory=list)
    cancelled: bool = False
    duration_ms: int = 0

    @property
    def text(self) -> str:
        """Extracted response content, empty when failed."""
        if not self.ok:
            return ""
        return extract_content(self.response)

    @property
    def http_status(self) -> int:
        return 200 if self.ok else 502

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            return {
                "ok": True,
                "step": self.step,
                "attempt": self.attempt,
                "response": self.response,
                "attempts": [a.to_dict() for a in self.attempts],
            }
        data: dict[str, Any] = {
            "ok": False,
            "error": "All steps failed",
            "errors": [e.to_dict() for e in self.errors],
            "attempts": [a.to_dict() for a in self.attempts],
        }
        if self.cancelled:
            data["cancelled"] = True
        return data


@dataclass
class LabelResult:
    """Result of labeling one image through the pipeline."""

    image_path: Path
    ok: bool
    text: str = ""
    error: str | None = None
    detail: str = ""
    step: dict[str, Any] | None = None
    attempt: int | None = None
    attempts: list[AttemptLog] = field(default_factory=list)
    duration_ms: int = 0
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def failed(self) -> bool:
        return not self.ok


@dataclass
class TagResult:
    """An image on disk with its current tag text."""

    name: str
    image_path: Path
    text_path: Path
    text: str = ""

    @property
    def text_length(self) -> int:
        return len(self.text.strip())
