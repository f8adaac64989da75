"""
Output validators deciding whether a provider response is usable.

The dispatch engine only needs the character-length window, but it goes
through the same validator interface so other acceptance checks can be
plugged in later.
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")


@dataclass
class ValidationResult(Generic[T]):
    """Result of a validation attempt."""

    valid: bool
    value: T | None = None  # Accepted value if successful
    error: str | None = None
    raw_input: str | None = None


class OutputValidator(ABC, Generic[T]):
    """Base class for output validators."""

    @abstractmethod
    def validate(self, output: str) -> ValidationResult[T]:
        """
        Validate the output string.

        Args:
            output: Text extracted from the model response

        Returns:
            ValidationResult with accepted value or error
        """
        pass

    @abstractmethod
    def get_schema_description(self) -> str:
        """Get a human-readable description of what is accepted."""
        pass


def _bound(value: float | None) -> float | None:
    """None for missing or non-finite bounds (treated as unbounded)."""
    if value is None or isinstance(value, bool):
        return None
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


class LengthValidator(OutputValidator[str]):
    """
    Accepts text whose length in characters lies inside [min_chars, max_chars].

    Either bound may be None (or non-finite) to leave that side unbounded.
    """

    def __init__(
        self,
        min_chars: float | None = None,
        max_chars: float | None = None,
    ):
        self.min_chars = _bound(min_chars)
        self.max_chars = _bound(max_chars)

    def validate(self, output: str) -> ValidationResult[str]:
        length = len(output)
        if self.min_chars is not None and length < self.min_chars:
            return ValidationResult(
                valid=False,
                error=f"Too short: {length} < {self.min_chars:g}",
                raw_input=output,
            )
        if self.max_chars is not None and length > self.max_chars:
            return ValidationResult(
                valid=False,
                error=f"Too long: {length} > {self.max_chars:g}",
                raw_input=output,
            )
        return ValidationResult(valid=True, value=output, raw_input=output)

    def get_schema_description(self) -> str:
        low = "0" if self.min_chars is None else f"{self.min_chars:g}"
        high = "unbounded" if self.max_chars is None else f"{self.max_chars:g}"
        return f"Output length must be between {low} and {high} characters"


def accept(
    text: str,
    min_chars: float | None = None,
    max_chars: float | None = None,
) -> bool:
    """Length rule: True when len(text) is inside the window."""
    return LengthValidator(min_chars, max_chars).validate(text).valid


def extract_content(response: Any) -> str:
    """choices[0].message.content of a chat completion, else ""."""
    try:
        content = response["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return ""
    return content if isinstance(content, str) else ""
