"""
Acceptance rules for provider responses.
"""

from captionrelay.validation.validators import (
    LengthValidator,
    OutputValidator,
    ValidationResult,
    accept,
    extract_content,
)

__all__ = [
    "OutputValidator",
    "LengthValidator",
    "ValidationResult",
    "accept",
    "extract_content",
]
