"""
Label outcome statistics, kept in memory and optionally appended to a
JSONL log file.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from captionrelay.types import LabelResult


@dataclass
class AggregateStats:
    """Aggregate statistics across labeled images."""

    total_images: int = 0
    successful_images: int = 0
    failed_images: int = 0
    total_attempts: int = 0
    total_duration_ms: float = 0.0
    errors: dict[str, int] = field(default_factory=dict)  # Error text -> count

    @property
    def success_rate(self) -> float:
        if self.total_images == 0:
            return 0.0
        return self.successful_images / self.total_images

    @property
    def average_duration_ms(self) -> float:
        if self.total_images == 0:
            return 0.0
        return self.total_duration_ms / self.total_images

    @property
    def average_attempts(self) -> float:
        if self.total_images == 0:
            return 0.0
        return self.total_attempts / self.total_images

    def record(self, result: LabelResult) -> None:
        self.total_images += 1
        self.total_attempts += len(result.attempts)
        self.total_duration_ms += result.duration_ms

        if result.ok:
            self.successful_images += 1
        else:
            self.failed_images += 1
            error_type = (result.error or "unknown")[:50]
            self.errors[error_type] = self.errors.get(error_type, 0) + 1


class StatsLogger:
    """Logs label statistics to file and memory."""

    def __init__(
        self,
        log_file: str | Path | None = None,
        enable_file_logging: bool = True,
    ):
        self.stats = AggregateStats()
        self.log_file = Path(log_file) if log_file else None
        self.enable_file_logging = enable_file_logging and log_file is not None

        if self.enable_file_logging and self.log_file:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)

    def record(self, result: LabelResult) -> None:
        self.stats.record(result)

        if self.enable_file_logging and self.log_file:
            self._write_to_file(result)

    def _write_to_file(self, result: LabelResult) -> None:
        entry = {
            "image": str(result.image_path),
            "ok": result.ok,
            "step": result.step,
            "attempt": result.attempt,
            "attempts": len(result.attempts),
            "duration_ms": result.duration_ms,
            "error": result.error,
            "timestamp": result.timestamp.isoformat(),
        }
        with open(self.log_file, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def get_summary(self) -> dict[str, Any]:
        return {
            "total_images": self.stats.total_images,
            "successful_images": self.stats.successful_images,
            "failed_images": self.stats.failed_images,
            "success_rate": f"{self.stats.success_rate:.1%}",
            "average_duration_ms": f"{self.stats.average_duration_ms:.1f}",
            "average_attempts": f"{self.stats.average_attempts:.2f}",
            "total_attempts": self.stats.total_attempts,
            "error_counts": self.stats.errors,
        }
