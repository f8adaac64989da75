"""
JSON-file backed application state.

The store is the channel directory, schedule-group directory and global
rule source the dispatch engine reads from. State is held in memory and
written back only on save().
"""

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from captionrelay.clients.base import normalize_base_url
from captionrelay.types import AppState, Channel, GlobalRules, ScheduleGroup

logger = logging.getLogger(__name__)


class StateStore:
    """In-memory AppState with optional JSON file persistence."""

    def __init__(self, state: AppState | None = None, path: str | Path | None = None):
        self.state = state or AppState()
        self.path = Path(path) if path else None

    @classmethod
    def load(cls, path: str | Path) -> "StateStore":
        """Load state from a JSON file, using defaults if it is missing or broken."""
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            state = AppState.model_validate(data)
        except FileNotFoundError:
            logger.warning(f"State file not found, using defaults: {path}")
            state = AppState()
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"State file unreadable, using defaults: {path} ({e})")
            state = AppState()

        logger.info(
            f"Loaded state: channels={len(state.channels)} "
            f"scheduleGroups={len(state.schedule_groups)}"
        )
        return cls(state, path)

    def save(self, path: str | Path | None = None) -> Path:
        """Write state as pretty JSON."""
        target = Path(path) if path else self.path
        if target is None:
            raise ValueError("No path to save state to")
        target.parent.mkdir(parents=True, exist_ok=True)
        data = self.state.model_dump(mode="json", by_alias=True)
        with open(target, "w", encoding="utf-8") as f:
            f.write(json.dumps(data, indent=2, ensure_ascii=False))
        return target

    def get_channel(self, channel_id: str) -> Channel | None:
        for channel in self.state.channels:
            if channel.id == channel_id:
                return channel
        return None

    def get_schedule_group(self, group_id: str) -> ScheduleGroup | None:
        for group in self.state.schedule_groups:
            if group.id == group_id:
                return group
        return None

    def global_rules(self) -> GlobalRules:
        return self.state.global_rules

    def append_label_log(self, entry: dict[str, Any]) -> None:
        self.state.label_logs.append(entry)

    def overview(self) -> dict[str, Any]:
        """Counts of configured objects plus the effective global rules."""
        state = self.state
        rules = state.global_rules
        return {
            "counts": {
                "channels": len(state.channels),
                "groups": len(state.groups),
                "scheduleGroups": len(state.schedule_groups),
                "prompts": {
                    "system": len(state.prompts.system),
                    "user": len(state.prompts.user),
                    "total": len(state.prompts.system) + len(state.prompts.user),
                },
                "tags": len(state.tags),
                "logs": len(state.label_logs),
            },
            "globalRules": {
                "minChars": rules.min_chars,
                "maxChars": rules.max_chars,
                "autoRetry": rules.auto_retry,
            },
        }

    def diagnostics(self) -> dict[str, Any]:
        """Configuration consistency report."""
        items: list[dict[str, Any]] = []
        channel_ids = {channel.id for channel in self.state.channels if channel.id}

        for channel in self.state.channels:
            name = channel.name or "Unnamed channel"
            if not normalize_base_url(channel.api_url):
                items.append(
                    _item(
                        "warning",
                        "CHANNEL_API_URL_MISSING",
                        f"Channel '{name}' has no apiUrl.",
                        {"channelId": channel.id},
                    )
                )
            if not channel.usable_keys():
                items.append(
                    _item(
                        "warning",
                        "CHANNEL_API_KEYS_MISSING",
                        f"Channel '{name}' has no usable apiKeys.",
                        {"channelId": channel.id},
                    )
                )

        for group in self.state.schedule_groups:
            name = group.name or "Unnamed schedule group"
            for index, step in enumerate(group.steps):
                location = {"scheduleGroupId": group.id, "stepIndex": index}
                if not step.channel_id or step.channel_id not in channel_ids:
                    items.append(
                        _item(
                            "error",
                            "STEP_CHANNEL_NOT_FOUND",
                            f"Schedule group '{name}' step {index + 1} references a missing channel.",
                            location,
                        )
                    )
                if not step.model.strip():
                    items.append(
                        _item(
                            "warning",
                            "STEP_MODEL_MISSING",
                            f"Schedule group '{name}' step {index + 1} has no model.",
                            location,
                        )
                    )

        rules = self.state.global_rules
        if (
            rules.min_chars is not None
            and rules.max_chars is not None
            and rules.min_chars > rules.max_chars
        ):
            items.append(
                _item(
                    "error",
                    "GLOBAL_RULES_RANGE_INVALID",
                    f"globalRules.minChars ({rules.min_chars}) is greater than "
                    f"maxChars ({rules.max_chars}).",
                    {"field": "globalRules"},
                )
            )

        if not items:
            items.append(
                _item("info", "CONFIG_CHECK_PASSED", "No configuration problems found.", None)
            )

        summary = {
            level: sum(1 for item in items if item["level"] == level)
            for level in ("error", "warning", "info")
        }
        summary["total"] = len(items)
        return {"summary": summary, "items": items}


def _item(level: str, code: str, message: str, location: dict[str, Any] | None) -> dict[str, Any]:
    return {"level": level, "code": code, "message": message, "location": location}
