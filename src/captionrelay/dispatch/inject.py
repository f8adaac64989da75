"""
Schedule-group message injection.
"""

from typing import Any

from captionrelay.types import InjectPosition, ScheduleGroup


def _place(
    messages: list[Any],
    message: dict[str, str],
    position: InjectPosition,
) -> None:
    if position == InjectPosition.BACK:
        messages.append(message)
    else:
        messages.insert(0, message)


def inject_messages(group: ScheduleGroup, payload: dict[str, Any]) -> dict[str, Any]:
    """
    Return a copy of payload with the group's system/user messages injected.

    The system message is placed first, then the user message, each at the
    front or back of the list. Neither the payload nor its message list is
    modified.
    """
    original = payload.get("messages")
    messages = list(original) if isinstance(original, list) else []

    system_text = group.effective_system_text
    if system_text:
        _place(messages, {"role": "system", "content": system_text}, group.system_inject)

    if group.user_inject_text:
        _place(
            messages,
            {"role": "user", "content": group.user_inject_text},
            group.user_inject,
        )

    return {**payload, "messages": messages}
