"""
Dispatch engine and its building blocks.
"""

from captionrelay.dispatch.engine import ConfigDirectory, DispatchContext, DispatchEngine
from captionrelay.dispatch.inject import inject_messages
from captionrelay.dispatch.keys import KeyRotator
from captionrelay.dispatch.state_machine import (
    Action,
    DispatchState,
    RetryPolicy,
    resolve,
    transition,
)

__all__ = [
    "DispatchEngine",
    "DispatchContext",
    "ConfigDirectory",
    "KeyRotator",
    "inject_messages",
    "Action",
    "DispatchState",
    "RetryPolicy",
    "resolve",
    "transition",
]
