"""
Shared fixtures: an in-process provider caller and state builders.
"""

import asyncio
from typing import Any, Callable

import pytest

from captionrelay.clients.base import ProviderCaller, ProviderResponse
from captionrelay.dispatch import DispatchEngine
from captionrelay.errors import NetworkError
from captionrelay.store import StateStore
from captionrelay.types import AppState, Channel, GlobalRules, ScheduleGroup, Step


def completion(content: str) -> dict[str, Any]:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def ok_response(content: str) -> ProviderResponse:
    return ProviderResponse(status=200, json=completion(content))


def timeout_error() -> NetworkError:
    return NetworkError("Request timed out after 60s")


class FakeCaller(ProviderCaller):
    """
    Provider caller answering from per-base-URL handlers.

    A handler is a ProviderResponse, an exception instance, or a callable
    taking the request body and returning either.
    """

    def __init__(self, handlers: dict[str, Any] | None = None):
        self.handlers = handlers or {}
        self.calls: list[dict[str, Any]] = []

    async def _post_chat(self, base_url, api_key, body, timeout):
        self.calls.append(
            {"base_url": base_url, "api_key": api_key, "body": body, "timeout": timeout}
        )
        handler = self.handlers[base_url]
        if callable(handler) and not isinstance(handler, ProviderResponse):
            handler = handler(body)
        if isinstance(handler, BaseException):
            raise handler
        return handler


def make_store(
    channels: list[Channel],
    groups: list[ScheduleGroup],
    rules: GlobalRules | None = None,
) -> StateStore:
    state = AppState(
        channels=channels,
        schedule_groups=groups,
        global_rules=rules or GlobalRules(min_chars=None, max_chars=None, auto_retry=True),
    )
    return StateStore(state)


def no_sleep_recorder() -> tuple[list[float], Callable[[float], Any]]:
    slept: list[float] = []

    async def sleep(seconds: float) -> None:
        slept.append(seconds)

    return slept, sleep


@pytest.fixture
def channel_x() -> Channel:
    return Channel(id="x", name="X", api_url="https://x.example.com/v1", api_keys=["kx"])


@pytest.fixture
def channel_y() -> Channel:
    return Channel(id="y", name="Y", api_url="https://y.example.com", api_keys=["ky"])


@pytest.fixture
def two_step_group() -> ScheduleGroup:
    return ScheduleGroup(
        id="g",
        name="two steps",
        steps=[
            Step(channel_id="x", model="m1", retries=1, interval=0),
            Step(channel_id="y", model="m2", retries=0),
        ],
    )


def run(coro):
    return asyncio.run(coro)


def build_engine(store: StateStore, caller: ProviderCaller, sleep=None) -> DispatchEngine:
    if sleep is None:
        _, sleep = no_sleep_recorder()
    return DispatchEngine(store, caller, sleep=sleep)
