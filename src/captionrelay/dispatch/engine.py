"""
Dispatch engine: drives one chat completion request through a schedule
group's ordered fallback chain.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

from captionrelay.clients.base import ProviderCaller, normalize_base_url
from captionrelay.dispatch.inject import inject_messages
from captionrelay.dispatch.keys import KeyRotator
from captionrelay.dispatch.state_machine import (
    Action,
    DispatchState,
    RetryPolicy,
    resolve,
)
from captionrelay.errors import (
    AcceptanceError,
    BadRequestError,
    CaptionRelayError,
    ConfigurationError,
    NetworkError,
    NotFoundError,
    ProviderError,
)
from captionrelay.types import (
    AttemptLog,
    Channel,
    DispatchRequest,
    DispatchResult,
    GlobalRules,
    ScheduleGroup,
    Step,
    StepError,
)
from captionrelay.validation import LengthValidator, extract_content

logger = logging.getLogger(__name__)


class ConfigDirectory(Protocol):
    """Read-only view of channels, schedule groups and global rules."""

    def get_channel(self, channel_id: str) -> Channel | None: ...

    def get_schedule_group(self, group_id: str) -> ScheduleGroup | None: ...

    def global_rules(self) -> GlobalRules: ...


@dataclass
class DispatchContext:
    """Runtime state shared by every dispatch of one engine."""

    key_rotator: KeyRotator = field(default_factory=KeyRotator)


@dataclass
class _Run:
    """Mutable bookkeeping for a single dispatch."""

    request_id: str
    group: ScheduleGroup
    payload: dict[str, Any]
    validator: LengthValidator
    policy: RetryPolicy
    cancel_event: asyncio.Event | None
    result: DispatchResult = field(default_factory=lambda: DispatchResult(ok=False))

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


class DispatchEngine:
    """
    Runs the fallback chain of a schedule group for one payload.

    For each enabled step in order, up to `retries + 1` attempts are made.
    The first attempt anywhere in the chain that returns 2xx with content
    inside the length window wins. Everything else is recorded into the
    returned DispatchResult; only malformed requests raise.

    Example:
        store = StateStore.load("data.json")
        async with OpenAICompatibleCaller() as caller:
            engine = DispatchEngine(store, caller)
            result = await engine.dispatch(
                DispatchRequest("group-1", {"messages": [...]})
            )
    """

    def __init__(
        self,
        directory: ConfigDirectory,
        caller: ProviderCaller,
        context: DispatchContext | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.directory = directory
        self.caller = caller
        self.context = context or DispatchContext()
        self._sleep = sleep

    def _prepare(
        self,
        request: DispatchRequest,
        cancel_event: asyncio.Event | None,
    ) -> _Run:
        """Validate the request before any network call."""
        group = self.directory.get_schedule_group(request.schedule_group_id)
        if group is None:
            raise NotFoundError(
                f"Schedule group not found: {request.schedule_group_id!r}"
            )
        if not isinstance(request.payload, dict):
            raise BadRequestError("Missing payload")
        if not group.enabled_steps():
            raise BadRequestError("No enabled steps")

        rules = self.directory.global_rules()
        min_chars = request.min_chars if request.min_chars is not None else rules.min_chars
        max_chars = request.max_chars if request.max_chars is not None else rules.max_chars
        auto_retry = request.auto_retry if request.auto_retry is not None else rules.auto_retry

        policy = RetryPolicy(
            retry_on_transient_failure=(
                request.retry_on_transient_failure
                if request.retry_on_transient_failure is not None
                else auto_retry
            ),
            continue_chain_on_step_error=(
                request.continue_chain_on_step_error
                if request.continue_chain_on_step_error is not None
                else auto_retry
            ),
        )

        return _Run(
            request_id=str(uuid.uuid4())[:8],
            group=group,
            payload=request.payload,
            validator=LengthValidator(min_chars, max_chars),
            policy=policy,
            cancel_event=cancel_event,
        )

    async def dispatch(
        self,
        request: DispatchRequest,
        cancel_event: asyncio.Event | None = None,
    ) -> DispatchResult:
        """
        Dispatch one payload through the schedule group.

        Args:
            request: Group id, payload and optional rule overrides
            cancel_event: Set to stop before the next attempt and abort an
                in-flight call

        Returns:
            DispatchResult with the winning response or all recorded errors

        Raises:
            NotFoundError: Unknown schedule group
            BadRequestError: Payload is not an object, or no enabled steps
        """
        start_time = time.perf_counter()
        run = self._prepare(request, cancel_event)
        steps = run.group.enabled_steps()

        logger.info(
            f"[{run.request_id}] Dispatch start: group={run.group.name or run.group.id} "
            f"steps={len(steps)}"
        )

        for step_index, step in enumerate(steps):
            action = await self._run_step(run, step_index, step)
            if action == Action.RETURN_SUCCESS:
                break
            if action == Action.ABORT_CHAIN:
                logger.warning(f"[{run.request_id}] Chain aborted at step {step_index}")
                break

        result = run.result
        result.duration_ms = int((time.perf_counter() - start_time) * 1000)
        if result.ok:
            logger.info(
                f"[{run.request_id}] Dispatch succeeded: step={result.step} "
                f"attempt={result.attempt} total={result.duration_ms}ms"
            )
        else:
            logger.error(
                f"[{run.request_id}] All steps failed: errors={len(result.errors)} "
                f"total={result.duration_ms}ms"
            )
        return result

    def _check_step(self, run: _Run, step: Step) -> tuple[Channel | None, str | None]:
        """Return (channel, error message) for configuration problems."""
        channel = self.directory.get_channel(step.channel_id) if step.channel_id else None
        if channel is None:
            return None, "Channel missing"
        if not normalize_base_url(channel.api_url):
            return channel, "Channel apiUrl missing"
        if not (step.model or run.payload.get("model")):
            return channel, "Model missing"
        return channel, None

    async def _run_step(self, run: _Run, step_index: int, step: Step) -> Action:
        channel, config_error = self._check_step(run, step)
        model = step.model or run.payload.get("model") or ""

        if config_error is not None:
            logger.warning(
                f"[{run.request_id}] Step {step_index}: {config_error} "
                f"(channelId={step.channel_id})"
            )
            run.result.errors.append(
                StepError(
                    step_index=step_index,
                    channel_id=step.channel_id,
                    model=model,
                    kind=ConfigurationError.__name__,
                    error=config_error,
                )
            )
            return resolve(DispatchState.ATTEMPT_FAILED_FATAL, run.policy)

        attempts = step.attempts
        timeout_sec = run.group.step_timeout(step)
        logger.info(
            f"[{run.request_id}] Step {step_index} start: channel={channel.name or channel.id} "
            f"model={model} retries={step.retries} timeout={timeout_sec:g}s "
            f"max_attempts={attempts}"
        )

        for attempt in range(1, attempts + 1):
            if run.cancelled:
                logger.warning(f"[{run.request_id}] Cancelled before step {step_index} attempt {attempt}")
                run.result.cancelled = True
                return Action.ABORT_CHAIN

            state = await self._run_attempt(
                run, step_index, channel, model, attempt, attempts, timeout_sec
            )
            if run.cancelled and state != DispatchState.ATTEMPT_SUCCEEDED:
                run.result.cancelled = True
                return Action.ABORT_CHAIN

            action = resolve(state, run.policy, attempts_left=attempt < attempts)
            if action != Action.RETRY_STEP:
                return action

            if step.interval > 0:
                logger.info(
                    f"[{run.request_id}] Step {step_index} waiting {step.interval:g}s before retry"
                )
                await self._wait(step.interval, run.cancel_event)

        return resolve(DispatchState.STEP_EXHAUSTED, run.policy)

    async def _run_attempt(
        self,
        run: _Run,
        step_index: int,
        channel: Channel,
        model: str,
        attempt: int,
        attempts: int,
        timeout_sec: float,
    ) -> DispatchState:
        """Make one provider call, record it, and classify the outcome."""
        body = inject_messages(run.group, {**run.payload, "model": model})
        api_key = self.context.key_rotator.next_key(channel)
        result = run.result
        started = time.perf_counter()

        logger.info(
            f"[{run.request_id}] Step {step_index} attempt {attempt}/{attempts}: "
            f"POST {normalize_base_url(channel.api_url)}/v1/chat/completions model={model}"
        )

        def elapsed_ms() -> int:
            return int((time.perf_counter() - started) * 1000)

        def fail(error: CaptionRelayError, log: AttemptLog, error_value: Any = None) -> DispatchState:
            result.attempts.append(log)
            result.errors.append(
                StepError(
                    step_index=step_index,
                    channel_id=channel.id,
                    model=model,
                    kind=error.kind,
                    error=error_value if error_value is not None else str(error),
                    length=getattr(error, "length", None),
                )
            )
            return DispatchState.ATTEMPT_FAILED_RETRYABLE

        try:
            response = await self._call(channel, api_key, body, timeout_sec, run.cancel_event)
        except Exception as e:
            error = e if isinstance(e, NetworkError) else NetworkError(f"{type(e).__name__}: {e}")
            duration = elapsed_ms()
            logger.warning(
                f"[{run.request_id}] Step {step_index} attempt {attempt} error: {error} ({duration}ms)"
            )
            return fail(
                error,
                AttemptLog(
                    step_index=step_index,
                    channel_id=channel.id,
                    model=model,
                    attempt=attempt,
                    status=0,
                    ok=False,
                    error=str(error),
                    duration_ms=duration,
                ),
            )

        duration = elapsed_ms()
        logger.info(
            f"[{run.request_id}] Step {step_index} attempt {attempt} returned "
            f"{response.status} ({duration}ms)"
        )

        if not response.ok:
            error = ProviderError(response.status, response.json)
            return fail(
                error,
                AttemptLog(
                    step_index=step_index,
                    channel_id=channel.id,
                    model=model,
                    attempt=attempt,
                    status=response.status,
                    ok=False,
                    error="http_error",
                    detail=response.json,
                    duration_ms=duration,
                ),
                error_value=response.json,
            )

        text = extract_content(response.json)
        validation = run.validator.validate(text)
        logger.info(
            f"[{run.request_id}] Step {step_index} attempt {attempt} length={len(text)} "
            f"window=[{run.validator.min_chars}, {run.validator.max_chars}] "
            f"accepted={validation.valid}"
        )

        if not validation.valid:
            error = AcceptanceError(
                len(text), run.validator.min_chars, run.validator.max_chars
            )
            return fail(
                error,
                AttemptLog(
                    step_index=step_index,
                    channel_id=channel.id,
                    model=model,
                    attempt=attempt,
                    status=response.status,
                    ok=False,
                    length=len(text),
                    error="length_rule_failed",
                    duration_ms=duration,
                ),
                error_value="Length rule failed",
            )

        result.attempts.append(
            AttemptLog(
                step_index=step_index,
                channel_id=channel.id,
                model=model,
                attempt=attempt,
                status=response.status,
                ok=True,
                length=len(text),
                duration_ms=duration,
            )
        )
        result.ok = True
        result.step = {"channelId": channel.id, "model": model}
        result.attempt = attempt
        result.response = response.json
        return DispatchState.ATTEMPT_SUCCEEDED

    async def _call(
        self,
        channel: Channel,
        api_key: str,
        body: dict[str, Any],
        timeout_sec: float,
        cancel_event: asyncio.Event | None,
    ):
        """Provider call that is abandoned as soon as cancel_event fires."""
        call = asyncio.ensure_future(
            self.caller.call(channel.api_url, api_key, body, timeout_sec * 1000)
        )
        if cancel_event is None:
            return await call

        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {call, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            waiter.cancel()
            if not call.done():
                call.cancel()

        if call in done:
            return call.result()

        try:
            await call
        except asyncio.CancelledError:
            pass
        raise NetworkError("Cancelled")

    async def _wait(self, seconds: float, cancel_event: asyncio.Event | None) -> None:
        """Sleep between attempts, waking early on cancellation."""
        if cancel_event is None:
            await self._sleep(seconds)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
