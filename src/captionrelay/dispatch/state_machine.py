"""
Transition table driving the dispatch loop.

After every attempt the engine classifies what happened into a
DispatchState and asks `resolve` what to do next. The whole
retry/advance/abort policy lives in TRANSITIONS:

    ATTEMPT_SUCCEEDED         -> RETURN_SUCCESS
    ATTEMPT_FAILED_RETRYABLE  -> RETRY_STEP      (retry allowed, attempts left)
                              -> STEP_EXHAUSTED  (otherwise)
    ATTEMPT_FAILED_FATAL      -> STEP_EXHAUSTED
    STEP_EXHAUSTED            -> NEXT_STEP       (continue chain on step error)
                              -> CHAIN_ABORTED   (otherwise)
    CHAIN_ABORTED             -> ABORT_CHAIN

With both knobs coupled to a single `autoRetry=False`, the first failed
attempt anywhere aborts the whole chain, not just the current step.
"""

from dataclasses import dataclass
from enum import Enum


class DispatchState(str, Enum):
    ATTEMPT_SUCCEEDED = "attempt_succeeded"
    ATTEMPT_FAILED_RETRYABLE = "attempt_failed_retryable"
    ATTEMPT_FAILED_FATAL = "attempt_failed_fatal"
    STEP_EXHAUSTED = "step_exhausted"
    CHAIN_ABORTED = "chain_aborted"


class Action(str, Enum):
    RETURN_SUCCESS = "return_success"
    RETRY_STEP = "retry_step"
    NEXT_STEP = "next_step"
    ABORT_CHAIN = "abort_chain"


@dataclass(frozen=True)
class RetryPolicy:
    """
    The two knobs a single `autoRetry` flag used to control.

    retry_on_transient_failure: run the remaining attempts of a step after a
        network/provider/length failure.
    continue_chain_on_step_error: move on to the next step once a step has
        failed (configuration error or no attempts left).
    """

    retry_on_transient_failure: bool = True
    continue_chain_on_step_error: bool = True

    @classmethod
    def from_auto_retry(cls, auto_retry: bool) -> "RetryPolicy":
        return cls(
            retry_on_transient_failure=auto_retry,
            continue_chain_on_step_error=auto_retry,
        )


# (state, guard) -> next state or terminal action
TRANSITIONS: dict[tuple[DispatchState, bool], DispatchState | Action] = {
    (DispatchState.ATTEMPT_SUCCEEDED, True): Action.RETURN_SUCCESS,
    (DispatchState.ATTEMPT_SUCCEEDED, False): Action.RETURN_SUCCESS,
    (DispatchState.ATTEMPT_FAILED_RETRYABLE, True): Action.RETRY_STEP,
    (DispatchState.ATTEMPT_FAILED_RETRYABLE, False): DispatchState.STEP_EXHAUSTED,
    (DispatchState.ATTEMPT_FAILED_FATAL, True): DispatchState.STEP_EXHAUSTED,
    (DispatchState.ATTEMPT_FAILED_FATAL, False): DispatchState.STEP_EXHAUSTED,
    (DispatchState.STEP_EXHAUSTED, True): Action.NEXT_STEP,
    (DispatchState.STEP_EXHAUSTED, False): DispatchState.CHAIN_ABORTED,
    (DispatchState.CHAIN_ABORTED, True): Action.ABORT_CHAIN,
    (DispatchState.CHAIN_ABORTED, False): Action.ABORT_CHAIN,
}


def guard(state: DispatchState, policy: RetryPolicy, attempts_left: bool) -> bool:
    """Evaluate the condition that selects a state's outgoing edge."""
    if state == DispatchState.ATTEMPT_FAILED_RETRYABLE:
        return policy.retry_on_transient_failure and attempts_left
    if state == DispatchState.STEP_EXHAUSTED:
        return policy.continue_chain_on_step_error
    return True


def transition(
    state: DispatchState,
    policy: RetryPolicy,
    attempts_left: bool,
) -> DispatchState | Action:
    """Single step through the table."""
    return TRANSITIONS[(state, guard(state, policy, attempts_left))]


def resolve(
    state: DispatchState,
    policy: RetryPolicy,
    attempts_left: bool = False,
) -> Action:
    """Follow transitions from state until an action is reached."""
    current: DispatchState | Action = state
    while isinstance(current, DispatchState):
        current = transition(current, policy, attempts_left)
    return current
