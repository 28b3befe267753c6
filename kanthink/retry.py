"""
Small retry combinator over tenacity.

`with_retry` runs a call until it returns a usable value or the
attempts run out, then degrades to a fallback value. The outcome
is a typed result instead of an exception.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar, Union

from loguru import logger
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
)

T = TypeVar("T")


@dataclass
class Ok(Generic[T]):
    value: T
    attempts: int


@dataclass
class Fallback(Generic[T]):
    value: T
    attempts: int
    last_error: str | None = None


@dataclass
class Failed:
    attempts: int
    last_error: str | None = None


RetryResult = Union[Ok, Fallback, Failed]


def _log_before_sleep(label: str) -> Callable[[RetryCallState], None]:
    def _log(state: RetryCallState) -> None:
        outcome = state.outcome
        if outcome is not None and outcome.failed:
            reason = f"error: {outcome.exception()}"
        else:
            reason = "unusable result"
        logger.warning(f"[RETRY] {label} attempt {state.attempt_number} failed ({reason}), retrying")
    return _log


def with_retry(
    fn: Callable[[], T],
    attempts: int = 2,
    backoff: float = 1.0,
    is_usable: Callable[[T], bool] = bool,
    fallback: Callable[[], T] | None = None,
    sleep: Callable[[float], Any] = time.sleep,
    label: str = "call",
) -> RetryResult:
    """
    Call `fn` up to `attempts` times with a fixed `backoff` delay between tries.

    A try fails when `fn` raises or when `is_usable(result)` is false.
    Returns Ok on the first usable value, Fallback(fallback()) when every
    try failed and a fallback is given, Failed otherwise.
    """
    calls = 0

    def _attempt() -> T:
        nonlocal calls
        calls += 1
        return fn()

    retryer = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_fixed(backoff),
        retry=retry_if_exception_type(Exception) | retry_if_result(lambda value: not is_usable(value)),
        before_sleep=_log_before_sleep(label),
        sleep=sleep,
    )

    try:
        value = retryer(_attempt)
        return Ok(value=value, attempts=calls)
    except RetryError as e:
        last = e.last_attempt
        if last.failed:
            last_error = f"{type(last.exception()).__name__}: {last.exception()}"
        else:
            last_error = "no usable result"

    logger.warning(f"[RETRY] {label} exhausted after {calls} attempt(s): {last_error}")
    if fallback is not None:
        return Fallback(value=fallback(), attempts=calls, last_error=last_error)
    return Failed(attempts=calls, last_error=last_error)
