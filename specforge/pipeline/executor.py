from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

from ..domain.errors import (
    ParseFailure,
    PipelineCancelled,
    PortFailure,
    RetryExhausted,
    SpecForgeError,
    TruncatedError,
    ValidationRejected,
)
from ..llm.port import Completion, GenerationPort, GenerationRequest
from .cancel import CancelToken
from .sanitizer import extract

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 30.0

Validator = Callable[[Any, int, int], Optional[str]]


class RetryState:
    ATTEMPTING = "attempting"
    BACKING_OFF = "backing_off"
    ACCEPTED = "accepted"
    EXHAUSTED = "exhausted"
    TRUNCATED = "truncated"


class Outcome:
    ACCEPTED = "accepted"
    TRUNCATED = "truncated"
    PORT_ERROR = "port_error"
    PARSE_ERROR = "parse_error"
    REJECTED = "rejected"


def transition(outcome: str, *, attempt: int, max_retries: int) -> str:
    if outcome == Outcome.ACCEPTED:
        return RetryState.ACCEPTED
    if outcome == Outcome.TRUNCATED:
        return RetryState.TRUNCATED
    if outcome in (Outcome.PORT_ERROR, Outcome.PARSE_ERROR, Outcome.REJECTED):
        return RetryState.BACKING_OFF if attempt < max_retries else RetryState.EXHAUSTED
    raise ValueError(f"unknown attempt outcome: {outcome}")


def backoff_delay(attempt: int) -> float:
    if attempt <= 0:
        return 0.0
    return float(min(2**attempt, MAX_BACKOFF_SECONDS))


def _attempt_once(
    port: GenerationPort,
    request: GenerationRequest,
    *,
    attempt: int,
    max_retries: int,
    decode: Callable[[str], Any],
    validate: Optional[Validator],
) -> tuple[str, Any]:
    """Run one attempt; the second element is the decoded value when accepted, else the error."""
    try:
        response = port.generate(request)
    except PortFailure as e:
        return Outcome.PORT_ERROR, e

    if response.completion == Completion.LENGTH_LIMITED:
        return Outcome.TRUNCATED, TruncatedError(request.label, consumed_size=response.consumed_size)
    if response.completion != Completion.NORMAL:
        return Outcome.PORT_ERROR, PortFailure(response.detail or "generation failed")

    try:
        value = decode(extract(response.content))
    except ParseFailure as e:
        return Outcome.PARSE_ERROR, e

    if validate is not None:
        reason = validate(value, attempt, max_retries)
        if reason:
            return Outcome.REJECTED, ValidationRejected(reason)
    return Outcome.ACCEPTED, value


def _backoff(delay: float, *, sleep: Optional[Callable[[float], Any]], cancel: Optional[CancelToken]) -> None:
    if sleep is not None:
        sleep(delay)
    elif cancel is not None:
        if cancel.wait(delay):
            raise PipelineCancelled()
    else:
        time.sleep(delay)
    if cancel is not None:
        cancel.raise_if_cancelled()


def execute(
    port: GenerationPort,
    request: GenerationRequest,
    *,
    max_retries: int,
    decode: Callable[[str], Any],
    validate: Optional[Validator] = None,
    sleep: Optional[Callable[[float], Any]] = None,
    cancel: Optional[CancelToken] = None,
) -> Any:
    label = request.label or "request"
    state = RetryState.ATTEMPTING
    attempt = 0
    last_error: Optional[SpecForgeError] = None

    while True:
        if state == RetryState.BACKING_OFF:
            attempt += 1
            delay = backoff_delay(attempt)
            logger.info("%s: retry %d/%d in %.0fs", label, attempt, max_retries, delay)
            _backoff(delay, sleep=sleep, cancel=cancel)
            state = RetryState.ATTEMPTING
            continue

        if cancel is not None:
            cancel.raise_if_cancelled()
        outcome, payload = _attempt_once(
            port,
            request,
            attempt=attempt,
            max_retries=max_retries,
            decode=decode,
            validate=validate,
        )
        state = transition(outcome, attempt=attempt, max_retries=max_retries)
        if state == RetryState.ACCEPTED:
            return payload
        error: SpecForgeError = payload
        if state == RetryState.TRUNCATED:
            logger.warning("%s: response truncated, not retrying in place", label)
            raise error

        last_error = error
        logger.warning("%s: attempt %d/%d failed: %s", label, attempt + 1, max_retries + 1, error)
        if state == RetryState.EXHAUSTED:
            raise RetryExhausted(str(last_error), attempts=attempt + 1) from last_error


__all__ = ["Outcome", "RetryState", "backoff_delay", "execute", "transition"]
