"""Bounded polling of an external condition.

The probe is re-evaluated from scratch on every attempt. Nothing is cached
between attempts, so a condition has to stay observable once it has been
emitted (for instance a log line that is still present in the full log).
"""

from __future__ import annotations

from typing import Callable
import logging
import time

from .models import PollResult

logger = logging.getLogger(__name__)

Probe = Callable[[], str]
Condition = Callable[[str], bool]


class PollTimeoutError(TimeoutError):
    """Raised when a polled condition is still false once the timeout elapsed."""

    def __init__(self, *, description: str, timeout_seconds: float, attempts: int, last_value: str | None) -> None:
        last_rendered = "<no value>" if last_value is None else repr(_truncate(last_value))
        super().__init__(
            f"Timed out after {timeout_seconds:g}s waiting for {description} "
            f"({attempts} attempts, last observed value: {last_rendered})"
        )
        self.description = description
        self.timeout_seconds = timeout_seconds
        self.attempts = attempts
        self.last_value = last_value


def contains(substring: str) -> Condition:
    return lambda value: substring in value


def not_empty(value: str) -> bool:
    return bool(value.strip())


def wait_for(
    probe: Probe,
    condition: Condition,
    *,
    timeout_seconds: float,
    interval_seconds: float,
    description: str = "condition",
    ignored_errors: tuple[type[BaseException], ...] = (),
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> PollResult:
    """Call ``probe`` until ``condition`` holds for its value or the timeout elapses.

    The first attempt happens immediately. Between attempts the poller sleeps
    for ``interval_seconds``, shortened so that the last attempt lands on the
    deadline. :class:`PollTimeoutError` is raised only after an attempt made
    at or past the deadline still failed.

    Exceptions listed in ``ignored_errors`` count as a failed attempt; any
    other exception from the probe propagates unchanged.
    """
    if timeout_seconds < 0:
        raise ValueError("timeout_seconds must not be negative")
    if interval_seconds <= 0:
        raise ValueError("interval_seconds must be positive")

    started = clock()
    deadline = started + timeout_seconds
    attempts = 0
    last_value: str | None = None

    while True:
        attempts += 1
        try:
            value = probe()
        except ignored_errors as error:
            logger.debug("Attempt %d for %s failed: %s", attempts, description, error)
        else:
            last_value = value
            if condition(value):
                elapsed = clock() - started
                logger.debug("%s satisfied after %d attempts (%.1fs)", description, attempts, elapsed)
                return PollResult(value=value, elapsed_seconds=elapsed, attempts=attempts)

        remaining = deadline - clock()
        if remaining <= 0:
            raise PollTimeoutError(
                description=description,
                timeout_seconds=timeout_seconds,
                attempts=attempts,
                last_value=last_value,
            )
        sleep(min(interval_seconds, remaining))


def wait_for_substring(
    probe: Probe,
    substring: str,
    *,
    timeout_seconds: float,
    interval_seconds: float,
    description: str | None = None,
    **kwargs,
) -> PollResult:
    return wait_for(
        probe,
        contains(substring),
        timeout_seconds=timeout_seconds,
        interval_seconds=interval_seconds,
        description=description or f"output containing {substring!r}",
        **kwargs,
    )


def _truncate(value: str, limit: int = 200) -> str:
    if len(value) <= limit:
        return value
    return f"...{value[-limit:]}"
