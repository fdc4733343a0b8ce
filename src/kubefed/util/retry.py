"""Bounded retry helpers.

``retry_on`` is the single retry combinator used by every write path:
the callable is re-invoked after an exponentially growing delay for as
long as it raises a retriable error and attempts remain.  Callables are
expected to re-read whatever state they need on each attempt.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from typing import TypeVar

from pydantic import BaseModel, Field

from kubefed.client.errors import ConflictError

T = TypeVar("T")


class Backoff(BaseModel):
    """Exponential backoff schedule."""

    initial: float = Field(0.01, ge=0)
    factor: float = Field(2.0, ge=1)
    max_delay: float = Field(1.0, ge=0)
    steps: int = Field(5, ge=1)
    """Total number of attempts, including the first."""

    def delays(self) -> Iterator[float]:
        """Delays to wait between attempts (``steps - 1`` values)."""
        delay = self.initial
        for _ in range(self.steps - 1):
            yield min(delay, self.max_delay)
            delay *= self.factor


DEFAULT_RETRY = Backoff()
ONE_RETRY = Backoff(initial=0.0, steps=2)


def retry_on(
    retriable: tuple[type[BaseException], ...],
    fn: Callable[[], T],
    backoff: Backoff = DEFAULT_RETRY,
    *,
    stop_event: threading.Event | None = None,
    should_retry: Callable[[BaseException], bool] | None = None,
) -> T:
    """Call *fn* until it succeeds, retrying on *retriable* errors.

    The last error is re-raised once attempts are exhausted, *stop_event*
    is set, or *should_retry* rejects it.
    """
    delays = backoff.delays()
    while True:
        try:
            return fn()
        except retriable as exc:
            if should_retry is not None and not should_retry(exc):
                raise
            delay = next(delays, None)
            if delay is None:
                raise
            if stop_event is not None:
                if stop_event.wait(delay):
                    raise
            elif delay > 0:
                time.sleep(delay)


def retry_on_conflict(
    fn: Callable[[], T],
    backoff: Backoff = DEFAULT_RETRY,
) -> T:
    """Retry *fn* while it raises :class:`ConflictError`."""
    return retry_on((ConflictError,), fn, backoff)


def poll_until(
    condition: Callable[[], bool],
    *,
    interval: float = 0.1,
    timeout: float = 30.0,
    stop_event: threading.Event | None = None,
) -> bool:
    """Evaluate *condition* every *interval* seconds until it holds.

    Returns False on timeout or when *stop_event* is set.
    """
    deadline = time.monotonic() + timeout
    while True:
        if condition():
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        wait = min(interval, remaining)
        if stop_event is not None:
            if stop_event.wait(wait):
                return False
        else:
            time.sleep(wait)
