"""Tests for the retry helpers."""

from __future__ import annotations

import threading

import pytest

from kubefed.client.errors import ApiError, ConflictError, NotFoundError
from kubefed.util.retry import Backoff, poll_until, retry_on, retry_on_conflict

FAST = Backoff(initial=0.0, steps=3)


class _Flaky:
    def __init__(self, errors: list[Exception]) -> None:
        self.errors = list(errors)
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class TestBackoff:
    def test_delays_capped(self) -> None:
        b = Backoff(initial=0.5, factor=2, max_delay=1.5, steps=5)
        assert list(b.delays()) == [0.5, 1.0, 1.5, 1.5]

    def test_single_step_has_no_delays(self) -> None:
        assert list(Backoff(steps=1).delays()) == []


class TestRetryOn:
    def test_succeeds_after_retries(self) -> None:
        fn = _Flaky([ApiError(), ApiError()])
        assert retry_on((ApiError,), fn, FAST) == "ok"
        assert fn.calls == 3

    def test_exhausted(self) -> None:
        fn = _Flaky([ApiError()] * 3)
        with pytest.raises(ApiError):
            retry_on((ApiError,), fn, FAST)
        assert fn.calls == 3

    def test_non_retriable_propagates(self) -> None:
        fn = _Flaky([ValueError("no")])
        with pytest.raises(ValueError):
            retry_on((ApiError,), fn, FAST)
        assert fn.calls == 1

    def test_should_retry_rejects(self) -> None:
        fn = _Flaky([NotFoundError()])
        with pytest.raises(NotFoundError):
            retry_on(
                (ApiError,),
                fn,
                FAST,
                should_retry=lambda e: not isinstance(e, NotFoundError),
            )
        assert fn.calls == 1

    def test_stop_event_aborts(self) -> None:
        stop = threading.Event()
        stop.set()
        fn = _Flaky([ApiError(), ApiError()])
        with pytest.raises(ApiError):
            retry_on((ApiError,), fn, Backoff(initial=1.0, steps=3), stop_event=stop)
        assert fn.calls == 1

    def test_retry_on_conflict(self) -> None:
        fn = _Flaky([ConflictError()])
        assert retry_on_conflict(fn, FAST) == "ok"

    def test_retry_on_conflict_ignores_other_errors(self) -> None:
        fn = _Flaky([ApiError()])
        with pytest.raises(ApiError):
            retry_on_conflict(fn, FAST)
        assert fn.calls == 1


class TestPollUntil:
    def test_true_immediately(self) -> None:
        assert poll_until(lambda: True, timeout=0)

    def test_timeout(self) -> None:
        assert not poll_until(lambda: False, interval=0.01, timeout=0.05)

    def test_stop_event(self) -> None:
        stop = threading.Event()
        stop.set()
        assert not poll_until(lambda: False, interval=0.01, timeout=5, stop_event=stop)
