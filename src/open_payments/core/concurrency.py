"""
Cancellation and single-flight primitives for the token cache.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, Optional, TypeVar

from .errors import FlightConflict, OperationCancelled

__all__ = ["CancellationToken", "SingleFlight", "cancellable_sleep"]

T = TypeVar("T")

_JOIN_SLICE = 0.05


class CancellationToken:
    """
    A cancel flag with an optional deadline.

    Waiting on the token returns early when it is cancelled; an expired
    deadline counts as cancellation.
    """

    def __init__(self, timeout: Optional[float] = None, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._event = threading.Event()
        self._clock = clock
        self.deadline = clock() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self.deadline is not None and self._clock() >= self.deadline

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - self._clock())

    def raise_if_cancelled(self, what: str = "operation") -> None:
        if self.cancelled:
            raise OperationCancelled(f"{what} was cancelled")

    def sleep(self, seconds: float) -> None:
        """Sleep up to ``seconds``; raises :class:`OperationCancelled` if cancelled meanwhile."""
        remaining = self.remaining()
        if remaining is not None and remaining < seconds:
            self._event.wait(remaining)
            raise OperationCancelled("deadline reached while waiting")
        if self._event.wait(max(0.0, seconds)):
            raise OperationCancelled("cancelled while waiting")


def cancellable_sleep(seconds: float, cancel: Optional[CancellationToken] = None) -> None:
    (cancel or CancellationToken()).sleep(seconds)


class _Flight:
    __slots__ = ("future", "waiters", "token", "kind")

    def __init__(self, kind: Optional[str] = None) -> None:
        self.future: Future = Future()
        self.waiters = 0
        self.token = CancellationToken()
        self.kind = kind


class SingleFlight:
    """
    At most one running call per key; concurrent callers share its result.

    The lock guards only the key map. The call itself is handed to
    ``submit`` (an executor's ``submit``, or anything that starts
    ``fn(*args)`` on another thread) outside the lock. A caller that gives up
    leaves only its own wait; when the last waiter leaves, the flight's
    cancellation token is set so the running call can stop early.
    """

    def __init__(self, submit: Callable[..., Any]) -> None:
        self._submit = submit
        self._lock = threading.Lock()
        self._flights: Dict[str, _Flight] = {}

    def in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._flights

    def _join(self, key: str, fn: Callable[[CancellationToken], T], kind: Optional[str]) -> _Flight:
        with self._lock:
            flight = self._flights.get(key)
            started = flight is None
            if started:
                flight = _Flight(kind)
                self._flights[key] = flight
            elif kind is not None and flight.kind != kind:
                raise FlightConflict(
                    f"A {flight.kind or 'different'} call for {key} is already running",
                    scope_key=key,
                )
            flight.waiters += 1
        if started:
            try:
                self._submit(self._run, key, flight, fn)
            except RuntimeError as exc:
                self._finish(key, flight)
                flight.future.set_exception(exc)
        return flight

    def _run(self, key: str, flight: _Flight, fn: Callable[[CancellationToken], T]) -> None:
        try:
            result = fn(flight.token)
        except BaseException as exc:  # noqa: BLE001
            self._finish(key, flight)
            flight.future.set_exception(exc)
        else:
            self._finish(key, flight)
            flight.future.set_result(result)

    def _finish(self, key: str, flight: _Flight) -> None:
        with self._lock:
            if self._flights.get(key) is flight:
                del self._flights[key]

    def _leave(self, flight: _Flight) -> None:
        with self._lock:
            flight.waiters -= 1
            abandoned = flight.waiters == 0 and not flight.future.done()
        if abandoned:
            flight.token.cancel()

    def do(
        self,
        key: str,
        fn: Callable[[CancellationToken], T],
        *,
        cancel: Optional[CancellationToken] = None,
        kind: Optional[str] = None,
    ) -> T:
        """
        Run ``fn`` for ``key`` unless a call is already running, then wait for it.

        A caller that passes ``kind`` only joins a running call of the same
        kind and gets :class:`FlightConflict` otherwise; without ``kind`` it
        joins whatever is running. Raises :class:`OperationCancelled` when
        ``cancel`` fires first.
        """
        while True:
            flight = self._join(key, fn, kind)
            try:
                return self._wait(key, flight, cancel)
            except OperationCancelled:
                # An abandoned flight that we joined while it was winding
                # down; start a fresh one unless we were cancelled ourselves.
                if flight.token.cancelled and not (cancel is not None and cancel.cancelled):
                    continue
                raise
            finally:
                self._leave(flight)

    def _wait(self, key: str, flight: _Flight, cancel: Optional[CancellationToken]) -> T:
        if cancel is None:
            return flight.future.result()
        while True:
            if cancel.cancelled:
                raise OperationCancelled(f"wait for {key} was cancelled")
            remaining = cancel.remaining()
            slice_ = _JOIN_SLICE if remaining is None else min(_JOIN_SLICE, remaining)
            try:
                return flight.future.result(timeout=slice_)
            except FutureTimeout:
                continue
