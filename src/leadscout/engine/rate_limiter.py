from __future__ import annotations

import random
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional

from ..core.models import RatePolicy


class _SourceGate:
    """FIFO gate for one source: min spacing between request starts plus an in-flight cap."""

    def __init__(
        self,
        policy: RatePolicy,
        *,
        clock: Callable[[], float],
        jitter: Callable[[float], float],
    ) -> None:
        self.policy = policy
        self._clock = clock
        self._jitter = jitter
        self._cond = threading.Condition()
        self._next_ticket = 0
        self._serving = 0
        self._in_flight = 0
        self._next_allowed = 0.0

    def enter(self) -> None:
        with self._cond:
            ticket = self._next_ticket
            self._next_ticket += 1
            while True:
                if ticket == self._serving and self._in_flight < self.policy.max_concurrent:
                    wait = self._next_allowed - self._clock()
                    if wait <= 0:
                        break
                    self._cond.wait(wait)
                else:
                    self._cond.wait()
            self._serving += 1
            self._in_flight += 1
            spacing = self.policy.min_interval_sec + self._jitter(self.policy.jitter_sec)
            self._next_allowed = self._clock() + spacing
            self._cond.notify_all()

    def leave(self) -> None:
        with self._cond:
            self._in_flight -= 1
            self._cond.notify_all()

    @property
    def in_flight(self) -> int:
        with self._cond:
            return self._in_flight


def _uniform_jitter(max_jitter: float) -> float:
    return random.uniform(0.0, max_jitter) if max_jitter > 0 else 0.0


class RateLimiter:
    """Per-source politeness gate.

    Sources are throttled independently. Within one source, callers are
    admitted in arrival order, at most ``max_concurrent`` at a time, and
    consecutive admissions are at least ``min_interval_sec`` (+ jitter) apart.
    The gate never times out a waiter.
    """

    def __init__(
        self,
        policies: Optional[Dict[str, RatePolicy]] = None,
        *,
        default_policy: Optional[RatePolicy] = None,
        clock: Callable[[], float] = time.monotonic,
        jitter: Callable[[float], float] = _uniform_jitter,
    ) -> None:
        self._policies = dict(policies or {})
        self._default = default_policy or RatePolicy()
        self._clock = clock
        self._jitter = jitter
        self._gates: Dict[str, _SourceGate] = {}
        self._lock = threading.Lock()

    def policy_for(self, source: str) -> RatePolicy:
        return self._policies.get(str(source), self._default)

    def _gate(self, source: str) -> _SourceGate:
        key = str(source)
        with self._lock:
            gate = self._gates.get(key)
            if gate is None:
                gate = _SourceGate(self.policy_for(key), clock=self._clock, jitter=self._jitter)
                self._gates[key] = gate
            return gate

    @contextmanager
    def acquire(self, source: str) -> Iterator[None]:
        gate = self._gate(source)
        gate.enter()
        try:
            yield
        finally:
            gate.leave()

    def in_flight(self, source: str) -> int:
        return self._gate(source).in_flight
