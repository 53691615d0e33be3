"""
Transaction Rate Limiting

WHY: Bound how many sales, orders and STK pushes one client can start per
window. The counting store is injected, so a single process can keep it in
memory while several instances share one backing store.

DESIGN:
- CounterStore is the only stateful piece; SlidingWindowLimiter is pure policy.
- The window slides: hits older than `window_seconds` stop counting.
- A rejected attempt is not recorded, so a blocked client recovers as soon
  as old hits age out.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Protocol

from flask import Flask, current_app


class CounterStore(Protocol):
    def hit_if_below(self, key: str, limit: int, now: float, window_seconds: float) -> tuple[bool, int, float]:
        """
        Drop hits older than the window, then record one hit if fewer than
        `limit` remain. Returns (allowed, hits_in_window, oldest_hit_time).
        """
        ...

    def reset(self, key: str | None = None) -> None:
        ...


class InMemoryCounterStore:
    """
    Per-process store: one deque of hit timestamps per key.

    Every `sweep_every` calls, keys whose newest hit has left the window are
    dropped so one-off clients do not accumulate.
    """

    def __init__(self, sweep_every: int = 256):
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._sweep_every = max(1, sweep_every)
        self._calls = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._hits)

    def hit_if_below(self, key: str, limit: int, now: float, window_seconds: float) -> tuple[bool, int, float]:
        cutoff = now - window_seconds
        with self._lock:
            self._calls += 1
            if self._calls >= self._sweep_every:
                self._calls = 0
                self._sweep(cutoff)

            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= limit:
                return False, len(hits), hits[0]
            hits.append(now)
            return True, len(hits), hits[0]

    def _sweep(self, cutoff: float) -> None:
        stale = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in stale:
            del self._hits[key]

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    remaining: int
    retry_after_seconds: int


class SlidingWindowLimiter:
    def __init__(self, store: CounterStore, *, limit: int, window_seconds: float, clock=time.monotonic):
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock

    def check(self, key: str) -> RateDecision:
        now = self._clock()
        allowed, count, oldest = self.store.hit_if_below(key, self.limit, now, self.window_seconds)
        if allowed:
            return RateDecision(True, self.limit - count, 0)
        retry_after = max(1, int(oldest + self.window_seconds - now + 0.999))
        return RateDecision(False, 0, retry_after)


def init_rate_limiter(app: Flask, store: CounterStore | None = None) -> SlidingWindowLimiter:
    limiter = SlidingWindowLimiter(
        store or InMemoryCounterStore(),
        limit=int(app.config.get("TRANSACTION_RATE_LIMIT", 30)),
        window_seconds=float(app.config.get("TRANSACTION_RATE_WINDOW_SECONDS", 60)),
    )
    app.extensions["rate_limiter"] = limiter
    return limiter


def get_limiter() -> SlidingWindowLimiter:
    limiter = current_app.extensions.get("rate_limiter")
    if limiter is None:
        limiter = init_rate_limiter(current_app._get_current_object())
    return limiter
