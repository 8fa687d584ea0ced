# src/app/infra/rate_limiter.py
"""
In-process fixed-window admission counters keyed by user and policy.
"""
from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable
from uuid import UUID

from src.app.domain.models import EffectiveRateLimits, PolicyName


@dataclass
class _Window:
    started_at: float
    length: float
    count: int = 0


class FixedWindowRateLimiter:
    """
    Expired windows are swept at most once per sweep interval, so users who
    stop sending requests do not stay in memory.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, sweep_interval_seconds: float = 60.0):
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: dict[tuple[UUID, PolicyName], _Window] = {}
        self._sweep_interval = sweep_interval_seconds
        self._last_sweep = clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def try_acquire(
        self,
        user_id: UUID,
        policy: PolicyName,
        limits: EffectiveRateLimits,
    ) -> tuple[bool, int]:
        """
        Count one request against the user's current window.

        Returns:
            (allowed, retry_after_seconds); retry_after is 0 when allowed
        """
        if limits.bypass:
            return True, 0

        now = self._clock()
        length = limits.window.total_seconds()
        key = (user_id, policy)

        with self._lock:
            if now - self._last_sweep >= self._sweep_interval:
                self._sweep(now)

            window = self._windows.get(key)
            if window is None or now >= window.started_at + window.length or window.length != length:
                window = _Window(started_at=now, length=length)
                self._windows[key] = window

            if window.count >= limits.permit_limit:
                retry_after = max(1, math.ceil(window.started_at + window.length - now))
                return False, retry_after

            window.count += 1
            return True, 0

    def _sweep(self, now: float) -> None:
        expired = [key for key, window in self._windows.items() if now >= window.started_at + window.length]
        for key in expired:
            del self._windows[key]
        self._last_sweep = now

    def reset(self, user_id: UUID) -> None:
        """Forget the user's windows so changed limits apply to the next request."""
        with self._lock:
            for key in [key for key in self._windows if key[0] == user_id]:
                del self._windows[key]
