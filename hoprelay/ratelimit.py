"""
Token-bucket admission throttle, keyed by peer or recipient.

Each key gets a bucket of ``burst`` tokens refilled at ``rate`` tokens per
second. ``check`` consumes one token or raises RateLimitExceeded carrying
the time until the next token is available.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable

from hoprelay.errors import RateLimitExceeded

# Buckets untouched this long are dropped by prune()
_IDLE_BUCKET_SECONDS = 600.0


@dataclass
class _Bucket:
    tokens: float
    updated: float


class RateLimiter:
    """Per-key token buckets.

    Usage:
        limiter = RateLimiter(rate=5.0, burst=20)
        limiter.check(f"peer:{peer_id}")
    """

    def __init__(
        self,
        rate: float,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if rate <= 0 or burst < 1:
            raise ValueError("rate must be positive and burst at least 1")
        self.rate = rate
        self.burst = burst
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: dict[str, _Bucket] = {}

    def _refill(self, key: str, now: float) -> _Bucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = _Bucket(tokens=float(self.burst), updated=now)
            self._buckets[key] = bucket
        else:
            elapsed = max(0.0, now - bucket.updated)
            bucket.tokens = min(float(self.burst), bucket.tokens + elapsed * self.rate)
            bucket.updated = now
        return bucket

    def check(self, key: str, cost: float = 1.0) -> None:
        """Consume ``cost`` tokens for ``key`` or raise RateLimitExceeded."""
        now = self._clock()
        with self._lock:
            bucket = self._refill(key, now)
            if bucket.tokens >= cost:
                bucket.tokens -= cost
                return
            retry_after = (cost - bucket.tokens) / self.rate
        raise RateLimitExceeded(
            self.rate,
            retry_after=retry_after,
            detail=f"Rate limit for {key[:24]} exceeded, retry in {retry_after:.2f}s",
        )

    def allow(self, key: str) -> bool:
        """Like check(), but returns False instead of raising."""
        try:
            self.check(key)
        except RateLimitExceeded:
            return False
        return True

    def prune(self) -> int:
        """Drop buckets that have been idle long enough to be full again."""
        now = self._clock()
        with self._lock:
            stale = [
                k for k, b in self._buckets.items()
                if now - b.updated > _IDLE_BUCKET_SECONDS
            ]
            for k in stale:
                del self._buckets[k]
        return len(stale)


class AdmissionLimits:
    """The two throttles consulted before a commit: per peer, per recipient.

    Checked in that order, so a flooding peer is blamed before the
    recipient's bucket is drained.
    """

    def __init__(self, per_peer: RateLimiter, per_recipient: RateLimiter) -> None:
        self.per_peer = per_peer
        self.per_recipient = per_recipient

    def check(self, peer: str, recipient: str) -> None:
        if peer:
            self.per_peer.check(f"peer:{peer}")
        self.per_recipient.check(f"recipient:{recipient}")

    def prune(self) -> int:
        return self.per_peer.prune() + self.per_recipient.prune()
