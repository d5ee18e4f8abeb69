"""
Transfer leases — exclusive, idle-bounded write access to one message id.

A lease is the only cross-request synchronization in the relay: there is no
lock spanning several ids. Leases are acquired and released through
``LeaseTable.hold`` so every exit path gives the id back.

A lease that makes no forward progress for ``idle_timeout`` seconds may be
reclaimed by the next entrant (or by ``reap_idle``). The reclaimed holder
finds out on its next ``ensure`` call and must stop writing.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterator

from hoprelay import DEFAULT_LEASE_IDLE_TIMEOUT
from hoprelay.errors import Busy

log = logging.getLogger(__name__)


@dataclass
class Lease:
    """Exclusive write access to ``msg_id`` held by ``holder``."""

    msg_id: str
    holder: str
    deadline: float
    token: str = field(default_factory=lambda: os.urandom(8).hex())


class LeaseTable:
    """Concurrency-safe map of message id -> active Lease.

    Usage:
        leases = LeaseTable(idle_timeout=60.0)
        with leases.hold(msg_id, holder=peer) as lease:
            ...
            leases.touch(lease)   # after each durable write
    """

    def __init__(
        self,
        idle_timeout: float = DEFAULT_LEASE_IDLE_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._leases: dict[str, Lease] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._leases)

    def holder(self, msg_id: str) -> str | None:
        """Return the current live holder of ``msg_id``, if any."""
        now = self._clock()
        with self._lock:
            lease = self._leases.get(msg_id)
            if lease is None or lease.deadline < now:
                return None
            return lease.holder

    def acquire(self, msg_id: str, holder: str) -> Lease:
        """Take the lease for ``msg_id``. Raises Busy if someone else holds it.

        Not reentrant: a second acquire by the same holder is also Busy.
        """
        now = self._clock()
        with self._lock:
            current = self._leases.get(msg_id)
            if current is not None:
                if current.deadline >= now:
                    raise Busy(
                        f"Transfer of {msg_id[:12]} in progress",
                        retry_after=max(0.0, current.deadline - now),
                    )
                log.info(
                    "Reclaiming idle lease on %s from %s",
                    msg_id[:12], current.holder[:12],
                )
            lease = Lease(msg_id=msg_id, holder=holder, deadline=now + self.idle_timeout)
            self._leases[msg_id] = lease
            return lease

    def release(self, lease: Lease) -> None:
        """Give the lease back. No-op if it was already reclaimed."""
        with self._lock:
            current = self._leases.get(lease.msg_id)
            if current is not None and current.token == lease.token:
                del self._leases[lease.msg_id]

    def ensure(self, lease: Lease) -> None:
        """Raise Busy if ``lease`` is no longer the live lease for its id."""
        now = self._clock()
        with self._lock:
            current = self._leases.get(lease.msg_id)
            if current is None or current.token != lease.token or current.deadline < now:
                raise Busy(f"Lease on {lease.msg_id[:12]} was lost")

    def touch(self, lease: Lease) -> None:
        """Record forward progress: push the idle deadline out."""
        self.ensure(lease)
        with self._lock:
            lease.deadline = self._clock() + self.idle_timeout

    @contextmanager
    def hold(self, msg_id: str, holder: str) -> Iterator[Lease]:
        lease = self.acquire(msg_id, holder)
        try:
            yield lease
        finally:
            self.release(lease)

    def reap_idle(self) -> list[str]:
        """Release all leases past their idle deadline. Returns their ids."""
        now = self._clock()
        with self._lock:
            idle = [k for k, v in self._leases.items() if v.deadline < now]
            for k in idle:
                del self._leases[k]
        if idle:
            log.info("Released %d idle transfer leases", len(idle))
        return idle
