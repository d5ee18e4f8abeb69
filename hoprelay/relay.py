"""
Relay scheduling — what happens to a message after it is committed.

    deliver   recipient is this node (or one of its local recipients)
    forward   routing knows next hops; the message leaves with our id appended
    no_route  nobody reachable; keep the message for a future route

Routing itself is an external collaborator (``RoutingTable``); this module
only consults it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol

from hoprelay.errors import NoRoute, RateLimitExceeded, RelayError
from hoprelay.message import Message
from hoprelay.ratelimit import RateLimiter

log = logging.getLogger(__name__)

DELIVER = "deliver"
FORWARD = "forward"
NO_ROUTE = "no_route"

# Re-checks of the relay limiter before a deferred forward is given up
MAX_DEFER_ATTEMPTS = 5


class RoutingTable(Protocol):
    """Reachability oracle: next hops for a recipient, or None if unreachable."""

    def next_hops(self, recipient: str) -> set[str] | None: ...


class StaticRoutingTable:
    """Routes loaded from configuration: recipient -> list of peer ids.

    A ``"*"`` entry is the default route for recipients without their own.
    """

    def __init__(self, routes: Mapping[str, Iterable[str]] | None = None) -> None:
        self._routes = {k: set(v) for k, v in (routes or {}).items()}

    def next_hops(self, recipient: str) -> set[str] | None:
        hops = self._routes.get(recipient) or self._routes.get("*")
        if not hops:
            return None
        return set(hops)

    def add_route(self, recipient: str, peer: str) -> None:
        self._routes.setdefault(recipient, set()).add(peer)


@dataclass
class RelayDecision:
    """Outcome of scheduling one committed message."""

    kind: str
    message: Message
    next_hops: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)  # rate-limited targets
    retry_after: float = 0.0  # seconds until the first deferred target may be retried


ForwardHook = Callable[[str, Message], Awaitable[Any]]


class RelayScheduler:
    """Decide, after a commit, whether to deliver, forward, or hold a message.

    Usage:
        scheduler = RelayScheduler("node-a", StaticRoutingTable(routes),
                                   local_recipients={"alice"})
        decision = await scheduler.schedule(meta)
    """

    def __init__(
        self,
        node_id: str,
        routing: RoutingTable,
        local_recipients: Iterable[str] = (),
        rate_limiter: RateLimiter | None = None,
        forward: ForwardHook | None = None,
    ) -> None:
        self.node_id = node_id
        self.routing = routing
        self.local_recipients = set(local_recipients) | {node_id}
        self.rate_limiter = rate_limiter
        self.forward = forward
        self._tasks: set[asyncio.Task] = set()

    def plan(self, meta: Message) -> RelayDecision:
        """Compute the decision without side effects."""
        if meta.recipient in self.local_recipients:
            return RelayDecision(DELIVER, meta)

        hops = self.routing.next_hops(meta.recipient)
        # Never hand a message back to a relay it already passed through
        targets = sorted(
            h for h in (hops or ())
            if h != self.node_id and h not in meta.hops
        )
        if not targets:
            return RelayDecision(NO_ROUTE, meta)

        outgoing = meta.with_hop(self.node_id)
        allowed, deferred = [], []
        retry_after = 0.0
        for peer in targets:
            if self.rate_limiter is None:
                allowed.append(peer)
                continue
            try:
                self.rate_limiter.check(f"relay:{peer}")
            except RateLimitExceeded as e:
                deferred.append(peer)
                retry_after = max(retry_after, e.retry_after)
            else:
                allowed.append(peer)
        return RelayDecision(FORWARD, outgoing, allowed, deferred, retry_after)

    async def schedule(self, meta: Message) -> RelayDecision:
        """Plan and, for FORWARD decisions, hand the message to the forward hook."""
        decision = self.plan(meta)
        if decision.kind == DELIVER:
            log.info("Message %s delivered to local recipient %s", meta.id[:12], meta.recipient)
        elif decision.kind == NO_ROUTE:
            log.info("No route for %s to %s, retaining", meta.id[:12], meta.recipient)
        else:
            if decision.deferred:
                log.warning(
                    "Relay rate limit deferred %s to %d peers for %.2fs",
                    meta.id[:12], len(decision.deferred), decision.retry_after,
                )
            if self.forward is not None:
                for peer in decision.next_hops:
                    self._spawn(self._forward_one(peer, decision.message))
                for peer in decision.deferred:
                    self._spawn(self._forward_later(peer, decision.message, decision.retry_after))
            log.info(
                "Message %s scheduled for %d next hops", meta.id[:12], len(decision.next_hops),
            )
        return decision

    def require_route(self, meta: Message) -> RelayDecision:
        """Like plan(), but raise NoRoute instead of returning a NO_ROUTE decision."""
        decision = self.plan(meta)
        if decision.kind == NO_ROUTE:
            raise NoRoute(f"No route to {meta.recipient} for {meta.id[:12]}")
        return decision

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _forward_one(self, peer: str, meta: Message) -> None:
        try:
            await self.forward(peer, meta)
        except RelayError as e:
            if e.benign:
                log.debug("Peer %s already has %s", peer[:12], meta.id[:12])
            else:
                log.warning("Forward of %s to %s failed: %s", meta.id[:12], peer[:12], e)
        except Exception as e:
            log.warning("Forward of %s to %s failed: %s", meta.id[:12], peer[:12], e)

    async def _forward_later(self, peer: str, meta: Message, delay: float) -> None:
        """Wait out the relay limiter for ``peer``, then forward."""
        for _ in range(MAX_DEFER_ATTEMPTS):
            await asyncio.sleep(delay)
            try:
                self.rate_limiter.check(f"relay:{peer}")
            except RateLimitExceeded as e:
                delay = e.retry_after
                continue
            await self._forward_one(peer, meta)
            return
        log.warning(
            "Giving up deferred forward of %s to %s; left for sync", meta.id[:12], peer[:12],
        )

    async def drain(self) -> None:
        """Wait for in-flight forwards (used at shutdown and in tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
