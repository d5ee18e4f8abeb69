"""
Node capabilities — what a peer (local or remote) can do for you.

A node may be a pure relay (diff, push, pull, resume offset), a pure store
(manifest, lookup, purge), or both. Callers type against the smallest
capability they need instead of a concrete class. ``LocalNode`` joins the
in-process engines into the combined capability; ``RelayClient`` gives the
same relay surface for a remote peer.
"""

from __future__ import annotations

from typing import Iterable, Iterator, Protocol, runtime_checkable

from hoprelay import DEFAULT_DIFF_BATCH_SIZE
from hoprelay.message import Message
from hoprelay.relay import RelayDecision
from hoprelay.store import MessageStore
from hoprelay.sync import SyncEngine
from hoprelay.transfer import Chunks, TransferManager


@runtime_checkable
class RelayCapability(Protocol):
    async def diff(self, ids: list[str]) -> list[bool]: ...

    async def push(
        self, meta: Message, offset: int, chunks: Chunks,
    ) -> RelayDecision | None: ...

    async def pull(self, msg_id: str, offset: int = 0) -> tuple[Message, bytes]: ...

    async def resume_offset(self, meta: Message) -> int: ...


@runtime_checkable
class StoreCapability(Protocol):
    def manifest(self) -> Iterable[Message]: ...

    def get(self, msg_id: str) -> Message | None: ...

    def purge_expired(self) -> int: ...


@runtime_checkable
class NodeCapability(RelayCapability, StoreCapability, Protocol):
    pass


class LocalNode:
    """In-process node satisfying NodeCapability.

    ``peer`` names the party on whose behalf pushes are made; it keys the
    lease holder and the per-peer rate limit. With ``node_id`` set, pulled
    copies carry that id as their latest hop.
    """

    def __init__(
        self,
        store: MessageStore,
        transfer: TransferManager,
        sync: SyncEngine,
        peer: str = "local",
        node_id: str | None = None,
    ) -> None:
        self.store = store
        self.transfer = transfer
        self.sync = sync
        self.peer = peer
        self.node_id = node_id

    async def diff(self, ids: list[str]) -> list[bool]:
        return self.sync.answer(ids)

    async def push(
        self, meta: Message, offset: int, chunks: Chunks,
    ) -> RelayDecision | None:
        return await self.transfer.push(meta, offset, chunks, peer=self.peer)

    async def pull(self, msg_id: str, offset: int = 0) -> tuple[Message, bytes]:
        meta, stream = self.transfer.pull(msg_id, offset)
        if self.node_id:
            meta = meta.with_hop(self.node_id)
        return meta, b"".join(stream)

    async def resume_offset(self, meta: Message) -> int:
        return self.transfer.resume_offset(meta)

    def manifest(self) -> Iterator[Message]:
        return self.store.manifest()

    def get(self, msg_id: str) -> Message | None:
        return self.store.get(msg_id)

    def purge_expired(self) -> int:
        return self.store.purge_expired()


async def copy_missing(source: NodeCapability, target: RelayCapability, ids: list[str]) -> int:
    """Copy every message in ``ids`` that ``target`` lacks from ``source``.

    Resumes from the target's offset and pushes the metadata ``source.pull``
    returns, so hops appended by the source travel with the copy. Returns the
    number of messages copied.
    """
    copied = 0
    for i in range(0, len(ids), DEFAULT_DIFF_BATCH_SIZE):
        batch = ids[i:i + DEFAULT_DIFF_BATCH_SIZE]
        answers = await target.diff(batch)
        for msg_id, present in zip(batch, answers):
            if present:
                continue
            meta = source.get(msg_id)
            if meta is None:
                continue
            offset = await target.resume_offset(meta)
            pulled, content = await source.pull(msg_id, offset)
            await target.push(pulled, offset, [content])
            copied += 1
    return copied
