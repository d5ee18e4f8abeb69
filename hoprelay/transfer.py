"""
Transfer manager — resumable chunked ingestion (push) and egress (pull).

Per-id state machine:

    Absent -> Receiving(offset) -> Committing -> Stored
                                              -> Rejected -> Absent

Receiving accepts only contiguous continuations from the single lease
holder. Partial bytes are appended durably (fsync per chunk) so a
disconnect leaves the id at its last flushed offset, which ResumeOffset
reports to the next pusher. Busy and RateLimitExceeded leave Receiving
intact; every other failure, including a local storage error, discards
the partial bytes.
"""

from __future__ import annotations

import logging
import time
from typing import AsyncIterable, AsyncIterator, Callable, Iterable, Iterator, Sequence

from hoprelay import DEFAULT_CHUNK_SIZE
from hoprelay.errors import (
    AlreadySeen, ContentMismatch, Expired, IncorrectOffset,
    MessageIdCollision, RelayError, StorageError, UnknownMessage,
)
from hoprelay.lease import Lease, LeaseTable
from hoprelay.message import Message
from hoprelay.ratelimit import AdmissionLimits
from hoprelay.relay import RelayDecision, RelayScheduler
from hoprelay.store import MessageStore, StoreError
from hoprelay.verifier import ContentVerifier, Verifier

log = logging.getLogger(__name__)

Chunks = AsyncIterable[bytes] | Iterable[bytes]


async def _iter_chunks(chunks: Chunks) -> AsyncIterator[bytes]:
    if hasattr(chunks, "__aiter__"):
        async for chunk in chunks:
            yield chunk
    else:
        for chunk in chunks:
            yield chunk


class TransferManager:
    """Push, Pull and ResumeOffset against a MessageStore.

    Usage:
        tm = TransferManager(store, verifier, leases=LeaseTable(), limits=limits,
                             scheduler=scheduler)
        offset = tm.resume_offset(meta)
        decision = await tm.push(meta, offset, chunks, peer=peer_id)
        meta, chunks = tm.pull(msg_id, 0)
    """

    def __init__(
        self,
        store: MessageStore,
        verifier: Verifier,
        leases: LeaseTable | None = None,
        limits: AdmissionLimits | None = None,
        scheduler: RelayScheduler | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.verifier = verifier
        self.leases = leases if leases is not None else LeaseTable()
        self.limits = limits
        self.scheduler = scheduler
        self.chunk_size = chunk_size
        self._clock = clock

    # --- Helpers ---

    def _check_stored(self, meta: Message, now: float) -> None:
        """AlreadySeen / MessageIdCollision for an id that is fully stored."""
        existing = self.store.get(meta.id, now)
        if existing is None:
            return
        if existing.same_content(meta):
            raise AlreadySeen(f"Message {meta.id[:12]} already stored")
        raise MessageIdCollision(
            f"Message {meta.id[:12]} already stored with different content"
        )

    def _partial_record(self, meta: Message) -> Message | None:
        """The in-progress record for ``meta.id``; collision if it is another message."""
        previous = self.store.partial_meta(meta.id)
        if previous is not None and not previous.same_content(meta):
            raise MessageIdCollision(
                f"A different message {meta.id[:12]} is already being received"
            )
        return previous

    def _reject(self, meta: Message, err: RelayError) -> None:
        self.store.discard_partial(meta.id)
        log.warning("Rejected %s: %s (%s)", meta.id[:12], err.code, err)

    def _storage_failed(self, meta: Message, exc: Exception) -> StorageError:
        err = StorageError(f"Storage failure for {meta.id[:12]}: {exc}")
        self._reject(meta, err)
        return err

    # --- Operations ---

    def resume_offset(self, meta: Message) -> int:
        """Bytes durably received for ``meta.id``; 0 if none. Needs no lease."""
        now = self._clock()
        self.verifier.check_expiry(meta, now)
        existing = self.store.get(meta.id, now)
        if existing is not None:
            if not existing.same_content(meta):
                raise MessageIdCollision(
                    f"Message {meta.id[:12]} already stored with different content"
                )
            return existing.length
        if self._partial_record(meta) is None:
            return 0
        return self.store.partial_size(meta.id)

    async def push(
        self,
        meta: Message,
        offset: int,
        chunks: Chunks,
        peer: str = "",
    ) -> RelayDecision | None:
        """Receive content for ``meta`` starting at ``offset``.

        ``chunks`` ending normally means the sender is done: the message is
        verified and committed. An exception raised by ``chunks`` (a dropped
        connection) is propagated with the partial bytes kept for resume.

        Returns the RelayScheduler decision, or None without a scheduler.
        """
        now = self._clock()
        self.verifier.check_expiry(meta, now)
        self._check_stored(meta, now)

        with self.leases.hold(meta.id, peer or "local") as lease:
            previous = self._partial_record(meta)
            if previous is None and self.store.partial_size(meta.id):
                # bytes without a record: left over from a crash before begin_partial
                self.store.discard_partial(meta.id)
            current = self.store.partial_size(meta.id)
            if offset != current:
                raise IncorrectOffset(
                    f"Push for {meta.id[:12]} at offset {offset}, stored offset is {current}"
                )

            previous_hops = previous.hops if previous is not None else None
            try:
                self.verifier.verify_metadata(meta, now, previous_hops)
            except RelayError as e:
                self._reject(meta, e)
                raise

            content = self.verifier.content_verifier(meta)
            try:
                self._replay_partial(meta, content)
                await self._receive(meta, lease, content, chunks)
            except ContentMismatch as e:
                self._reject(meta, e)
                raise

            self._commit(meta, content, previous_hops, peer)

        log.info(
            "Accepted %s for %s from %s (%d bytes)",
            meta.id[:12], meta.recipient, (peer or "local")[:12], meta.length,
        )
        if self.scheduler is None:
            return None
        return await self.scheduler.schedule(meta)

    def _replay_partial(self, meta: Message, content: ContentVerifier) -> None:
        """Record the transfer and feed already durable bytes to ``content``."""
        try:
            self.store.begin_partial(meta)
            for chunk in self.store.read_partial(meta.id, self.chunk_size):
                content.update(chunk)
        except (OSError, StoreError) as e:
            raise self._storage_failed(meta, e) from e

    async def _receive(
        self,
        meta: Message,
        lease: Lease,
        content: ContentVerifier,
        chunks: Chunks,
    ) -> None:
        async for chunk in _iter_chunks(chunks):
            if not chunk:
                continue
            self.leases.ensure(lease)
            content.update(chunk)
            try:
                self.store.append_partial(meta.id, chunk)
            except (OSError, StoreError) as e:
                # a failed append may leave a torn tail past the last fsync
                raise self._storage_failed(meta, e) from e
            self.leases.touch(lease)

    def _commit(
        self,
        meta: Message,
        content: ContentVerifier,
        previous_hops: Sequence[str] | None,
        peer: str,
    ) -> None:
        """Final verification, admission throttle, atomic commit. Lease held."""
        now = self._clock()
        try:
            self.verifier.verify_metadata(meta, now, previous_hops)
            content.finish()
        except RelayError as e:
            self._reject(meta, e)
            raise

        if self.limits is not None:
            # RateLimitExceeded is retryable: the complete partial stays, the
            # sender retries with offset == length and an empty stream.
            self.limits.check(peer, meta.recipient)

        try:
            self.store.commit_partial(meta, now)
        except (AlreadySeen, MessageIdCollision) as e:
            self._reject(meta, e)
            raise
        except (OSError, StoreError) as e:
            raise self._storage_failed(meta, e) from e

    def pull(self, msg_id: str, offset: int = 0) -> tuple[Message, Iterator[bytes]]:
        """Stored metadata plus a lazy content stream from ``offset``. Read-only."""
        meta = self.store.stored(msg_id)
        if meta is None:
            raise UnknownMessage(f"Unknown message {msg_id[:12]}")
        if meta.is_expired(self._clock()):
            raise Expired(f"Message {msg_id[:12]} expired at {meta.expires_at}")
        if offset < 0 or offset > meta.length:
            raise IncorrectOffset(
                f"Pull offset {offset} outside 0..{meta.length} for {msg_id[:12]}"
            )
        return meta, self.store.read(msg_id, offset, self.chunk_size)

    def reap_idle_leases(self) -> list[str]:
        """Release leases without recent progress; their partial bytes stay."""
        return self.leases.reap_idle()
