"""
Diff engine — batch-wise set difference between two peers' stores.

The initiator streams batches of message ids; for every batch the responder
answers with one boolean per id, same order, same batch boundary:
True if it holds that (unexpired) message, False otherwise. Batch i is
answered completely before batch i+1 is read, so answers can never be
reordered or merged across requests.
"""

from __future__ import annotations

import logging
import time
from typing import AsyncIterable, AsyncIterator, Awaitable, Callable, Iterable, Sequence

from hoprelay import DEFAULT_DIFF_BATCH_SIZE, MAX_DIFF_BATCH_SIZE
from hoprelay.message import MAX_ID_LENGTH
from hoprelay.p2p.protocol import ProtocolError
from hoprelay.store import MessageStore

log = logging.getLogger(__name__)

Exchange = Callable[[list[str]], Awaitable[Sequence[bool]]]


class SyncEngine:
    """Answer and initiate Diff exchanges against a MessageStore.

    Usage (responder):
        async for answers in engine.respond(batches):
            await send(answers)

    Usage (initiator):
        missing = await engine.find_missing(ids, exchange=client_batch_call)
    """

    def __init__(
        self,
        store: MessageStore,
        max_batch: int = MAX_DIFF_BATCH_SIZE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.max_batch = max_batch
        self._clock = clock

    def _validate_batch(self, ids: object) -> list[str]:
        if not isinstance(ids, list):
            raise ProtocolError("Diff batch must be a list of ids")
        if len(ids) > self.max_batch:
            raise ProtocolError(
                f"Diff batch of {len(ids)} ids exceeds max {self.max_batch}"
            )
        for msg_id in ids:
            if not isinstance(msg_id, str) or not msg_id or len(msg_id) > MAX_ID_LENGTH:
                raise ProtocolError(f"Invalid message id in diff batch: {msg_id!r}")
        return ids

    def answer(self, ids: list[str], now: float | None = None) -> list[bool]:
        """Presence of each id in the local store, in input order."""
        ids = self._validate_batch(ids)
        now = self._clock() if now is None else now
        return [self.store.has_content(msg_id, now) for msg_id in ids]

    async def respond(
        self, batches: AsyncIterable[list[str]],
    ) -> AsyncIterator[list[bool]]:
        """Answer each incoming batch before reading the next one."""
        count = 0
        async for ids in batches:
            answers = self.answer(ids)
            count += 1
            yield answers
        log.debug("Diff stream closed after %d batches", count)

    def local_ids(self) -> list[str]:
        """Ids of every non-expired local message (the usual Diff input)."""
        return [meta.id for meta in self.store.manifest(self._clock())]

    async def find_missing(
        self,
        ids: Iterable[str],
        exchange: Exchange,
        batch_size: int = DEFAULT_DIFF_BATCH_SIZE,
    ) -> list[str]:
        return await find_missing(ids, exchange, min(batch_size, self.max_batch))


async def find_missing(
    ids: Iterable[str],
    exchange: Exchange,
    batch_size: int = DEFAULT_DIFF_BATCH_SIZE,
) -> list[str]:
    """Ask the peer about ``ids`` in batches; return those it lacks.

    ``exchange`` sends one batch and returns the peer's answers for it.
    """
    batch_size = max(1, min(batch_size, MAX_DIFF_BATCH_SIZE))
    ids = list(ids)
    missing: list[str] = []
    for i in range(0, len(ids), batch_size):
        batch = ids[i:i + batch_size]
        answers = list(await exchange(batch))
        if len(answers) != len(batch):
            raise ProtocolError(
                f"Diff answer has {len(answers)} entries for a batch of {len(batch)}"
            )
        missing.extend(msg_id for msg_id, present in zip(batch, answers) if not present)
    log.info("Diff: peer lacks %d of %d messages", len(missing), len(ids))
    return missing
