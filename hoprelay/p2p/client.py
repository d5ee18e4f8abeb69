"""
Relay client — the initiating side of the five stream operations.

Each call opens its own authenticated stream, so operations against the
same peer can run concurrently. ERROR frames are turned back into the
classified exceptions from ``hoprelay.errors``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Iterable

from hoprelay import DEFAULT_CHUNK_SIZE, DEFAULT_DIFF_BATCH_SIZE
from hoprelay.errors import AlreadySeen, error_from_code
from hoprelay.message import Message
from hoprelay.p2p.connection import PeerConnection
from hoprelay.p2p.protocol import (
    DIFF_END, DIFF_REQ, DIFF_RES, ERROR, MANIFEST_ENTRY, OPEN, PUSH_END,
    READY, RESULT, CHUNK,
    OP_DIFF, OP_MANIFEST, OP_PULL, OP_PUSH, OP_RESUME_OFFSET,
    ProtocolError, chunk_data, chunk_message, make_message,
)
from hoprelay.relay import RelayDecision
from hoprelay.store import MessageStore
from hoprelay.sync import find_missing
from hoprelay.transfer import Chunks, _iter_chunks

log = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10.0


def _raise_if_error(msg: dict) -> None:
    if msg["type"] == ERROR:
        raise error_from_code(msg["payload"])


class RelayClient:
    """Run Diff / Push / Pull / ResumeOffset / Manifest against one peer.

    Usage:
        client = RelayClient("10.0.0.2", 9745, our_privkey, our_pubkey)
        missing = await client.find_missing(local_ids)
        for meta in missing_messages:
            await client.push_message(store, meta)
    """

    def __init__(
        self,
        host: str,
        port: int,
        our_privkey: bytes,
        our_pubkey: str,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.host = host
        self.port = port
        self.our_privkey = our_privkey
        self.our_pubkey = our_pubkey
        self.chunk_size = chunk_size

    async def _open(self, op: str, args: dict) -> PeerConnection:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(self.host, self.port), timeout=CONNECT_TIMEOUT,
        )
        conn = PeerConnection(reader, writer, our_privkey=self.our_privkey)
        try:
            await conn.handshake(self.our_pubkey)
            await conn.send(make_message(OPEN, {"op": op, "args": args}))
        except Exception:
            await conn.close()
            raise
        return conn

    # --- Diff ---

    async def _exchange(self, conn: PeerConnection, ids: list[str]) -> list[bool]:
        """Send one DIFF_REQ batch and read its DIFF_RES."""
        await conn.send(make_message(DIFF_REQ, {"ids": ids}))
        reply = await conn.expect(DIFF_RES)
        _raise_if_error(reply)
        present = reply["payload"]["present"]
        if not isinstance(present, list) or len(present) != len(ids):
            raise ProtocolError("Diff answer does not match its batch")
        return [bool(p) for p in present]

    async def _end_diff(self, conn: PeerConnection) -> None:
        await conn.send(make_message(DIFF_END))
        _raise_if_error(await conn.expect(RESULT))

    async def diff(self, ids: list[str]) -> list[bool]:
        """Presence of each id on the peer, in input order."""
        conn = await self._open(OP_DIFF, {})
        try:
            answers = await self._exchange(conn, list(ids))
            await self._end_diff(conn)
            return answers
        finally:
            await conn.close()

    async def find_missing(
        self, ids: Iterable[str], batch_size: int = DEFAULT_DIFF_BATCH_SIZE,
    ) -> list[str]:
        """Ids the peer lacks, asked batch by batch over a single Diff stream."""
        conn = await self._open(OP_DIFF, {})
        try:
            missing = await find_missing(
                ids, lambda batch: self._exchange(conn, batch), batch_size,
            )
            await self._end_diff(conn)
            return missing
        finally:
            await conn.close()

    # --- Push ---

    async def push(self, meta: Message, offset: int, chunks: Chunks) -> RelayDecision:
        """Stream content for ``meta`` from ``offset``; returns the peer's decision."""
        conn = await self._open(OP_PUSH, {"message": meta.to_dict(), "offset": offset})
        try:
            ready = await conn.expect(READY)
            _raise_if_error(ready)
            async for chunk in _iter_chunks(chunks):
                await conn.send(chunk_message(chunk))
            await conn.send(make_message(PUSH_END))
            result = await conn.expect(RESULT)
            _raise_if_error(result)
            payload = result["payload"]
            return RelayDecision(
                kind=str(payload.get("decision", "")),
                message=meta,
                next_hops=list(payload.get("next_hops", [])),
            )
        finally:
            await conn.close()

    async def resume_offset(self, meta: Message) -> int:
        conn = await self._open(OP_RESUME_OFFSET, {"message": meta.to_dict()})
        try:
            result = await conn.expect(RESULT)
            _raise_if_error(result)
            return int(result["payload"].get("offset", 0))
        finally:
            await conn.close()

    async def push_message(self, store: MessageStore, meta: Message) -> bool:
        """Send a locally stored message, resuming where the peer left off.

        Returns False if the peer already had it.
        """
        try:
            offset = await self.resume_offset(meta)
            if offset > meta.length:
                raise ProtocolError(f"Peer offset {offset} beyond length {meta.length}")
            await self.push(meta, offset, store.read(meta.id, offset, self.chunk_size))
        except AlreadySeen:
            return False
        log.info("Pushed %s to %s:%d", meta.id[:12], self.host, self.port)
        return True

    # --- Pull / Manifest ---

    async def pull(self, msg_id: str, offset: int = 0) -> tuple[Message, bytes]:
        """Fetch content from ``offset``; returns (metadata, bytes)."""
        conn = await self._open(OP_PULL, {"id": msg_id, "offset": offset})
        parts: list[bytes] = []
        try:
            while True:
                msg = await conn.expect(CHUNK, RESULT)
                _raise_if_error(msg)
                if msg["type"] == RESULT:
                    meta = Message.from_dict(msg["payload"].get("message"))
                    return meta, b"".join(parts)
                parts.append(chunk_data(msg["payload"]))
        finally:
            await conn.close()

    async def iter_manifest(self) -> AsyncIterator[Message]:
        conn = await self._open(OP_MANIFEST, {})
        try:
            while True:
                msg = await conn.expect(MANIFEST_ENTRY, RESULT)
                _raise_if_error(msg)
                if msg["type"] == RESULT:
                    return
                yield Message.from_dict(msg["payload"]["message"])
        finally:
            await conn.close()

    async def manifest(self) -> list[Message]:
        return [meta async for meta in self.iter_manifest()]
