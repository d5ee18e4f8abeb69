"""
Peer stream — one authenticated TCP connection carrying one operation.

Wraps asyncio StreamReader/StreamWriter with the HOP1 wire protocol:
framing, challenge-response handshake, inbound rate limiting, and
graceful close.

Security: the handshake is challenge-response — each side proves ownership
of its claimed node key by signing a random nonce chosen by the peer.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import time

from hoprelay import P2P_PROTOCOL_VERSION
from hoprelay.identity import schnorr_sign, schnorr_verify
from hoprelay.p2p.protocol import (
    ERROR, HANDSHAKE, HANDSHAKE_ACK,
    HEADER_SIZE, ProtocolError,
    decode_header, decode_payload, encode, make_message,
)

log = logging.getLogger(__name__)

HANDSHAKE_TIMEOUT = 10.0
READ_TIMEOUT = 60.0  # an operation stream with no frame this long is dead

# Inbound frame rate cap
MAX_MESSAGES_PER_SEC = 500
_RATE_WINDOW = 1.0  # seconds


class ConnectionError(Exception):
    """Error in peer connection."""


class PeerConnection:
    """Manages a single operation stream to a peer.

    Usage:
        conn = PeerConnection(reader, writer, our_privkey=key)
        await conn.handshake(our_pubkey)
        await conn.send(make_message(OPEN, {...}))
        reply = await conn.recv()
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        our_privkey: bytes | None = None,
    ) -> None:
        self.reader = reader
        self.writer = writer
        self.our_privkey = our_privkey

        # Peer identity (set during handshake)
        self.peer_pubkey: str = ""
        self.peer_version: str = ""
        self.peer_addr: str = ""

        self.handshake_done = False
        self._closed = False
        self._msg_timestamps: list[float] = []

        try:
            addr = writer.get_extra_info("peername")
            if addr:
                self.peer_addr = f"{addr[0]}:{addr[1]}"
        except Exception:
            pass

    @property
    def is_alive(self) -> bool:
        return self.handshake_done and not self._closed

    async def send(self, msg: dict) -> None:
        """Serialize and send a frame over the wire."""
        if self._closed:
            raise ConnectionError("Connection closed")
        try:
            data = encode(msg)
            self.writer.write(data)
            await self.writer.drain()
        except (OSError, asyncio.IncompleteReadError) as e:
            await self.close()
            raise ConnectionError(f"Send failed: {e}") from e

    async def recv(self, timeout: float = READ_TIMEOUT) -> dict:
        """Read and decode the next frame from the wire.

        Rate limit is checked BEFORE reading the payload.
        """
        if self._closed:
            raise ConnectionError("Connection closed")
        try:
            self._check_rate_limit()
            header_data = await asyncio.wait_for(
                self.reader.readexactly(HEADER_SIZE), timeout=timeout,
            )
            payload_len = decode_header(header_data)
            payload_data = await asyncio.wait_for(
                self.reader.readexactly(payload_len), timeout=timeout,
            )
            return decode_payload(payload_data)

        except asyncio.IncompleteReadError:
            await self.close()
            raise ConnectionError("Peer disconnected")
        except asyncio.TimeoutError:
            await self.close()
            raise ConnectionError("Peer timed out")
        except ProtocolError as e:
            await self.close()
            raise ConnectionError(f"Protocol error: {e}") from e

    async def expect(self, *types: str) -> dict:
        """Receive the next frame and require one of ``types``.

        An ERROR frame is returned as-is so callers can raise the remote error.
        """
        msg = await self.recv()
        if msg["type"] not in types and msg["type"] != ERROR:
            await self.close()
            raise ConnectionError(
                f"Expected {'/'.join(types)}, got {msg['type']}"
            )
        return msg

    def _check_rate_limit(self) -> None:
        """Track frame rate; raise if the peer exceeds the limit."""
        now = time.monotonic()
        self._msg_timestamps.append(now)
        cutoff = now - _RATE_WINDOW
        self._msg_timestamps = [t for t in self._msg_timestamps if t > cutoff]
        if len(self._msg_timestamps) > MAX_MESSAGES_PER_SEC:
            raise ProtocolError(
                f"Rate limit exceeded: {len(self._msg_timestamps)} msgs/sec"
            )

    async def handshake(self, our_pubkey: str) -> None:
        """Perform challenge-response handshake before any operation frame.

        Protocol:
            1. Send HANDSHAKE with our key + random challenge nonce
            2. Receive peer HANDSHAKE with their key + their challenge
            3. Sign their challenge with our privkey, send HANDSHAKE_ACK
            4. Receive their HANDSHAKE_ACK with their sig of our challenge
            5. Verify their signature against their claimed key
        """
        our_challenge = os.urandom(32).hex()

        await self.send(make_message(HANDSHAKE, {
            "node_pubkey": our_pubkey,
            "version": P2P_PROTOCOL_VERSION,
            "challenge": our_challenge,
        }))

        peer_msg = await self.recv(timeout=HANDSHAKE_TIMEOUT)
        if peer_msg["type"] != HANDSHAKE:
            await self.close()
            raise ConnectionError(f"Expected HANDSHAKE, got {peer_msg['type']}")

        payload = peer_msg["payload"]
        self.peer_pubkey = str(payload["node_pubkey"])
        self.peer_version = str(payload["version"])
        peer_challenge = str(payload["challenge"])

        # FAIL CLOSED if we cannot prove our own identity
        if not self.our_privkey:
            await self.close()
            raise ConnectionError(
                "Cannot handshake: no private key. All relay streams require a node identity key."
            )
        try:
            challenge_hash = hashlib.sha256(bytes.fromhex(peer_challenge)).digest()
        except ValueError:
            await self.close()
            raise ConnectionError("Peer challenge is not hex")
        our_sig = schnorr_sign(challenge_hash, self.our_privkey)
        await self.send(make_message(HANDSHAKE_ACK, {"challenge_sig": our_sig}))

        peer_ack = await self.recv(timeout=HANDSHAKE_TIMEOUT)
        if peer_ack["type"] != HANDSHAKE_ACK:
            await self.close()
            raise ConnectionError(f"Expected HANDSHAKE_ACK, got {peer_ack['type']}")

        our_challenge_hash = hashlib.sha256(bytes.fromhex(our_challenge)).digest()
        peer_sig = str(peer_ack["payload"]["challenge_sig"])
        if not schnorr_verify(self.peer_pubkey, our_challenge_hash, peer_sig):
            await self.close()
            raise ConnectionError(
                f"Challenge-response verification failed for {self.peer_pubkey[:12]}"
            )

        self.handshake_done = True
        log.debug(
            "Handshake OK with %s (version=%s)", self.peer_pubkey[:12], self.peer_version,
        )

    async def close(self) -> None:
        """Gracefully close the connection."""
        if self._closed:
            return
        self._closed = True
        try:
            self.writer.close()
            await self.writer.wait_closed()
        except Exception:
            pass
        log.debug("Closed connection to %s", self.peer_addr or "unknown")
