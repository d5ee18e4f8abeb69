"""
Relay node — foreground process that accepts operation streams, forwards
committed messages to next hops, and sweeps expired state.

Start with: ``hoprelay node start``
"""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path
from typing import Any, AsyncIterator

from hoprelay.capabilities import LocalNode
from hoprelay.config import NodeConfig, load_config
from hoprelay.errors import NoRoute, RelayError, StorageError
from hoprelay.identity import IdentityService, KeyIdentityService, load_or_create_key
from hoprelay.lease import LeaseTable
from hoprelay.message import Message, MessageFormatError
from hoprelay.p2p.client import RelayClient
from hoprelay.p2p.connection import ConnectionError as PeerConnError
from hoprelay.p2p.connection import PeerConnection
from hoprelay.p2p.protocol import (
    CHUNK, DIFF_END, DIFF_REQ, DIFF_RES, ERROR, MANIFEST_ENTRY, OPEN,
    PUSH_END, READY, RESULT,
    OP_DIFF, OP_MANIFEST, OP_PULL, OP_PUSH, OP_RESUME_OFFSET,
    ProtocolError, chunk_data, chunk_message, make_message,
)
from hoprelay.ratelimit import AdmissionLimits, RateLimiter
from hoprelay.relay import RelayScheduler, StaticRoutingTable
from hoprelay.store import MessageStore, StoreError
from hoprelay.sync import SyncEngine
from hoprelay.transfer import TransferManager
from hoprelay.verifier import Verifier

log = logging.getLogger(__name__)


def _arg(args: dict, name: str, kind: type) -> Any:
    value = args.get(name)
    if not isinstance(value, kind) or isinstance(value, bool):
        raise ProtocolError(f"OPEN argument {name!r} must be {kind.__name__}")
    return value


class RelayNode:
    """The relay node. Wires store, verifier, leases, limits and scheduler.

    Usage:
        node = RelayNode(config_path=Path("node.toml"))
        await node.start()  # runs until SIGINT/SIGTERM
    """

    def __init__(
        self,
        config: NodeConfig | None = None,
        config_path: Path | None = None,
        identity: IdentityService | None = None,
        store: MessageStore | None = None,
        privkey: bytes | None = None,
        pubkey: str | None = None,
    ) -> None:
        self.config = config or load_config(config_path)
        cfg = self.config
        self.host = cfg.host
        self.port = cfg.port

        if privkey is None:
            privkey, pubkey = load_or_create_key(Path(cfg.key_path))
        self._privkey = privkey
        self.pubkey = pubkey or ""
        self.node_id = cfg.node_id or self.pubkey

        self.store = store or MessageStore(cfg.store_root)
        self.identity = identity or KeyIdentityService(cfg.trusted_issuers)

        self.verifier = Verifier(self.identity, cfg.max_hops, cfg.max_message_size)
        self.leases = LeaseTable(idle_timeout=cfg.lease_idle_timeout)
        self.limits = AdmissionLimits(
            per_peer=RateLimiter(cfg.peer_rate, cfg.peer_burst),
            per_recipient=RateLimiter(cfg.recipient_rate, cfg.recipient_burst),
        )
        self.relay_limiter = RateLimiter(cfg.peer_rate, cfg.peer_burst)
        self.routing = StaticRoutingTable(cfg.routes)
        self.scheduler = RelayScheduler(
            self.node_id,
            self.routing,
            local_recipients=cfg.local_recipients,
            rate_limiter=self.relay_limiter,
            forward=self._forward,
        )
        self.transfer = TransferManager(
            self.store,
            self.verifier,
            leases=self.leases,
            limits=self.limits,
            scheduler=self.scheduler,
            chunk_size=cfg.chunk_size,
        )
        self.sync = SyncEngine(self.store)
        self.local = LocalNode(
            self.store, self.transfer, self.sync, peer=self.node_id, node_id=self.node_id,
        )

        self._server: asyncio.Server | None = None
        self._shutdown_event = asyncio.Event()
        self._sweep_task: asyncio.Task | None = None

    # --- Lifecycle ---

    async def start(self) -> None:
        """Start the node: TCP listener and sweep loop."""
        log.info("Starting relay node %s on %s:%d", self.node_id[:12], self.host, self.port)

        self._server = await asyncio.start_server(self.handle_inbound, self.host, self.port)
        addrs = [str(s.getsockname()) for s in self._server.sockets]
        log.info("Listening on %s", ", ".join(addrs))

        loop = asyncio.get_running_loop()
        for sig_name in ("SIGINT", "SIGTERM"):
            sig = getattr(signal, sig_name, None)
            if sig:
                try:
                    loop.add_signal_handler(sig, self._signal_shutdown)
                except NotImplementedError:
                    # Windows doesn't support add_signal_handler
                    pass

        self._sweep_task = asyncio.create_task(self._sweep_loop())

        print("HopRelay node started")
        print(f"  node:     {self.node_id}")
        print(f"  pubkey:   {self.pubkey}")
        print(f"  listen:   {self.host}:{self.port}")
        print(f"  messages: {self.message_count()}")
        print(f"  peers:    {len(self.config.peers)}")
        print()

        try:
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Gracefully shut down the node."""
        log.info("Shutting down relay node...")

        if self._sweep_task and not self._sweep_task.done():
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass

        if self._server:
            self._server.close()
            await self._server.wait_closed()

        await self.scheduler.drain()
        log.info("Relay node stopped")
        print("\nHopRelay node stopped.")

    def _signal_shutdown(self) -> None:
        log.info("Received shutdown signal")
        self._shutdown_event.set()

    def sweep(self) -> dict[str, int]:
        """Purge expired messages, release idle leases, forget idle buckets."""
        purged = self.store.purge_expired()
        reaped = self.transfer.reap_idle_leases()
        pruned = self.limits.prune() + self.relay_limiter.prune()
        if purged or reaped:
            log.info("Sweep: purged %d expired, reaped %d idle leases", purged, len(reaped))
        return {"purged": purged, "reaped": len(reaped), "pruned": pruned}

    async def _sweep_loop(self) -> None:
        try:
            while not self._shutdown_event.is_set():
                try:
                    self.sweep()
                except OSError as e:
                    log.warning("Sweep failed: %s", e)
                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(), timeout=self.config.sweep_interval,
                    )
                    break  # shutdown was signaled
                except asyncio.TimeoutError:
                    pass  # time for next sweep
        except asyncio.CancelledError:
            pass

    # --- Inbound streams ---

    async def handle_inbound(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
    ) -> None:
        """asyncio.start_server callback: one operation per stream."""
        conn = PeerConnection(reader, writer, our_privkey=self._privkey)
        try:
            await conn.handshake(self.pubkey)
            opened = await conn.expect(OPEN)
            if opened["type"] == ERROR:
                return
            payload = opened["payload"]
            args = payload["args"] if isinstance(payload["args"], dict) else {}
            await self.dispatch(conn, payload["op"], args)
        except PeerConnError as e:
            log.debug("Stream from %s ended: %s", conn.peer_addr or "unknown", e)
        finally:
            await conn.close()

    async def dispatch(self, conn: PeerConnection, op: str, args: dict) -> None:
        """Run one operation; failures become a terminal ERROR frame."""
        handlers = {
            OP_DIFF: self._serve_diff,
            OP_PUSH: self._serve_push,
            OP_PULL: self._serve_pull,
            OP_RESUME_OFFSET: self._serve_resume_offset,
            OP_MANIFEST: self._serve_manifest,
        }
        handler = handlers.get(op)
        try:
            if handler is None:
                raise ProtocolError(f"Unknown operation: {op!r}")
            await handler(conn, args)
        except RelayError as e:
            log.info("%s from %s failed: %s", op, conn.peer_pubkey[:12], e.code)
            await conn.send(make_message(ERROR, e.to_payload()))
        except ProtocolError as e:
            log.warning("%s from %s: protocol error: %s", op, conn.peer_pubkey[:12], e)
            await conn.send(make_message(ERROR, {"code": "protocol_error", "detail": str(e)}))
        except MessageFormatError as e:
            log.warning("%s from %s: bad message: %s", op, conn.peer_pubkey[:12], e)
            await conn.send(make_message(ERROR, {"code": "bad_request", "detail": str(e)}))
        except (OSError, StoreError) as e:
            log.error("%s from %s: storage failure: %s", op, conn.peer_pubkey[:12], e)
            await conn.send(make_message(ERROR, StorageError(str(e)).to_payload()))

    async def _serve_diff(self, conn: PeerConnection, args: dict) -> None:
        async def batches() -> AsyncIterator[list[str]]:
            while True:
                msg = await conn.expect(DIFF_REQ, DIFF_END)
                if msg["type"] != DIFF_REQ:
                    return
                yield msg["payload"]["ids"]

        count = 0
        async for answers in self.sync.respond(batches()):
            await conn.send(make_message(DIFF_RES, {"present": answers}))
            count += 1
        await conn.send(make_message(RESULT, {"batches": count}))

    async def _serve_push(self, conn: PeerConnection, args: dict) -> None:
        meta = Message.from_dict(_arg(args, "message", dict))
        offset = _arg(args, "offset", int)

        async def chunks() -> AsyncIterator[bytes]:
            # first pulled only once every pre-check has passed
            await conn.send(make_message(READY))
            while True:
                msg = await conn.expect(CHUNK, PUSH_END)
                if msg["type"] == PUSH_END:
                    return
                if msg["type"] == ERROR:
                    raise PeerConnError("Pusher aborted the stream")
                yield chunk_data(msg["payload"])

        decision = await self.transfer.push(meta, offset, chunks(), peer=conn.peer_pubkey)
        result: dict[str, Any] = {"id": meta.id}
        if decision is not None:
            result["decision"] = decision.kind
            result["next_hops"] = decision.next_hops
        await conn.send(make_message(RESULT, result))

    async def _serve_pull(self, conn: PeerConnection, args: dict) -> None:
        msg_id = _arg(args, "id", str)
        offset = args.get("offset", 0)
        if not isinstance(offset, int):
            raise ProtocolError("OPEN argument 'offset' must be int")
        meta, stream = self.transfer.pull(msg_id, offset)
        for chunk in stream:
            await conn.send(chunk_message(chunk))
        # the copy leaves through this node, so it carries our hop
        outgoing = meta.with_hop(self.node_id)
        await conn.send(make_message(RESULT, {"message": outgoing.to_dict()}))

    async def _serve_resume_offset(self, conn: PeerConnection, args: dict) -> None:
        meta = Message.from_dict(_arg(args, "message", dict))
        offset = self.transfer.resume_offset(meta)
        await conn.send(make_message(RESULT, {"offset": offset}))

    async def _serve_manifest(self, conn: PeerConnection, args: dict) -> None:
        count = 0
        for meta in self.store.manifest():
            await conn.send(make_message(MANIFEST_ENTRY, {"message": meta.to_dict()}))
            count += 1
        await conn.send(make_message(RESULT, {"count": count}))

    # --- Outbound ---

    def client_for(self, host: str, port: int) -> RelayClient:
        return RelayClient(host, port, self._privkey, self.pubkey, self.config.chunk_size)

    async def _forward(self, peer_id: str, meta: Message) -> bool:
        """RelayScheduler forward hook: push ``meta`` to a configured peer."""
        addr = self.config.peers.get(peer_id)
        if addr is None:
            raise NoRoute(f"No address configured for peer {peer_id[:12]}")
        return await self.client_for(addr.host, addr.port).push_message(self.store, meta)

    async def sync_with(self, host: str, port: int) -> dict[str, int]:
        """Push what the peer lacks, then pull what we lack.

        Individual message failures are logged and skipped.
        """
        client = self.client_for(host, port)

        pushed = 0
        for msg_id in await client.find_missing(self.sync.local_ids(), self.config.diff_batch_size):
            meta = self.store.get(msg_id)
            if meta is None:
                continue
            try:
                if await client.push_message(self.store, meta.with_hop(self.node_id)):
                    pushed += 1
            except RelayError as e:
                log.warning("Sync push of %s to %s:%d failed: %s", msg_id[:12], host, port, e)

        pulled = 0
        for meta in await client.manifest():
            if self.store.has_content(meta.id):
                continue
            try:
                offset = self.transfer.resume_offset(meta)
                remote_meta, content = await client.pull(meta.id, offset)
                await self.transfer.push(remote_meta, offset, [content], peer=f"{host}:{port}")
                pulled += 1
            except RelayError as e:
                if not e.benign:
                    log.warning("Sync pull of %s from %s:%d failed: %s", meta.id[:12], host, port, e)

        log.info("Synced with %s:%d: pushed %d, pulled %d", host, port, pushed, pulled)
        return {"pushed": pushed, "pulled": pulled}

    # --- Introspection ---

    def message_count(self) -> int:
        return sum(1 for _ in self.store.manifest())

    def status(self) -> dict[str, Any]:
        """Return current node status."""
        return {
            "node_id": self.node_id,
            "pubkey": self.pubkey,
            "host": self.host,
            "port": self.port,
            "messages": self.message_count(),
            "leases": len(self.leases),
            "peers": len(self.config.peers),
            "local_recipients": sorted(self.scheduler.local_recipients),
        }


def run_node(
    config_path: Path | None = None,
    port: int | None = None,
    host: str | None = None,
) -> None:
    """Entry point for ``hoprelay node start``. Runs the node in foreground."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    config = load_config(config_path)
    if port:
        config.port = port
    if host:
        config.host = host
    node = RelayNode(config=config)

    try:
        asyncio.run(node.start())
    except KeyboardInterrupt:
        print("\nShutting down...")
