"""
HopRelay CLI — run and inspect a store-and-forward relay node.

Commands:
  hoprelay node start    - Start the relay node (foreground)
  hoprelay node status   - Show node identity and config
  hoprelay list          - List messages in the local store
  hoprelay purge         - Remove expired messages and stale partials
  hoprelay sync          - Exchange missing messages with a peer (host:port)
"""

from __future__ import annotations

import argparse
import sys
from datetime import datetime, timezone
from pathlib import Path


def _config(args: argparse.Namespace):
    from hoprelay.config import ConfigError, load_config

    path = getattr(args, "config", None)
    try:
        return load_config(Path(path) if path else None)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def _parse_address(addr: str) -> tuple[str, int]:
    if ":" not in addr:
        print("Error: Address must be host:port (e.g., 10.0.0.2:9745)", file=sys.stderr)
        sys.exit(1)
    host, port_str = addr.rsplit(":", 1)
    try:
        return host, int(port_str)
    except ValueError:
        print(f"Error: Invalid port: {port_str}", file=sys.stderr)
        sys.exit(1)


def cmd_node_start(args: argparse.Namespace) -> None:
    """Start the relay node in foreground mode."""
    from hoprelay.p2p.server import run_node

    path = getattr(args, "config", None)
    run_node(
        config_path=Path(path) if path else None,
        port=getattr(args, "port", None),
        host=getattr(args, "host", None),
    )


def cmd_node_status(args: argparse.Namespace) -> None:
    """Show node identity and configuration."""
    from hoprelay.identity import load_or_create_key
    from hoprelay.store import MessageStore

    config = _config(args)
    _privkey, pubkey = load_or_create_key(Path(config.key_path))
    count = sum(1 for _ in MessageStore(config.store_root).manifest())

    print("HopRelay Node")
    print(f"  node:       {config.node_id or pubkey}")
    print(f"  pubkey:     {pubkey}")
    print(f"  listen:     {config.host}:{config.port}")
    print(f"  messages:   {count}")
    print(f"  peers:      {len(config.peers)}")
    print(f"  routes:     {len(config.routes)}")
    print(f"  recipients: {', '.join(config.local_recipients) or '-'}")


def cmd_list(args: argparse.Namespace) -> None:
    """List unexpired messages in the local store."""
    from hoprelay.store import MessageStore

    config = _config(args)
    entries = list(MessageStore(config.store_root).manifest())

    if not entries:
        print("Message store is empty.")
        return

    print(f"Message store: {len(entries)} message(s)\n")
    for meta in entries:
        expires = datetime.fromtimestamp(meta.expires_at, tz=timezone.utc)
        line = f"  {meta.id[:16]}  to={meta.recipient}  {meta.length}B"
        if meta.hops:
            line += f"  hops={len(meta.hops)}"
        line += f"  expires={expires.isoformat()[:19]}"
        print(line)


def cmd_purge(args: argparse.Namespace) -> None:
    """Remove expired messages and abandoned partial transfers."""
    from hoprelay.store import MessageStore

    config = _config(args)
    removed = MessageStore(config.store_root).purge_expired()
    print(f"Purged {removed} expired entr{'y' if removed == 1 else 'ies'}.")


def cmd_sync(args: argparse.Namespace) -> None:
    """Run one Diff/Push/Pull round against a peer."""
    import asyncio
    import logging

    from hoprelay.errors import RelayError
    from hoprelay.p2p.connection import ConnectionError as PeerConnError
    from hoprelay.p2p.protocol import ProtocolError
    from hoprelay.p2p.server import RelayNode

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    host, port = _parse_address(args.address)
    node = RelayNode(config=_config(args))

    async def _sync() -> dict[str, int]:
        result = await node.sync_with(host, port)
        await node.scheduler.drain()
        return result

    try:
        result = asyncio.run(_sync())
    except (RelayError, PeerConnError, ProtocolError, OSError) as e:
        print(f"Error: Sync with {args.address} failed: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"Synced with {args.address}")
    print(f"  pushed: {result['pushed']}")
    print(f"  pulled: {result['pulled']}")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="hoprelay",
        description="HopRelay — store-and-forward message relay node.",
    )
    from hoprelay import __version__
    parser.add_argument("--version", action="version", version=f"hoprelay {__version__}")
    parser.add_argument("-c", "--config", help="Path to node.toml (default: ~/.hoprelay/node.toml)")
    sub = parser.add_subparsers(dest="command")

    # node
    p_node = sub.add_parser("node", help="Relay node management")
    node_sub = p_node.add_subparsers(dest="node_command")

    p_ns = node_sub.add_parser("start", help="Start the relay node (foreground)")
    p_ns.add_argument("--port", type=int, help="TCP listen port (default: 9745)")
    p_ns.add_argument("--host", help="Listen address (default: 127.0.0.1)")

    node_sub.add_parser("status", help="Show node identity and config")

    # store
    sub.add_parser("list", help="List messages in the local store")
    sub.add_parser("purge", help="Remove expired messages and stale partials")

    p_sync = sub.add_parser("sync", help="Exchange missing messages with a peer")
    p_sync.add_argument("address", help="Peer address as host:port")

    args = parser.parse_args()

    if not args.command:
        print("HopRelay — store-and-forward message relay")
        print()
        print("Usage:")
        print("  hoprelay node start [--port N] [--host ADDR]")
        print("  hoprelay node status")
        print("  hoprelay list")
        print("  hoprelay purge")
        print("  hoprelay sync <host:port>")
        print()
        print("Run 'hoprelay <command> --help' for details on any command.")
        sys.exit(0)

    if args.command == "node":
        node_commands = {
            "start": cmd_node_start,
            "status": cmd_node_status,
        }
        nc = getattr(args, "node_command", None)
        if not nc:
            print("Usage: hoprelay node {start|status}")
            sys.exit(0)
        node_commands[nc](args)
        return

    commands = {
        "list": cmd_list,
        "purge": cmd_purge,
        "sync": cmd_sync,
    }

    commands[args.command](args)


if __name__ == "__main__":
    main()
