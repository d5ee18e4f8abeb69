"""
Node configuration — TOML file merged over defaults.

Default location: ~/.hoprelay/node.toml

    host = "127.0.0.1"
    port = 9745
    node_id = "relay-a"
    local_recipients = ["alice"]
    trusted_issuers = ["<x-only pubkey hex>"]

    [routes]            # recipient -> next-hop peer ids ("*" = default route)
    bob = ["relay-b"]

    [peers.relay-b]     # where to reach a peer id
    host = "10.0.0.2"
    port = 9745
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from hoprelay import (
    DEFAULT_CHUNK_SIZE, DEFAULT_DIFF_BATCH_SIZE, DEFAULT_LEASE_IDLE_TIMEOUT,
    DEFAULT_MAX_HOPS, DEFAULT_MAX_MESSAGE_SIZE, DEFAULT_PEER_BURST,
    DEFAULT_PEER_RATE, DEFAULT_RECIPIENT_BURST, DEFAULT_RECIPIENT_RATE,
    DEFAULT_SWEEP_INTERVAL, P2P_DEFAULT_PORT,
)

log = logging.getLogger(__name__)

_DEFAULT_HOME = Path.home() / ".hoprelay"

MAX_CHUNK_SIZE = 1024 * 1024

DEFAULT_CONFIG: dict[str, Any] = {
    "host": "127.0.0.1",
    "port": P2P_DEFAULT_PORT,
    "node_id": "",
    "store_root": str(_DEFAULT_HOME / "store"),
    "key_path": str(_DEFAULT_HOME / "node_key"),
    "max_hops": DEFAULT_MAX_HOPS,
    "max_message_size": DEFAULT_MAX_MESSAGE_SIZE,
    "chunk_size": DEFAULT_CHUNK_SIZE,
    "lease_idle_timeout": DEFAULT_LEASE_IDLE_TIMEOUT,
    "diff_batch_size": DEFAULT_DIFF_BATCH_SIZE,
    "peer_rate": DEFAULT_PEER_RATE,
    "peer_burst": DEFAULT_PEER_BURST,
    "recipient_rate": DEFAULT_RECIPIENT_RATE,
    "recipient_burst": DEFAULT_RECIPIENT_BURST,
    "sweep_interval": DEFAULT_SWEEP_INTERVAL,
    "local_recipients": [],
    "trusted_issuers": [],
    "routes": {},
    "peers": {},
}


class ConfigError(Exception):
    """Invalid node configuration."""


@dataclass
class PeerAddress:
    host: str
    port: int


@dataclass
class NodeConfig:
    """Typed view of the merged configuration."""

    host: str = DEFAULT_CONFIG["host"]
    port: int = DEFAULT_CONFIG["port"]
    node_id: str = ""
    store_root: str = DEFAULT_CONFIG["store_root"]
    key_path: str = DEFAULT_CONFIG["key_path"]
    max_hops: int = DEFAULT_MAX_HOPS
    max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE
    chunk_size: int = DEFAULT_CHUNK_SIZE
    lease_idle_timeout: float = DEFAULT_LEASE_IDLE_TIMEOUT
    diff_batch_size: int = DEFAULT_DIFF_BATCH_SIZE
    peer_rate: float = DEFAULT_PEER_RATE
    peer_burst: int = DEFAULT_PEER_BURST
    recipient_rate: float = DEFAULT_RECIPIENT_RATE
    recipient_burst: int = DEFAULT_RECIPIENT_BURST
    sweep_interval: float = DEFAULT_SWEEP_INTERVAL
    local_recipients: list[str] = field(default_factory=list)
    trusted_issuers: list[str] = field(default_factory=list)
    routes: dict[str, list[str]] = field(default_factory=dict)
    peers: dict[str, PeerAddress] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NodeConfig:
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            log.warning("Ignoring unknown config keys: %s", ", ".join(unknown))
        values = {k: v for k, v in data.items() if k in known}

        peers = {}
        for peer_id, addr in (values.get("peers") or {}).items():
            if not isinstance(addr, dict) or "host" not in addr or "port" not in addr:
                raise ConfigError(f"Peer {peer_id!r} needs host and port")
            peers[peer_id] = PeerAddress(host=str(addr["host"]), port=int(addr["port"]))
        values["peers"] = peers

        routes = values.get("routes") or {}
        if not isinstance(routes, dict):
            raise ConfigError("routes must be a table of recipient -> peer list")
        values["routes"] = {str(k): [str(p) for p in v] for k, v in routes.items()}
        for name in ("local_recipients", "trusted_issuers"):
            if name in values:
                values[name] = [str(v) for v in values[name] or ()]

        try:
            config = cls(**values)
        except TypeError as e:
            raise ConfigError(str(e)) from e
        if config.max_hops < 1 or config.max_message_size < 1 or config.chunk_size < 1:
            raise ConfigError("max_hops, max_message_size and chunk_size must be positive")
        # base64 CHUNK frames must stay under the frame payload cap
        if config.chunk_size > MAX_CHUNK_SIZE:
            raise ConfigError(f"chunk_size exceeds {MAX_CHUNK_SIZE} bytes")
        return config


def load_config(config_path: Path | None = None) -> NodeConfig:
    """Load node config from TOML file, falling back to defaults."""
    config = copy.deepcopy(DEFAULT_CONFIG)

    path = Path(config_path) if config_path else (_DEFAULT_HOME / "node.toml")
    if path.is_file():
        try:
            import tomllib
        except ImportError:
            import tomli as tomllib

        try:
            with open(path, "rb") as f:
                file_config = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise ConfigError(f"Failed to load config from {path}: {e}") from e
        config.update(file_config)
    elif config_path:
        raise ConfigError(f"Config file not found: {path}")

    return NodeConfig.from_dict(config)
