"""
HopRelay networking — node streams, relay forwarding, and peer sync.

Requires ``pip install hoprelay[p2p]`` for secp256k1 node keys.
The core ``hoprelay`` engines have no third-party dependencies.

Modules:
    protocol        — Wire protocol: frame types, framing, validation
    connection      — One authenticated operation stream
    client          — Initiating side of the five relay operations
    server          — TCP listener, stream dispatch, sweep loop (foreground node)
"""

from hoprelay import P2P_PROTOCOL_VERSION, P2P_DEFAULT_PORT

__all__ = [
    "P2P_PROTOCOL_VERSION",
    "P2P_DEFAULT_PORT",
]
