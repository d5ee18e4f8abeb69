"""
Wire protocol — frame types, binary framing, serialization, and validation.

Frame format (over TCP):
    [4 bytes: "HOP1"]  [4 bytes: payload length, big-endian uint32]  [payload: JSON UTF-8]

All frames are JSON objects with required fields:
    type     — frame type string
    version  — protocol version ("1.0")
    payload  — type-specific dict
    ts       — ISO-8601 timestamp
    nonce    — random hex string

One TCP connection carries exactly one operation:
    HANDSHAKE / HANDSHAKE_ACK   (both directions, challenge-response)
    OPEN {op, args}             (initiator)
    READY                       (responder, push only: checks passed, send content)
    ... operation frames ...
    RESULT | ERROR              (responder, terminal)
"""

from __future__ import annotations

import base64
import binascii
import json
import os
import struct
from datetime import datetime, timezone
from typing import Any

from hoprelay import P2P_MAGIC, P2P_MAX_PAYLOAD, P2P_PROTOCOL_VERSION

# Frame header: 4-byte magic + 4-byte length
HEADER_SIZE = 8
HEADER_STRUCT = struct.Struct(">4sI")  # big-endian: 4-char magic, uint32 length

# Frame types
HANDSHAKE = "HANDSHAKE"
HANDSHAKE_ACK = "HANDSHAKE_ACK"
OPEN = "OPEN"
DIFF_REQ = "DIFF_REQ"
DIFF_RES = "DIFF_RES"
DIFF_END = "DIFF_END"
READY = "READY"
CHUNK = "CHUNK"
PUSH_END = "PUSH_END"
MANIFEST_ENTRY = "MANIFEST_ENTRY"
RESULT = "RESULT"
ERROR = "ERROR"

VALID_TYPES = frozenset({
    HANDSHAKE, HANDSHAKE_ACK, OPEN, DIFF_REQ, DIFF_RES, DIFF_END,
    READY, CHUNK, PUSH_END, MANIFEST_ENTRY, RESULT, ERROR,
})

# Operations named by OPEN
OP_DIFF = "diff"
OP_PUSH = "push"
OP_PULL = "pull"
OP_RESUME_OFFSET = "resume_offset"
OP_MANIFEST = "manifest"

VALID_OPS = frozenset({OP_DIFF, OP_PUSH, OP_PULL, OP_RESUME_OFFSET, OP_MANIFEST})

# Required payload fields per frame type
_PAYLOAD_SCHEMA: dict[str, set[str]] = {
    HANDSHAKE: {"node_pubkey", "version", "challenge"},
    HANDSHAKE_ACK: {"challenge_sig"},
    OPEN: {"op", "args"},
    DIFF_REQ: {"ids"},
    DIFF_RES: {"present"},
    DIFF_END: set(),
    READY: set(),
    CHUNK: {"data"},
    PUSH_END: set(),
    MANIFEST_ENTRY: {"message"},
    RESULT: set(),
    ERROR: {"code"},
}


class ProtocolError(Exception):
    """Invalid frame or framing error."""


def make_message(msg_type: str, payload: dict[str, Any] | None = None) -> dict:
    """Build a protocol frame dict with required envelope fields."""
    if msg_type not in VALID_TYPES:
        raise ProtocolError(f"Unknown message type: {msg_type!r}")
    return {
        "type": msg_type,
        "version": P2P_PROTOCOL_VERSION,
        "payload": payload or {},
        "ts": datetime.now(timezone.utc).isoformat(),
        "nonce": os.urandom(8).hex(),
    }


def validate_message(msg: dict) -> None:
    """Validate a deserialized frame. Raises ProtocolError on failure."""
    if not isinstance(msg, dict):
        raise ProtocolError("Message must be a JSON object")

    for field in ("type", "version", "payload", "ts", "nonce"):
        if field not in msg:
            raise ProtocolError(f"Missing required field: {field!r}")

    msg_type = msg["type"]
    if msg_type not in VALID_TYPES:
        raise ProtocolError(f"Unknown message type: {msg_type!r}")

    if not isinstance(msg["payload"], dict):
        raise ProtocolError("payload must be a JSON object")

    if not isinstance(msg["nonce"], str) or len(msg["nonce"]) < 4:
        raise ProtocolError("nonce must be a hex string of at least 4 chars")

    required = _PAYLOAD_SCHEMA.get(msg_type, set())
    missing = required - set(msg["payload"].keys())
    if missing:
        raise ProtocolError(
            f"{msg_type} missing payload fields: {', '.join(sorted(missing))}"
        )

    if msg_type == OPEN and msg["payload"]["op"] not in VALID_OPS:
        raise ProtocolError(f"Unknown operation: {msg['payload']['op']!r}")


def encode(msg: dict) -> bytes:
    """Serialize a frame dict to a framed binary blob.

    Returns: magic (4B) + length (4B) + JSON payload (variable).
    """
    validate_message(msg)
    payload_bytes = json.dumps(msg, separators=(",", ":")).encode("utf-8")
    if len(payload_bytes) > P2P_MAX_PAYLOAD:
        raise ProtocolError(
            f"Payload too large: {len(payload_bytes)} bytes (max {P2P_MAX_PAYLOAD})"
        )
    header = HEADER_STRUCT.pack(P2P_MAGIC, len(payload_bytes))
    return header + payload_bytes


def decode_header(data: bytes) -> int:
    """Decode a frame header. Returns payload length.

    Raises ProtocolError on bad magic or oversized payload.
    """
    if len(data) < HEADER_SIZE:
        raise ProtocolError(f"Header too short: {len(data)} bytes")

    magic, length = HEADER_STRUCT.unpack(data[:HEADER_SIZE])
    if magic != P2P_MAGIC:
        raise ProtocolError(f"Bad magic: expected {P2P_MAGIC!r}, got {magic!r}")
    if length > P2P_MAX_PAYLOAD:
        raise ProtocolError(f"Payload length {length} exceeds max {P2P_MAX_PAYLOAD}")
    return length


def decode_payload(data: bytes) -> dict:
    """Decode and validate a JSON payload (after header is stripped)."""
    try:
        msg = json.loads(data.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Invalid JSON payload: {e}") from e

    validate_message(msg)
    return msg


def decode(data: bytes) -> dict:
    """Decode a full framed message (header + payload).

    Convenience function for testing. Connections use decode_header +
    decode_payload separately for streaming reads.
    """
    length = decode_header(data)
    payload_data = data[HEADER_SIZE:HEADER_SIZE + length]
    if len(payload_data) < length:
        raise ProtocolError(
            f"Incomplete payload: expected {length} bytes, got {len(payload_data)}"
        )
    return decode_payload(payload_data)


def chunk_message(data: bytes) -> dict:
    """CHUNK frame carrying raw content bytes as base64."""
    return make_message(CHUNK, {"data": base64.b64encode(data).decode("ascii")})


def chunk_data(payload: dict) -> bytes:
    """Raw bytes from a CHUNK payload. Raises ProtocolError on bad base64."""
    data = payload.get("data")
    if not isinstance(data, str):
        raise ProtocolError("CHUNK data must be a base64 string")
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ProtocolError(f"Invalid base64 in CHUNK: {e}") from e
