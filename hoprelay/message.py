"""
Message metadata — the record that travels alongside (not inside) content.

The signature covers the canonical encoding of
    [id, recipient, creation_time, lifespan, length, sha256]
as compact JSON, hashed with SHA-256. Hops and credentials are outside the
signature so every relay can append itself to ``hops``.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import re
from dataclasses import dataclass

from hoprelay.identity import Blessing, Discharge

_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")

MAX_ID_LENGTH = 256


class MessageFormatError(ValueError):
    """Malformed message metadata."""


@dataclass(frozen=True)
class Message:
    """Metadata of one store-and-forward message.

    Attributes:
        id: Globally unique identifier; the join key for all state.
        recipient: Intended destination identifier.
        creation_time: Unix seconds at creation.
        lifespan: Seconds the message stays valid after creation_time.
        length: Exact content size in bytes.
        sha256: Hex SHA-256 of the content.
        signature: Sender's signature over the canonical encoding (hex).
        sender_blessings: Credentials naming the sender.
        sender_discharges: Discharges for third-party caveats on the blessings.
        hops: Relay identifiers, in the order the message passed them.
    """

    id: str
    recipient: str
    creation_time: int
    lifespan: int
    length: int
    sha256: str
    signature: str = ""
    sender_blessings: tuple[Blessing, ...] = ()
    sender_discharges: tuple[Discharge, ...] = ()
    hops: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id or len(self.id) > MAX_ID_LENGTH:
            raise MessageFormatError(f"Invalid message id: {self.id!r}")
        if not isinstance(self.sha256, str) or not _SHA256_RE.match(self.sha256):
            raise MessageFormatError("sha256 must be 64 lowercase hex chars")
        if self.length < 0 or self.lifespan < 0:
            raise MessageFormatError("length and lifespan must be non-negative")

    @property
    def expires_at(self) -> int:
        return self.creation_time + self.lifespan

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def canonical_bytes(self) -> bytes:
        return json.dumps(
            [self.id, self.recipient, self.creation_time, self.lifespan,
             self.length, self.sha256],
            separators=(",", ":"),
        ).encode("utf-8")

    def signing_digest(self) -> bytes:
        return hashlib.sha256(self.canonical_bytes()).digest()

    def same_content(self, other: Message) -> bool:
        """True if both records describe the same signed message.

        Hops and credentials may legitimately differ between copies that
        travelled different paths.
        """
        return self.canonical_bytes() == other.canonical_bytes() and (
            self.signature == other.signature
        )

    def with_hop(self, relay_id: str) -> Message:
        return dataclasses.replace(self, hops=self.hops + (relay_id,))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "recipient": self.recipient,
            "creation_time": self.creation_time,
            "lifespan": self.lifespan,
            "length": self.length,
            "sha256": self.sha256,
            "signature": self.signature,
            "sender_blessings": [b.to_dict() for b in self.sender_blessings],
            "sender_discharges": [d.to_dict() for d in self.sender_discharges],
            "hops": list(self.hops),
        }

    @classmethod
    def from_dict(cls, d: dict) -> Message:
        """Build a Message from a dict. Raises MessageFormatError on bad input."""
        if not isinstance(d, dict):
            raise MessageFormatError("message must be a JSON object")
        try:
            return cls(
                id=d["id"],
                recipient=str(d["recipient"]),
                creation_time=int(d["creation_time"]),
                lifespan=int(d["lifespan"]),
                length=int(d["length"]),
                sha256=d["sha256"],
                signature=str(d.get("signature", "")),
                sender_blessings=tuple(
                    Blessing.from_dict(b) for b in d.get("sender_blessings", ())
                ),
                sender_discharges=tuple(
                    Discharge.from_dict(x) for x in d.get("sender_discharges", ())
                ),
                hops=tuple(str(h) for h in d.get("hops", ())),
            )
        except (KeyError, TypeError, ValueError) as e:
            if isinstance(e, MessageFormatError):
                raise
            raise MessageFormatError(f"Invalid message record: {e}") from e


def describe_content(content: bytes) -> tuple[int, str]:
    """Return (length, sha256 hex) for a content blob."""
    return len(content), hashlib.sha256(content).hexdigest()
