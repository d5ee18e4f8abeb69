"""
Admission pipeline — decides whether an incoming message may be stored.

Checks run in a fixed order and stop at the first failure:

    1. expiry       now > creation_time + lifespan        -> Expired
    2. hops         too many, or earlier hops rewritten    -> TooManyHops
    3. size         length > max_message_size              -> TooBig
    4. credentials  blessings/discharges invalid           -> InvalidSignature
    5. signature    canonical digest not signed by sender  -> InvalidSignature
    6. content      running hash / byte count              -> ContentMismatch

Every check is a pure function of its arguments and the supplied time;
the Verifier keeps no state between calls.
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Sequence

from hoprelay import DEFAULT_MAX_HOPS, DEFAULT_MAX_MESSAGE_SIZE
from hoprelay.errors import (
    ContentMismatch, Expired, InvalidSignature, TooBig, TooManyHops,
)
from hoprelay.identity import IdentityService
from hoprelay.message import Message


class ContentVerifier:
    """Incremental length + SHA-256 check over streamed content.

    Usage:
        cv = verifier.content_verifier(meta)
        for chunk in stream:
            cv.update(chunk)
        cv.finish()
    """

    def __init__(self, meta: Message) -> None:
        self.meta = meta
        self._hash = hashlib.sha256()
        self.received = 0

    def update(self, data: bytes) -> None:
        """Feed the next bytes. Raises ContentMismatch once length is overrun."""
        if self.received + len(data) > self.meta.length:
            raise ContentMismatch(
                f"Content for {self.meta.id[:12]} exceeds declared length {self.meta.length}"
            )
        self._hash.update(data)
        self.received += len(data)

    def finish(self) -> None:
        if self.received != self.meta.length:
            raise ContentMismatch(
                f"Content for {self.meta.id[:12]} is {self.received} bytes, "
                f"expected {self.meta.length}"
            )
        digest = self._hash.hexdigest()
        if not hmac.compare_digest(digest, self.meta.sha256):
            raise ContentMismatch(
                f"Content hash mismatch for {self.meta.id[:12]}: got {digest[:12]}"
            )


class Verifier:
    """Stateless validation of message metadata and content."""

    def __init__(
        self,
        identity: IdentityService,
        max_hops: int = DEFAULT_MAX_HOPS,
        max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE,
    ) -> None:
        self.identity = identity
        self.max_hops = max_hops
        self.max_message_size = max_message_size

    def check_expiry(self, meta: Message, now: float) -> None:
        if meta.is_expired(now):
            raise Expired(f"Message {meta.id[:12]} expired at {meta.expires_at}")

    def check_hops(
        self, meta: Message, previous_hops: Sequence[str] | None = None,
    ) -> None:
        """Reject hop lists over the limit or ones that rewrite known history.

        ``previous_hops`` is the hop list last observed for this id; the new
        list must extend it (same entries, same order, nothing removed).
        """
        if len(meta.hops) > self.max_hops:
            raise TooManyHops(
                f"Message {meta.id[:12]} has {len(meta.hops)} hops (max {self.max_hops})"
            )
        if previous_hops:
            prefix = tuple(previous_hops)
            if meta.hops[:len(prefix)] != prefix:
                raise TooManyHops(
                    f"Message {meta.id[:12]} hop history is not an extension "
                    f"of the previously observed hops"
                )

    def check_size(self, meta: Message) -> None:
        if meta.length > self.max_message_size:
            raise TooBig(
                f"Message {meta.id[:12]} is {meta.length} bytes "
                f"(max {self.max_message_size})"
            )

    def check_credentials(self, meta: Message, now: float) -> None:
        if not self.identity.validate_blessings(
            meta.sender_blessings, meta.sender_discharges, now,
        ):
            raise InvalidSignature(f"Sender credentials invalid for {meta.id[:12]}")

    def check_signature(self, meta: Message) -> None:
        digest = meta.signing_digest()
        for blessing in meta.sender_blessings:
            if self.identity.verify_signature(blessing.public_key, digest, meta.signature):
                return
        raise InvalidSignature(f"Bad signature on {meta.id[:12]}")

    def verify_metadata(
        self,
        meta: Message,
        now: float,
        previous_hops: Sequence[str] | None = None,
    ) -> None:
        """Run checks 1-5 in order. Raises the first failure."""
        self.check_expiry(meta, now)
        self.check_hops(meta, previous_hops)
        self.check_size(meta)
        self.check_credentials(meta, now)
        self.check_signature(meta)

    def content_verifier(self, meta: Message) -> ContentVerifier:
        return ContentVerifier(meta)

    def verify(
        self,
        meta: Message,
        content: bytes,
        now: float,
        previous_hops: Sequence[str] | None = None,
    ) -> None:
        """Full pipeline over an in-memory message."""
        self.verify_metadata(meta, now, previous_hops)
        cv = self.content_verifier(meta)
        cv.update(content)
        cv.finish()
