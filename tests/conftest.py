"""
Shared fixtures: a temp store, a deterministic identity service, and a
factory for signed messages. None of these need secp256k1.
"""

from __future__ import annotations

import hashlib
import time

import pytest

from hoprelay.identity import Blessing
from hoprelay.message import Message, describe_content
from hoprelay.store import MessageStore
from hoprelay.transfer import TransferManager
from hoprelay.verifier import Verifier

SENDER_KEY = "alice-key"
TRUSTED_ISSUER = "root"


def fake_sign(public_key: str, digest: bytes) -> str:
    return hashlib.sha256(public_key.encode() + digest).hexdigest()


class FakeIdentity:
    """Identity service whose signatures are keyed hashes."""

    def __init__(self, trusted_issuers=(TRUSTED_ISSUER,)):
        self.trusted_issuers = set(trusted_issuers)

    def validate_blessings(self, blessings, discharges, now):
        if not blessings:
            return False
        return all(
            b.issuer in self.trusted_issuers and not b.is_expired(now)
            for b in blessings
        )

    def verify_signature(self, public_key, digest, signature):
        return signature == fake_sign(public_key, digest)


@pytest.fixture
def identity():
    return FakeIdentity()


@pytest.fixture
def store(tmp_path):
    """MessageStore rooted in a temp directory."""
    return MessageStore(root=tmp_path / "store")


@pytest.fixture
def verifier(identity):
    return Verifier(identity, max_hops=4, max_message_size=1024 * 1024)


@pytest.fixture
def transfer(store, verifier):
    return TransferManager(store, verifier, chunk_size=4)


@pytest.fixture
def make_msg():
    """Factory: make_msg(content, ...) -> (Message, content), signed by alice."""
    counter = iter(range(1_000_000))

    def _make(
        content: bytes = b"hello relay",
        recipient: str = "bob",
        msg_id: str | None = None,
        creation_time: int | None = None,
        lifespan: int = 3600,
        hops: tuple[str, ...] = (),
        length: int | None = None,
        sha256: str | None = None,
        signed: bool = True,
    ) -> tuple[Message, bytes]:
        real_length, real_sha = describe_content(content)
        meta = Message(
            id=msg_id or f"msg-{next(counter):04d}",
            recipient=recipient,
            creation_time=int(time.time()) if creation_time is None else creation_time,
            lifespan=lifespan,
            length=real_length if length is None else length,
            sha256=sha256 or real_sha,
            sender_blessings=(Blessing(name="alice", public_key=SENDER_KEY, issuer=TRUSTED_ISSUER),),
            hops=hops,
        )
        if signed:
            meta = Message.from_dict(
                {**meta.to_dict(), "signature": fake_sign(SENDER_KEY, meta.signing_digest())}
            )
        return meta, content

    return _make
