"""
Tests for the admission pipeline: check order and each rejection.
"""

from __future__ import annotations

import dataclasses

import pytest

from hoprelay.errors import (
    ContentMismatch, Expired, InvalidSignature, TooBig, TooManyHops,
)

NOW = 10_000


class TestVerifierOrder:

    def test_accepts_valid(self, verifier, make_msg):
        meta, content = make_msg(creation_time=NOW)
        verifier.verify(meta, content, NOW)

    def test_expiry_checked_first(self, verifier, make_msg):
        meta, content = make_msg(
            creation_time=0, lifespan=1, hops=("a",) * 10, signed=False,
        )
        with pytest.raises(Expired):
            verifier.verify(meta, content, NOW)

    def test_hops_before_size(self, verifier, make_msg):
        meta, content = make_msg(creation_time=NOW, hops=("a",) * 5, length=10**9)
        with pytest.raises(TooManyHops):
            verifier.verify_metadata(meta, NOW)

    def test_size_before_credentials(self, verifier, make_msg):
        meta, _ = make_msg(creation_time=NOW, length=2 * 1024 * 1024, signed=False)
        meta = dataclasses.replace(meta, sender_blessings=())
        with pytest.raises(TooBig):
            verifier.verify_metadata(meta, NOW)


class TestChecks:

    def test_hops_at_limit(self, verifier, make_msg):
        meta, _ = make_msg(creation_time=NOW, hops=("a", "b", "c", "d"))
        verifier.check_hops(meta)

    def test_hop_extension_allowed(self, verifier, make_msg):
        meta, _ = make_msg(creation_time=NOW, hops=("a", "b", "c"))
        verifier.check_hops(meta, previous_hops=("a", "b"))

    def test_hop_rewrite_rejected(self, verifier, make_msg):
        meta, _ = make_msg(creation_time=NOW, hops=("b", "a"))
        with pytest.raises(TooManyHops, match="not an extension"):
            verifier.check_hops(meta, previous_hops=("a", "b"))

    def test_hop_shrink_rejected(self, verifier, make_msg):
        meta, _ = make_msg(creation_time=NOW, hops=("a",))
        with pytest.raises(TooManyHops):
            verifier.check_hops(meta, previous_hops=("a", "b"))

    def test_missing_blessings(self, verifier, make_msg):
        meta, _ = make_msg(creation_time=NOW)
        meta = dataclasses.replace(meta, sender_blessings=())
        with pytest.raises(InvalidSignature, match="credentials"):
            verifier.check_credentials(meta, NOW)

    def test_expired_blessing(self, verifier, make_msg):
        meta, _ = make_msg(creation_time=NOW)
        expired = dataclasses.replace(meta.sender_blessings[0], expires_at=NOW - 1)
        meta = dataclasses.replace(meta, sender_blessings=(expired,))
        with pytest.raises(InvalidSignature):
            verifier.check_credentials(meta, NOW)

    def test_untrusted_issuer(self, verifier, make_msg):
        meta, _ = make_msg(creation_time=NOW)
        rogue = dataclasses.replace(meta.sender_blessings[0], issuer="rogue")
        meta = dataclasses.replace(meta, sender_blessings=(rogue,))
        with pytest.raises(InvalidSignature):
            verifier.check_credentials(meta, NOW)

    def test_unsigned(self, verifier, make_msg):
        meta, _ = make_msg(creation_time=NOW, signed=False)
        with pytest.raises(InvalidSignature, match="Bad signature"):
            verifier.check_signature(meta)

    def test_mutated_field_breaks_signature(self, verifier, make_msg):
        meta, _ = make_msg(creation_time=NOW)
        mutated = dataclasses.replace(meta, recipient="mallory")
        with pytest.raises(InvalidSignature):
            verifier.check_signature(mutated)


class TestContentVerifier:

    def test_streamed_match(self, verifier, make_msg):
        meta, content = make_msg(b"streamed content", creation_time=NOW)
        cv = verifier.content_verifier(meta)
        for i in range(0, len(content), 5):
            cv.update(content[i:i + 5])
        cv.finish()
        assert cv.received == len(content)

    def test_short_content(self, verifier, make_msg):
        meta, content = make_msg(b"abcdef", creation_time=NOW)
        cv = verifier.content_verifier(meta)
        cv.update(content[:3])
        with pytest.raises(ContentMismatch, match="expected 6"):
            cv.finish()

    def test_overrun_rejected_immediately(self, verifier, make_msg):
        meta, _ = make_msg(b"abc", creation_time=NOW)
        cv = verifier.content_verifier(meta)
        with pytest.raises(ContentMismatch, match="exceeds"):
            cv.update(b"abcd")

    def test_wrong_bytes(self, verifier, make_msg):
        meta, _ = make_msg(b"abc", creation_time=NOW)
        with pytest.raises(ContentMismatch, match="hash"):
            verifier.verify(meta, b"xyz", NOW)
