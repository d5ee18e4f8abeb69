"""
Tests for MessageStore — atomic commit, dedup, expiry, partial transfers.
"""

from __future__ import annotations

import json

import pytest

from hoprelay.errors import AlreadySeen, MessageIdCollision
from hoprelay.store import MessageStore, StoreError


class TestCommittedMessages:

    def test_put_get(self, store, make_msg):
        meta, content = make_msg(b"hello")
        store.put(meta, content)

        assert store.get(meta.id) == meta
        assert store.has_content(meta.id)
        assert b"".join(store.read(meta.id)) == b"hello"

    def test_absent(self, store):
        assert store.get("nope") is None
        assert not store.has_content("nope")

    def test_put_same_is_already_seen(self, store, make_msg):
        meta, content = make_msg()
        store.put(meta, content)
        with pytest.raises(AlreadySeen):
            store.put(meta.with_hop("relay-x"), content)

    def test_collision_never_overwrites(self, store, make_msg):
        meta, content = make_msg(b"original", msg_id="dup")
        impostor, other = make_msg(b"impostor", msg_id="dup")
        store.put(meta, content)

        with pytest.raises(MessageIdCollision):
            store.put(impostor, other)
        assert store.get("dup") == meta
        assert b"".join(store.read("dup")) == b"original"

    def test_expired_is_invisible(self, store, make_msg):
        meta, content = make_msg(creation_time=1000, lifespan=10)
        store.put(meta, content, now=1005)

        assert store.get(meta.id, now=1005) == meta
        assert store.get(meta.id, now=2000) is None
        assert not store.has_content(meta.id, now=2000)
        assert list(store.manifest(now=2000)) == []
        # still physically present until purged
        assert store.stored(meta.id) == meta

    def test_expired_copy_is_replaced(self, store, make_msg):
        old, content = make_msg(b"old", msg_id="reuse", creation_time=1000, lifespan=10)
        new, new_content = make_msg(b"new", msg_id="reuse", creation_time=5000, lifespan=10)
        store.put(old, content, now=1000)
        store.put(new, new_content, now=5000)
        assert store.get("reuse", now=5000) == new

    def test_purge_expired(self, store, make_msg):
        live, c1 = make_msg(creation_time=1000, lifespan=10_000)
        dead, c2 = make_msg(creation_time=1000, lifespan=10)
        store.put(live, c1, now=1000)
        store.put(dead, c2, now=1000)

        assert store.purge_expired(now=2000) == 1
        assert store.stored(dead.id) is None
        assert store.get(live.id, now=2000) == live
        with pytest.raises(StoreError):
            list(store.read(dead.id))

    def test_delete(self, store, make_msg):
        meta, content = make_msg()
        store.put(meta, content)
        assert store.delete(meta.id)
        assert not store.delete(meta.id)
        assert store.get(meta.id) is None

    def test_index_persists(self, tmp_path, make_msg):
        meta, content = make_msg()
        MessageStore(root=tmp_path / "s").put(meta, content)

        reopened = MessageStore(root=tmp_path / "s")
        assert reopened.get(meta.id) == meta

    def test_corrupt_index_is_empty(self, tmp_path):
        root = tmp_path / "s"
        root.mkdir()
        (root / "index.json").write_text("{not json")
        assert list(MessageStore(root=root).manifest()) == []

    def test_hostile_id_stays_inside_root(self, store, make_msg):
        meta, content = make_msg(msg_id="../../../etc/passwd")
        store.put(meta, content)
        files = [p for p in store.root.rglob("*") if p.is_file()]
        assert all(store.root in p.parents for p in files)
        assert store.has_content("../../../etc/passwd")


class TestManifestAndRead:

    def test_manifest_sorted_without_content(self, store, make_msg):
        for msg_id in ("c", "a", "b"):
            meta, content = make_msg(msg_id=msg_id)
            store.put(meta, content)
        assert [m.id for m in store.manifest()] == ["a", "b", "c"]

    def test_manifest_is_a_snapshot(self, store, make_msg):
        for msg_id in ("a", "b"):
            meta, content = make_msg(msg_id=msg_id)
            store.put(meta, content)

        it = store.manifest()
        first = next(it)
        late, late_content = make_msg(msg_id="aa")
        store.put(late, late_content)
        seen = [first.id] + [m.id for m in it]
        assert seen == ["a", "b"]

    def test_read_from_offset(self, store, make_msg):
        meta, content = make_msg(b"0123456789")
        store.put(meta, content)
        assert b"".join(store.read(meta.id, offset=4, chunk_size=3)) == b"456789"
        assert list(store.read(meta.id, offset=10)) == []

    def test_read_missing(self, store):
        with pytest.raises(StoreError, match="not found"):
            list(store.read("ghost"))


class TestPartialTransfers:

    def test_append_and_commit(self, store, make_msg):
        meta, content = make_msg(b"abcdef")
        store.begin_partial(meta)
        assert store.append_partial(meta.id, b"abc") == 3
        assert store.append_partial(meta.id, b"def") == 6
        assert store.partial_size(meta.id) == 6
        assert store.partial_meta(meta.id) == meta
        # not visible until committed
        assert not store.has_content(meta.id)

        store.commit_partial(meta)
        assert store.has_content(meta.id)
        assert b"".join(store.read(meta.id)) == b"abcdef"
        assert store.partial_size(meta.id) == 0
        assert store.partial_meta(meta.id) is None

    def test_begin_keeps_bytes_refreshes_record(self, store, make_msg):
        meta, _ = make_msg(b"abcdef")
        store.begin_partial(meta)
        store.append_partial(meta.id, b"abc")
        store.begin_partial(meta.with_hop("r1"))
        assert store.partial_size(meta.id) == 3
        assert store.partial_meta(meta.id).hops == ("r1",)

    def test_read_partial(self, store, make_msg):
        meta, _ = make_msg(b"abcdef")
        store.begin_partial(meta)
        store.append_partial(meta.id, b"abcd")
        assert list(store.read_partial(meta.id, chunk_size=3)) == [b"abc", b"d"]
        assert list(store.read_partial("ghost")) == []

    def test_discard(self, store, make_msg):
        meta, _ = make_msg()
        store.begin_partial(meta)
        store.append_partial(meta.id, b"xx")
        store.discard_partial(meta.id)
        assert store.partial_size(meta.id) == 0
        assert store.partial_meta(meta.id) is None

    def test_commit_without_partial(self, store, make_msg):
        meta, _ = make_msg()
        with pytest.raises(StoreError, match="No partial"):
            store.commit_partial(meta)

    def test_commit_onto_stored_is_already_seen(self, store, make_msg):
        meta, content = make_msg(b"abc")
        store.put(meta, content)
        store.begin_partial(meta)
        store.append_partial(meta.id, b"abc")
        with pytest.raises(AlreadySeen):
            store.commit_partial(meta)

    def test_purge_drops_expired_partials(self, store, make_msg):
        meta, _ = make_msg(creation_time=1000, lifespan=10)
        store.begin_partial(meta)
        store.append_partial(meta.id, b"ab")
        assert store.purge_expired(now=5000) == 1
        assert store.partial_size(meta.id) == 0

    def test_partial_record_is_json(self, store, make_msg):
        meta, _ = make_msg()
        store.begin_partial(meta)
        records = list(store.partial_dir.glob("*.json"))
        assert len(records) == 1
        assert json.loads(records[0].read_text())["id"] == meta.id
