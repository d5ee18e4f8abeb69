"""
Tests for the Diff engine and the in-process node capabilities.
"""

from __future__ import annotations

import pytest

from hoprelay.capabilities import (
    LocalNode, NodeCapability, RelayCapability, StoreCapability, copy_missing,
)
from hoprelay.message import MAX_ID_LENGTH
from hoprelay.p2p.protocol import ProtocolError
from hoprelay.store import MessageStore
from hoprelay.sync import SyncEngine, find_missing
from hoprelay.transfer import TransferManager


async def batches_of(*batches):
    for batch in batches:
        yield batch


class TestAnswer:

    def test_presence_in_order(self, store, make_msg):
        meta, content = make_msg(msg_id="b")
        store.put(meta, content)
        engine = SyncEngine(store)
        assert engine.answer(["a", "b", "c"]) == [False, True, False]

    def test_expired_is_absent(self, store, make_msg):
        meta, content = make_msg(msg_id="old", creation_time=1000, lifespan=10)
        store.put(meta, content, now=1000)
        engine = SyncEngine(store)
        assert engine.answer(["old"], now=1005) == [True]
        assert engine.answer(["old"], now=2000) == [False]

    def test_partial_is_absent(self, store, make_msg):
        meta, _ = make_msg(msg_id="half")
        store.begin_partial(meta)
        store.append_partial("half", b"he")
        assert SyncEngine(store).answer(["half"]) == [False]

    def test_empty_batch(self, store):
        assert SyncEngine(store).answer([]) == []

    def test_oversized_batch(self, store):
        engine = SyncEngine(store, max_batch=3)
        with pytest.raises(ProtocolError, match="exceeds max"):
            engine.answer(["a", "b", "c", "d"])

    @pytest.mark.parametrize("bad", [None, "abc", {"ids": []}])
    def test_batch_not_list(self, store, bad):
        with pytest.raises(ProtocolError, match="must be a list"):
            SyncEngine(store).answer(bad)

    @pytest.mark.parametrize("bad_id", ["", 42, "x" * (MAX_ID_LENGTH + 1)])
    def test_bad_ids(self, store, bad_id):
        with pytest.raises(ProtocolError, match="Invalid message id"):
            SyncEngine(store).answer(["ok", bad_id])


class TestRespond:

    @pytest.mark.asyncio
    async def test_one_answer_per_batch(self, store, make_msg):
        for msg_id in ("a", "d"):
            meta, content = make_msg(msg_id=msg_id)
            store.put(meta, content)
        engine = SyncEngine(store)

        answers = [
            a async for a in engine.respond(batches_of(["a", "b"], ["c"], [], ["d", "a"]))
        ]
        assert answers == [[True, False], [False], [], [True, True]]

    @pytest.mark.asyncio
    async def test_bad_batch_ends_stream(self, store):
        engine = SyncEngine(store, max_batch=1)
        received = []
        with pytest.raises(ProtocolError):
            async for a in engine.respond(batches_of(["a"], ["b", "c"], ["d"])):
                received.append(a)
        assert received == [[False]]


class TestFindMissing:

    @pytest.mark.asyncio
    async def test_batches_and_missing(self, store, make_msg):
        for msg_id in ("b", "d"):
            meta, content = make_msg(msg_id=msg_id)
            store.put(meta, content)
        remote = SyncEngine(store)
        sent = []

        async def exchange(batch):
            sent.append(list(batch))
            return remote.answer(batch)

        missing = await find_missing(["a", "b", "c", "d", "e"], exchange, batch_size=2)
        assert missing == ["a", "c", "e"]
        assert sent == [["a", "b"], ["c", "d"], ["e"]]

    @pytest.mark.asyncio
    async def test_short_answer_rejected(self):
        async def exchange(batch):
            return [True]

        with pytest.raises(ProtocolError, match="entries for a batch of 2"):
            await find_missing(["a", "b"], exchange, batch_size=2)

    @pytest.mark.asyncio
    async def test_engine_caps_batch(self, store):
        engine = SyncEngine(store, max_batch=2)
        sizes = []

        async def exchange(batch):
            sizes.append(len(batch))
            return [False] * len(batch)

        missing = await engine.find_missing(["a", "b", "c"], exchange, batch_size=100)
        assert missing == ["a", "b", "c"]
        assert sizes == [2, 1]

    def test_local_ids(self, store, make_msg):
        for msg_id in ("y", "x"):
            meta, content = make_msg(msg_id=msg_id)
            store.put(meta, content)
        assert SyncEngine(store).local_ids() == ["x", "y"]


class TestLocalNode:

    def _node(self, root, verifier, peer="local"):
        store = MessageStore(root=root)
        return LocalNode(store, TransferManager(store, verifier), SyncEngine(store), peer=peer)

    def test_satisfies_capabilities(self, tmp_path, verifier):
        node = self._node(tmp_path / "n", verifier)
        assert isinstance(node, RelayCapability)
        assert isinstance(node, StoreCapability)
        assert isinstance(node, NodeCapability)

    @pytest.mark.asyncio
    async def test_push_pull_roundtrip(self, tmp_path, verifier, make_msg):
        node = self._node(tmp_path / "n", verifier)
        meta, content = make_msg(b"via capability")
        assert await node.resume_offset(meta) == 0
        await node.push(meta, 0, [content])

        assert await node.diff([meta.id, "nope"]) == [True, False]
        got, data = await node.pull(meta.id)
        assert got == meta
        assert data == content
        assert [m.id for m in node.manifest()] == [meta.id]
        assert node.get(meta.id) == meta

    @pytest.mark.asyncio
    async def test_copy_missing_between_nodes(self, tmp_path, verifier, make_msg):
        """Two stores converge: diff, then push only what the target lacks."""
        a = self._node(tmp_path / "a", verifier, peer="a")
        b = self._node(tmp_path / "b", verifier, peer="b")

        msgs = [make_msg(f"message {i}".encode(), msg_id=f"m{i}") for i in range(3)]
        for meta, content in msgs:
            await a.push(meta, 0, [content])
        await b.push(msgs[1][0], 0, [msgs[1][1]])

        ids = [m.id for m in a.manifest()]
        copied = await copy_missing(a, b, ids)
        assert copied == 2
        assert await b.diff(ids) == [True, True, True]
        assert (await b.pull("m2"))[1] == b"message 2"

    @pytest.mark.asyncio
    async def test_copy_resumes_partial(self, tmp_path, verifier, make_msg):
        a = self._node(tmp_path / "a", verifier)
        b = self._node(tmp_path / "b", verifier)
        meta, content = make_msg(b"0123456789", msg_id="resumed")
        await a.push(meta, 0, [content])

        b.store.begin_partial(meta)
        b.store.append_partial(meta.id, content[:4])

        assert await copy_missing(a, b, [meta.id]) == 1
        assert (await b.pull(meta.id))[1] == content

    @pytest.mark.asyncio
    async def test_copy_carries_source_hop(self, tmp_path, verifier, make_msg):
        store = MessageStore(root=tmp_path / "a")
        a = LocalNode(store, TransferManager(store, verifier), SyncEngine(store),
                      peer="relay-a", node_id="relay-a")
        b = self._node(tmp_path / "b", verifier, peer="b")
        meta, content = make_msg(b"relayed", msg_id="m1", hops=("origin",))
        await a.push(meta, 0, [content])

        assert await copy_missing(a, b, ["m1"]) == 1
        assert a.get("m1").hops == ("origin",)
        assert b.get("m1").hops == ("origin", "relay-a")
