"""
Message store — local content-addressed storage for relayed messages.

Storage layout:
    ~/.hoprelay/store/messages/<h>.msg   — committed content
    ~/.hoprelay/store/partial/<h>.part   — durably appended partial content
    ~/.hoprelay/store/partial/<h>.json   — metadata of the in-progress transfer
    ~/.hoprelay/store/index.json         — id -> message metadata + stored_at

where <h> is the SHA-256 of the message id, so arbitrary ids can never
escape the store directory.

All commits are atomic (temp file + os.replace) for crash safety: content is
moved into place before the index names it, so a reader that finds an id in
the index always finds its full content. The in-memory index is replaced
wholesale on every write, which gives readers a consistent snapshot without
taking the write lock.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from hoprelay import DEFAULT_CHUNK_SIZE
from hoprelay.errors import AlreadySeen, MessageIdCollision
from hoprelay.message import Message, MessageFormatError

log = logging.getLogger(__name__)

# Default store root
_DEFAULT_ROOT = Path.home() / ".hoprelay" / "store"


class StoreError(Exception):
    """Error in message store operations."""


def _file_key(msg_id: str) -> str:
    return hashlib.sha256(msg_id.encode("utf-8")).hexdigest()


def _atomic_write(directory: Path, dest: Path, data: bytes, prefix: str) -> None:
    """Write ``data`` to ``dest`` via temp file + fsync + os.replace."""
    fd, tmp_path = tempfile.mkstemp(dir=str(directory), suffix=".tmp", prefix=prefix)
    try:
        os.write(fd, data)
        os.fsync(fd)
        os.close(fd)
        os.replace(tmp_path, str(dest))
    except Exception:
        try:
            os.close(fd)
        except OSError:
            pass
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class MessageStore:
    """File-based message store with resumable partial transfers.

    Usage:
        store = MessageStore()
        store.put(meta, content)
        meta = store.get(msg_id)
        for chunk in store.read(msg_id):
            ...
    """

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root) if root else _DEFAULT_ROOT
        self.messages_dir = self.root / "messages"
        self.partial_dir = self.root / "partial"
        self.index_path = self.root / "index.json"
        self._lock = threading.RLock()
        self._index: dict[str, dict] | None = None

    def _ensure_dirs(self) -> None:
        self.messages_dir.mkdir(parents=True, exist_ok=True)
        self.partial_dir.mkdir(parents=True, exist_ok=True)

    def _content_path(self, msg_id: str) -> Path:
        return self.messages_dir / f"{_file_key(msg_id)}.msg"

    def _partial_path(self, msg_id: str) -> Path:
        return self.partial_dir / f"{_file_key(msg_id)}.part"

    def _partial_meta_path(self, msg_id: str) -> Path:
        return self.partial_dir / f"{_file_key(msg_id)}.json"

    # --- Index ---

    def _load_index(self) -> dict[str, dict]:
        """Read the JSON index. Returns empty dict if missing or corrupt."""
        if not self.index_path.is_file():
            return {}
        try:
            index = json.loads(self.index_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            log.warning("Ignoring unreadable index %s: %s", self.index_path, e)
            return {}
        if not isinstance(index, dict):
            return {}
        return index

    def _snapshot(self) -> dict[str, dict]:
        index = self._index
        if index is None:
            with self._lock:
                if self._index is None:
                    self._index = self._load_index()
                index = self._index
        return index

    def _write_index(self, index: dict[str, dict]) -> None:
        """Atomically persist ``index`` and publish it to readers. Lock held."""
        self._ensure_dirs()
        data = json.dumps(index, indent=2, sort_keys=True).encode("utf-8")
        _atomic_write(self.root, self.index_path, data, ".index_")
        self._index = index

    # --- Committed messages ---

    def stored(self, msg_id: str) -> Message | None:
        """Return the physically stored record for ``msg_id``, expired or not."""
        entry = self._snapshot().get(msg_id)
        if entry is None:
            return None
        try:
            return Message.from_dict(entry["message"])
        except (KeyError, MessageFormatError) as e:
            log.warning("Corrupt index entry for %s: %s", msg_id[:12], e)
            return None

    def get(self, msg_id: str, now: float | None = None) -> Message | None:
        """Return stored metadata, or None if absent or expired."""
        meta = self.stored(msg_id)
        if meta is None:
            return None
        if meta.is_expired(time.time() if now is None else now):
            return None
        return meta

    def has_content(self, msg_id: str, now: float | None = None) -> bool:
        return self.get(msg_id, now) is not None

    def _check_existing(self, meta: Message, now: float) -> None:
        """Raise AlreadySeen / MessageIdCollision for a live stored copy. Lock held."""
        existing = self.stored(meta.id)
        if existing is None:
            return
        if existing.is_expired(now):
            self._remove_unlocked(meta.id)
            return
        if existing.same_content(meta):
            raise AlreadySeen(f"Message {meta.id[:12]} already stored")
        raise MessageIdCollision(
            f"Message {meta.id[:12]} already stored with different content"
        )

    def _publish(self, meta: Message) -> None:
        """Record ``meta`` in the index after its content is in place. Lock held."""
        index = dict(self._snapshot())
        index[meta.id] = {
            "message": meta.to_dict(),
            "stored_at": datetime.now(timezone.utc).isoformat(),
        }
        self._write_index(index)

    def put(self, meta: Message, content: bytes, now: float | None = None) -> None:
        """Atomically commit a verified message and its content.

        Raises AlreadySeen if the same message is stored, MessageIdCollision
        if a different message holds the id. The stored copy is never touched.
        """
        now = time.time() if now is None else now
        self._ensure_dirs()
        with self._lock:
            self._check_existing(meta, now)
            _atomic_write(self.messages_dir, self._content_path(meta.id), content, ".msg_")
            self._publish(meta)
        log.info("Stored message %s (%d bytes)", meta.id[:12], len(content))

    def commit_partial(self, meta: Message, now: float | None = None) -> None:
        """Atomically promote the partial content of ``meta.id`` to a stored message."""
        now = time.time() if now is None else now
        partial = self._partial_path(meta.id)
        with self._lock:
            if not partial.is_file():
                raise StoreError(f"No partial content for {meta.id[:12]}")
            self._check_existing(meta, now)
            os.replace(str(partial), str(self._content_path(meta.id)))
            self._publish(meta)
            self._partial_meta_path(meta.id).unlink(missing_ok=True)
        log.info("Committed message %s (%d bytes)", meta.id[:12], meta.length)

    def manifest(self, now: float | None = None) -> Iterator[Message]:
        """Lazily yield all non-expired stored messages.

        Enumerates the index snapshot current when iteration starts; later
        commits are not reflected and partial transfers are never listed.
        """
        now = time.time() if now is None else now
        snapshot = self._snapshot()
        for msg_id in sorted(snapshot):
            try:
                meta = Message.from_dict(snapshot[msg_id]["message"])
            except (KeyError, MessageFormatError):
                continue
            if not meta.is_expired(now):
                yield meta

    def read(
        self, msg_id: str, offset: int = 0, chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> Iterator[bytes]:
        """Yield stored content of ``msg_id`` from ``offset`` to the end."""
        path = self._content_path(msg_id)
        try:
            f = open(path, "rb")
        except FileNotFoundError:
            raise StoreError(f"Content not found: {msg_id[:12]}")
        with f:
            f.seek(offset)
            while True:
                chunk = f.read(chunk_size)
                if not chunk:
                    break
                yield chunk

    def _remove_unlocked(self, msg_id: str) -> bool:
        index = self._snapshot()
        if msg_id not in index:
            return False
        index = dict(index)
        del index[msg_id]
        self._write_index(index)
        self._content_path(msg_id).unlink(missing_ok=True)
        return True

    def delete(self, msg_id: str) -> bool:
        """Remove a stored message. Any holder may delete, not just the originator."""
        with self._lock:
            return self._remove_unlocked(msg_id)

    def purge_expired(self, now: float | None = None) -> int:
        """Delete expired messages and expired partial transfers. Returns count."""
        now = time.time() if now is None else now
        removed = 0
        with self._lock:
            snapshot = self._snapshot()
            expired = []
            for msg_id, entry in snapshot.items():
                try:
                    meta = Message.from_dict(entry["message"])
                except (KeyError, MessageFormatError):
                    expired.append(msg_id)
                    continue
                if meta.is_expired(now):
                    expired.append(msg_id)
            if expired:
                dropped = set(expired)
                index = {k: v for k, v in snapshot.items() if k not in dropped}
                self._write_index(index)
                for msg_id in expired:
                    self._content_path(msg_id).unlink(missing_ok=True)
                removed += len(expired)

        if self.partial_dir.is_dir():
            for record in self.partial_dir.glob("*.json"):
                meta = self._load_partial_meta(record)
                if meta is None or meta.is_expired(now):
                    record.unlink(missing_ok=True)
                    record.with_suffix(".part").unlink(missing_ok=True)
                    removed += 1

        if removed:
            log.info("Purged %d expired entries", removed)
        return removed

    # --- Partial transfers ---

    @staticmethod
    def _load_partial_meta(path: Path) -> Message | None:
        try:
            return Message.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError, MessageFormatError):
            return None

    def begin_partial(self, meta: Message) -> None:
        """Record ``meta`` as the message being received for ``meta.id``.

        Existing partial bytes are kept; the record is refreshed so the
        latest observed hop list is what later pushes are compared against.
        """
        self._ensure_dirs()
        data = json.dumps(meta.to_dict(), sort_keys=True).encode("utf-8")
        with self._lock:
            _atomic_write(self.partial_dir, self._partial_meta_path(meta.id), data, ".meta_")
            self._partial_path(meta.id).touch(exist_ok=True)

    def partial_meta(self, msg_id: str) -> Message | None:
        path = self._partial_meta_path(msg_id)
        if not path.is_file():
            return None
        return self._load_partial_meta(path)

    def partial_size(self, msg_id: str) -> int:
        """Number of content bytes durably received for ``msg_id``."""
        try:
            return self._partial_path(msg_id).stat().st_size
        except FileNotFoundError:
            return 0

    def append_partial(self, msg_id: str, data: bytes) -> int:
        """Append and fsync ``data``. Returns the new durable offset."""
        path = self._partial_path(msg_id)
        with open(path, "ab") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
            return f.tell()

    def read_partial(self, msg_id: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        path = self._partial_path(msg_id)
        if not path.is_file():
            return
        with open(path, "rb") as f:
            while True:
                chunk = f.read(chunk_size)
                if not chunk:
                    break
                yield chunk

    def discard_partial(self, msg_id: str) -> None:
        """Drop partial bytes and record; the id returns to Absent."""
        with self._lock:
            self._partial_path(msg_id).unlink(missing_ok=True)
            self._partial_meta_path(msg_id).unlink(missing_ok=True)
