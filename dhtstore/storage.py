"""Persistent key/value stores living in a shared storage environment."""

from __future__ import annotations

import errno
import logging
import re
import sqlite3
import struct
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Iterator

from dhtstore.settings import ServerStat

logger = logging.getLogger(__name__)

FULL_KEY_SEPARATOR = b"\x01"
EXPIRES_NEVER = 0
EXPIRES_NONE = -1

_GIB = 1024 * 1024 * 1024
_BLOCK_BYTES = 256 * 1024 * 1024
_SUB_DIRS = ("tmp", "logs", "data")
_EXPIRES = struct.Struct(">i")
_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1
_LEADING_INT = re.compile(rb"\s*([+-]?\d+)")


class StorageError(OSError):
    """A storage operation failed; ``errno`` tells why."""


class KeyNotFoundError(StorageError):
    """The requested key does not exist."""

    def __init__(self, key: bytes):
        super().__init__(errno.ENOENT, f"key not found: {key!r}")
        self.key = key


class DbType(Enum):
    """Layout of a store file."""

    BTREE = "btree"
    HASH = "hash"


def cache_geometry(cache_size: int) -> tuple[int, int, int]:
    """Split a cache size into whole gigabytes, remaining bytes and 256 MiB blocks."""
    gb = cache_size // _GIB
    remainder = cache_size - gb * _GIB
    blocks = -(-cache_size // _BLOCK_BYTES)
    return gb, remainder, blocks


def _as_bytes(value: bytes | str) -> bytes:
    return value.encode() if isinstance(value, str) else bytes(value)


def pack_full_key(namespace: bytes | str, object_id: bytes | str, key: bytes | str) -> bytes:
    """Join namespace, object id and key into the stored full key."""
    return FULL_KEY_SEPARATOR.join(
        (_as_bytes(namespace), _as_bytes(object_id), _as_bytes(key))
    )


def pack_expires(expires: int, value: bytes | str) -> bytes:
    """Prefix a value with its 4-byte big-endian expiry time."""
    return _EXPIRES.pack(expires) + _as_bytes(value)


def unpack_expires(data: bytes) -> tuple[int, bytes]:
    """Split a stored value into its expiry time and payload."""
    if len(data) < _EXPIRES.size:
        raise ValueError(f"value of {len(data)} bytes has no expiry prefix")
    (expires,) = _EXPIRES.unpack_from(data)
    return expires, bytes(data[_EXPIRES.size:])


def _parse_int64(text: bytes) -> int:
    match = _LEADING_INT.match(text)
    if match is None:
        return 0
    return max(_INT64_MIN, min(_INT64_MAX, int(match.group(1))))


def _wrap_int64(number: int) -> int:
    number &= (1 << 64) - 1
    return number - (1 << 64) if number > _INT64_MAX else number


class Store:
    """One key/value store file; all operations update the shared counters."""

    def __init__(
        self,
        path: Path,
        db_type: DbType = DbType.BTREE,
        stat: ServerStat | None = None,
        page_size: int = 4096,
        cache_size: int | None = None,
    ):
        self.path = Path(path)
        self.db_type = DbType(db_type)
        self.stat = stat if stat is not None else ServerStat()
        self._lock = threading.RLock()
        self._dirty = False
        try:
            self._conn: sqlite3.Connection | None = sqlite3.connect(
                str(self.path), check_same_thread=False
            )
            self._conn.execute(f"PRAGMA page_size = {int(page_size)}")
            if cache_size:
                self._conn.execute(f"PRAGMA cache_size = {-(int(cache_size) // 1024)}")
            self._conn.execute(
                "CREATE TABLE IF NOT EXISTS kv (k BLOB PRIMARY KEY, v BLOB NOT NULL)"
            )
            self._conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(errno.EFAULT, f"open {self.path} fail: {exc}") from exc

    @property
    def closed(self) -> bool:
        return self._conn is None

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError(errno.EBADF, f"store {self.path} is closed")
        return self._conn

    def _read(self, key: bytes) -> bytes | None:
        try:
            row = self._connection().execute(
                "SELECT v FROM kv WHERE k = ?", (key,)
            ).fetchone()
        except sqlite3.Error as exc:
            logger.error("db get fail: %s", exc)
            raise StorageError(errno.EFAULT, f"get fail: {exc}") from exc
        return None if row is None else bytes(row[0])

    def _write(self, key: bytes, value: bytes) -> None:
        try:
            self._connection().execute(
                "INSERT OR REPLACE INTO kv (k, v) VALUES (?, ?)", (key, value)
            )
        except sqlite3.Error as exc:
            logger.error("db put fail: %s", exc)
            raise StorageError(errno.EFAULT, f"put fail: {exc}") from exc
        self._dirty = True

    def _remove(self, key: bytes) -> bool:
        try:
            cursor = self._connection().execute("DELETE FROM kv WHERE k = ?", (key,))
        except sqlite3.Error as exc:
            logger.error("db del fail: %s", exc)
            raise StorageError(errno.EFAULT, f"delete fail: {exc}") from exc
        if cursor.rowcount > 0:
            self._dirty = True
            return True
        return False

    def get(self, key: bytes | str) -> bytes:
        """Return the value of ``key``; raise KeyNotFoundError if absent."""
        key = _as_bytes(key)
        with self._lock:
            self.stat.total_get_count += 1
            value = self._read(key)
            if value is None:
                raise KeyNotFoundError(key)
            self.stat.success_get_count += 1
            return value

    def set(self, key: bytes | str, value: bytes | str) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""
        key, value = _as_bytes(key), _as_bytes(value)
        with self._lock:
            self.stat.total_set_count += 1
            self._write(key, value)
            self.stat.success_set_count += 1

    def partial_set(self, key: bytes | str, value: bytes | str, offset: int) -> None:
        """Overwrite ``len(value)`` bytes of the record at ``offset``, zero-padding gaps."""
        if offset < 0:
            raise ValueError("offset must not be negative")
        key, value = _as_bytes(key), _as_bytes(value)
        with self._lock:
            self.stat.total_set_count += 1
            old = self._read(key) or b""
            if len(old) < offset:
                old += b"\0" * (offset - len(old))
            self._write(key, old[:offset] + value + old[offset + len(value):])
            self.stat.success_set_count += 1

    def delete(self, key: bytes | str) -> None:
        """Remove ``key``; raise KeyNotFoundError if absent."""
        key = _as_bytes(key)
        with self._lock:
            self.stat.total_delete_count += 1
            if not self._remove(key):
                raise KeyNotFoundError(key)
            self.stat.success_delete_count += 1

    def inc(self, key: bytes | str, increment: int) -> bytes:
        """Add ``increment`` to the decimal value of ``key`` and return the new value."""
        key = _as_bytes(key)
        with self._lock:
            self.stat.total_inc_count += 1
            old = self._read(key)
            number = increment if old is None else _wrap_int64(_parse_int64(old) + increment)
            value = str(number).encode()
            self._write(key, value)
            self.stat.success_inc_count += 1
            return value

    def inc_ex(self, key: bytes | str, increment: int, expires: int, now: int | None = None) -> bytes:
        """Increment a value carrying an expiry prefix; expired values restart from zero.

        Returns the stored value, expiry prefix included.
        """
        key = _as_bytes(key)
        if now is None:
            now = int(time.time())
        with self._lock:
            self.stat.total_inc_count += 1
            old = self._read(key)
            if old is None or len(old) < _EXPIRES.size:
                number = increment
            else:
                old_expires, payload = unpack_expires(old)
                if old_expires != EXPIRES_NEVER and old_expires < now:
                    number = increment
                else:
                    number = _wrap_int64(_parse_int64(payload) + increment)
            value = pack_expires(expires, str(number))
            self._write(key, value)
            self.stat.success_inc_count += 1
            return value

    def clear_expired(self, now: int | None = None) -> int:
        """Delete every record whose expiry time has passed; return how many went."""
        started = time.monotonic()
        if now is None:
            now = int(time.time())
        with self._lock:
            try:
                rows = self._connection().execute("SELECT k, v FROM kv").fetchall()
            except sqlite3.Error as exc:
                raise StorageError(errno.EFAULT, f"cursor fail: {exc}") from exc
            expired = 0
            removed = 0
            for key, value in rows:
                value = bytes(value)
                if len(value) < _EXPIRES.size:
                    continue
                expires, _ = unpack_expires(value)
                if expires == EXPIRES_NEVER or expires > now:
                    continue
                expired += 1
                try:
                    if self._remove(bytes(key)):
                        removed += 1
                except StorageError as exc:
                    logger.error("delete of expired key fail: %s", exc)
        logger.info(
            "clear expired keys, db %s, total count: %d, expired key count: %d, "
            "success count: %d, time used: %dms",
            self.path.name, len(rows), expired, removed,
            int((time.monotonic() - started) * 1000),
        )
        return removed

    def keys(self) -> Iterator[bytes]:
        """Iterate over the stored keys; sorted for B-tree stores."""
        order = "k" if self.db_type is DbType.BTREE else "rowid"
        with self._lock:
            try:
                rows = self._connection().execute(
                    f"SELECT k FROM kv ORDER BY {order}"
                ).fetchall()
            except sqlite3.Error as exc:
                raise StorageError(errno.EFAULT, f"cursor fail: {exc}") from exc
        return (bytes(row[0]) for row in rows)

    def sync(self) -> bool:
        """Flush pending changes to disk; return True if anything was written."""
        with self._lock:
            if self._conn is None or not self._dirty:
                return False
            try:
                self._conn.commit()
            except sqlite3.Error as exc:
                logger.error("db sync fail: %s", exc)
                raise StorageError(errno.EFAULT, f"sync fail: {exc}") from exc
            self._dirty = False
            return True

    def close(self) -> None:
        """Flush and close the store; closing twice is harmless."""
        with self._lock:
            if self._conn is None:
                return
            try:
                self.sync()
            finally:
                self._conn.close()
                self._conn = None


class Environment:
    """A directory holding stores, with tmp, logs and data sub-directories."""

    def __init__(self, base_path: str | Path, cache_size: int = 64 * 1024 * 1024, page_size: int = 4096):
        self.base_path = Path(base_path)
        for name in _SUB_DIRS:
            path = self.base_path / name
            if path.exists():
                continue
            try:
                path.mkdir(mode=0o755)
            except OSError as exc:
                logger.error("mkdir %s fail: %s", path, exc.strerror)
                raise StorageError(exc.errno or errno.EPERM, f"mkdir {path} fail: {exc.strerror}") from exc
        self.cache_size = cache_size
        self.cache_gb, self.cache_bytes, self.cache_blocks = cache_geometry(cache_size)
        self.page_size = page_size
        self.data_path = self.base_path / "data"
        self._stores: list[Store] = []
        self._closed = False

    def open_store(self, filename: str, db_type: DbType = DbType.BTREE, stat: ServerStat | None = None) -> Store:
        """Open (creating if needed) a store file in the data directory."""
        if self._closed:
            raise StorageError(errno.EBADF, "environment is closed")
        store = Store(
            self.data_path / filename, db_type, stat,
            page_size=self.page_size, cache_size=self.cache_size,
        )
        self._stores.append(store)
        return store

    def sync(self) -> int:
        """Flush every open store; return the number that had changes."""
        return sum(1 for store in self._stores if not store.closed and store.sync())

    def close(self) -> None:
        """Close every store opened through this environment."""
        if self._closed:
            return
        for store in self._stores:
            store.close()
        self._stores.clear()
        self._closed = True

    def __enter__(self) -> Environment:
        return self

    def __exit__(self, *args) -> None:
        self.close()