"""Per-object index of sub keys, kept as a sorted list record in the store."""

from __future__ import annotations

import errno
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable

from dhtstore.storage import (
    EXPIRES_NEVER,
    FULL_KEY_SEPARATOR,
    KeyNotFoundError,
    Store,
    StorageError,
    pack_expires,
    pack_full_key,
    unpack_expires,
)

logger = logging.getLogger(__name__)

LIST_KEY_NAME = b"#@list"
KEY_LIST_MAX_SIZE = 64 * 1024
OP_SOURCE_SET = "S"
OP_SOURCE_DEL = "D"

_PREFIX_SIZE = 4

BinlogWriter = Callable[[int, str, int, int, "KeyInfo", bytes], None]


def _as_bytes(value: bytes | str) -> bytes:
    return value.encode() if isinstance(value, str) else bytes(value)


@dataclass(frozen=True)
class KeyInfo:
    """Namespace, object id and sub key of one stored value."""

    namespace: bytes
    object_id: bytes
    key: bytes = b""

    def __post_init__(self) -> None:
        object.__setattr__(self, "namespace", _as_bytes(self.namespace))
        object.__setattr__(self, "object_id", _as_bytes(self.object_id))
        object.__setattr__(self, "key", _as_bytes(self.key))

    def list_key(self) -> bytes:
        """Return the full key under which this object's sub key list lives."""
        return pack_full_key(self.namespace, self.object_id, LIST_KEY_NAME)

    def _list_info(self) -> KeyInfo:
        return KeyInfo(self.namespace, self.object_id, LIST_KEY_NAME)

    def _has_object(self) -> bool:
        return bool(self.namespace) and bool(self.object_id)


class SubKeysDisabledError(StorageError):
    """Sub key storage is switched off on this server."""

    def __init__(self) -> None:
        super().__init__(errno.EOPNOTSUPP, "sub key storage is disabled")


class KeyListFullError(StorageError):
    """The sub key list would grow beyond its maximum size."""

    def __init__(self, needed: int, limit: int) -> None:
        super().__init__(errno.ENOSPC, f"key list needs {needed} bytes, limit is {limit}")


def split_key_list(data: bytes) -> list[bytes]:
    """Split the payload of a key list record into its keys."""
    if not data:
        return []
    return bytes(data).split(FULL_KEY_SEPARATOR)


def join_key_list(keys: Iterable[bytes | str]) -> bytes:
    """Join keys into the payload of a key list record."""
    return FULL_KEY_SEPARATOR.join(_as_bytes(key) for key in keys)


class SubKeyIndex:
    """Maintains, for each object, the sorted list of its sub keys."""

    max_list_size = KEY_LIST_MAX_SIZE

    def __init__(self, enabled: bool, max_threads: int = 4, binlog: BinlogWriter | None = None):
        self.enabled = enabled
        self.binlog = binlog
        lock_count = max(1, max_threads)
        if lock_count % 2 == 0:
            lock_count += 1
        self._locks = [threading.Lock() for _ in range(lock_count)] if enabled else []

    def _lock_for(self, key_hash_code: int) -> threading.Lock:
        if not self.enabled:
            raise SubKeysDisabledError()
        return self._locks[(key_hash_code & 0xFFFFFFFF) % len(self._locks)]

    def _read(self, store: Store, full_key: bytes) -> tuple[int, list[bytes]]:
        """Return the stored record length (0 when absent or empty) and its keys."""
        try:
            value = store.get(full_key)
        except KeyNotFoundError:
            return 0, []
        if len(value) <= _PREFIX_SIZE:
            return 0, []
        _, payload = unpack_expires(value)
        return len(value), split_key_list(payload)

    def _log(self, op_type: str, key_hash_code: int, key_info: KeyInfo, payload: bytes) -> None:
        if self.binlog is not None:
            self.binlog(int(time.time()), op_type, key_hash_code, EXPIRES_NEVER,
                        key_info._list_info(), payload)

    def _store_list(self, store: Store, key_info: KeyInfo, key_hash_code: int,
                    keys: list[bytes]) -> None:
        full_key = key_info.list_key()
        payload = join_key_list(keys)
        if payload:
            store.set(full_key, pack_expires(EXPIRES_NEVER, payload))
            self._log(OP_SOURCE_SET, key_hash_code, key_info, payload)
        else:
            store.delete(full_key)
            self._log(OP_SOURCE_DEL, key_hash_code, key_info, b"")

    def _do_add(self, store: Store, key_info: KeyInfo, key_hash_code: int,
                new_keys: list[bytes]) -> bool:
        value_len, keys = self._read(store, key_info.list_key())
        needed = value_len + sum(1 + len(key) for key in new_keys)
        existing = set(keys)
        added = sorted(set(new_keys) - existing)
        if len(new_keys) == 1 and not added:
            return False
        if needed >= self.max_list_size:
            raise KeyListFullError(needed, self.max_list_size)
        if not added:
            return False
        self._store_list(store, key_info, key_hash_code, sorted(existing.union(added)))
        return True

    def _do_delete(self, store: Store, key_info: KeyInfo, key_hash_code: int,
                   old_keys: list[bytes]) -> bool:
        _, keys = self._read(store, key_info.list_key())
        existing = set(keys)
        missing = [key for key in old_keys if key not in existing]
        for key in missing:
            logger.warning("namespace: %r, object id: %r, key: %r not exist!",
                           key_info.namespace, key_info.object_id, key)
        if len(old_keys) == 1 and missing:
            return False
        removing = set(old_keys)
        self._store_list(store, key_info, key_hash_code,
                         [key for key in keys if key not in removing])
        return len(missing) < len(removing)

    def add(self, store: Store, key_info: KeyInfo, key_hash_code: int) -> bool:
        """Add ``key_info.key`` to its object's list; return True if it was new."""
        lock = self._lock_for(key_hash_code)
        if not key_info._has_object():
            return False
        with lock:
            return self._do_add(store, key_info, key_hash_code, [key_info.key])

    def delete(self, store: Store, key_info: KeyInfo, key_hash_code: int) -> bool:
        """Remove ``key_info.key`` from its object's list; return True if it was there."""
        lock = self._lock_for(key_hash_code)
        if not key_info._has_object():
            return False
        with lock:
            return self._do_delete(store, key_info, key_hash_code, [key_info.key])

    def batch_add(self, store: Store, key_info: KeyInfo, key_hash_code: int,
                  sub_keys: Iterable[bytes | str]) -> bool:
        """Add several sub keys at once; return True if any was new."""
        lock = self._lock_for(key_hash_code)
        keys = [_as_bytes(key) for key in sub_keys]
        if not key_info._has_object() or not keys:
            return False
        with lock:
            return self._do_add(store, key_info, key_hash_code, keys)

    def batch_delete(self, store: Store, key_info: KeyInfo, key_hash_code: int,
                     sub_keys: Iterable[bytes | str]) -> bool:
        """Remove several sub keys at once; return True if any was present."""
        lock = self._lock_for(key_hash_code)
        keys = [_as_bytes(key) for key in sub_keys]
        if not key_info._has_object() or not keys:
            return False
        with lock:
            return self._do_delete(store, key_info, key_hash_code, keys)

    def get(self, store: Store, key_info: KeyInfo) -> list[bytes]:
        """Return the sorted sub keys of an object; raise KeyNotFoundError if none."""
        if not self.enabled:
            raise SubKeysDisabledError()
        if not key_info._has_object():
            raise StorageError(errno.EINVAL, "namespace and object id must not be empty")
        full_key = key_info.list_key()
        value = store.get(full_key)
        if len(value) <= _PREFIX_SIZE:
            raise KeyNotFoundError(full_key)
        return split_key_list(unpack_expires(value)[1])