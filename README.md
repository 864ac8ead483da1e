# dhtstore

The storage layer of a distributed hash table server. It keeps namespaced
key-value records with expiry times in SQLite files. It can also keep a sorted
index of the sub keys of each object. It reads the server's configuration
file, saves operation counters to disk, and replays binlog records into the
stores after a restart.

It uses only the standard library.

## Install

```
pip install .
pip install ".[test]"   # adds pytest
pytest
```

## Modules

### `dhtstore.settings`

- `TimeInfo(hour, minute)` is a daily time of day. `describe()` returns
  `"HH:MM"`, or `"current time"` when `hour` is `None`.
- `ServerStat` holds the total and successful counts of set, get, inc and
  delete operations. `as_dict()` returns them in a fixed order, and `copy()`
  takes a snapshot.
- `ServerSettings` holds the server's tunables with their defaults: port,
  timeouts, intervals, store type, the allowed hosts and so on.
  `heart_beat_interval` is half the network timeout, and never less than 1.

### `dhtstore.storage`

- `Environment(base_path, cache_size, page_size)` creates `tmp`, `logs` and
  `data` under `base_path`. `open_store(filename, db_type, stat)` opens a
  `Store` in `data`. `sync()` flushes every store and returns how many had
  changes. It works as a context manager, and `close()` closes every store.
- `Store` has these methods:
  - `get(key)` returns the value.
  - `set(key, value)` stores a value.
  - `partial_set(key, value, offset)` overwrites part of a value and pads
    with zero bytes.
  - `delete(key)` removes a key.
  - `inc(key, increment)` adds to a decimal value and returns the new value.
  - `inc_ex(key, increment, expires, now)` does the same for a value that
    carries an expiry prefix. A value that has expired starts again from the
    increment.
  - `clear_expired(now)` deletes the expired records and returns how many it
    deleted.
  - `keys()` lists the keys. They come sorted for `DbType.BTREE`.
  - `sync()` and `close()` flush and close the store.

  Every operation updates the `ServerStat` it was given.
- `pack_full_key(namespace, object_id, key)` joins the three parts with
  `\x01`.
- `pack_expires(expires, value)` and `unpack_expires(data)` add and remove
  the 4-byte big-endian expiry prefix. An expiry of `0` means the value never
  expires.
- `cache_geometry(cache_size)` splits a cache size into whole gigabytes,
  remaining bytes and 256 MiB blocks.

### `dhtstore.sub_keys`

- `KeyInfo(namespace, object_id, key)` names one value. `list_key()` returns
  the full key of the object's sub key list.
- `SubKeyIndex(enabled, max_threads, binlog)` keeps the list with `add`,
  `delete`, `batch_add`, `batch_delete` and `get`. The list is stored as a
  record with no expiry.
  - If `binlog` is given, it is called for each change of a list with
    `(timestamp, op_type, key_hash_code, expires, key_info, payload)`.
  - If the index is disabled, it raises `SubKeysDisabledError`.
  - If a list would reach 64 KiB, it raises `KeyListFullError`.
- `split_key_list` and `join_key_list` convert the record payload to a list
  of keys and back.

### `dhtstore.config`

- `load_config(path, host_addrs)` reads a flat `name = value` file and
  returns a `ServerConfig`, which holds the `ServerSettings`, the DB type,
  page size, cache size, DB prefix and this server's group ids.
  - Groups are given as `groupN = host:port` items.
  - If `bind_addr` is set, it is used in place of the local addresses.
  - `summary()` describes the result in one line.
- `parse_bytes`, `parse_bool` and `parse_time_base` parse single values.
- `find_group_ids` and `merge_group_servers` work out which groups this host
  serves, and check that those groups list the same `GroupServer`s.
- Invalid or inconsistent configuration raises `ConfigError`. Its `errno`
  tells why.

### `dhtstore.stats`

- `StatFile(base_path)` handles `data/stat.dat`. `load()` reads it, creating
  it if needed. `write(stat)` rewrites it only when the counters have
  changed.
- `format_stat` and `parse_stat` convert `ServerStat` to and from the file's
  `name=value` text.
- `rewrite_file(path, text)` replaces a file's contents and fsyncs it.

### `dhtstore.recovery`

- `Recovery(base_path, stores, group_count)` replays binlog records into the
  stores. Each record goes to the store for `key_hash_code % group_count`.
  - `apply(records)` returns the scanned and applied counts.
  - `run(binlog_index, binlog_offset, reader_factory)` replays from the
    position saved in `data/db_recovery_mark.dat` up to the given end, then
    updates the mark.
  - `trickle(env, binlog_index, binlog_offset, force)` flushes the stores
    and records the position.
- `BinlogRecord`, `OpType`, `RecoveryMark`, `read_mark` and `write_mark`
  describe the records and the mark file.

## Example

```python
import tempfile

from dhtstore.settings import ServerStat
from dhtstore.storage import DbType, Environment, pack_expires, pack_full_key
from dhtstore.sub_keys import KeyInfo, SubKeyIndex

stat = ServerStat()
with tempfile.TemporaryDirectory() as base, Environment(base, 64 * 1024 * 1024, 4096) as env:
    store = env.open_store("db000", DbType.BTREE, stat)
    key = pack_full_key(b"user", b"42", b"name")
    store.set(key, pack_expires(0, b"alice"))
    print(store.get(key))                  # b'\x00\x00\x00\x00alice'

    index = SubKeyIndex(True, 4, None)
    index.add(store, KeyInfo(b"user", b"42", b"name"), 7)
    print(index.get(store, KeyInfo(b"user", b"42")))   # [b'name']
    print(stat.as_dict())
```

Errors are raised as exceptions: `StorageError`, with the subclasses
`KeyNotFoundError`, `SubKeysDisabledError` and `KeyListFullError`, and
`ConfigError`. All of them are `OSError`s that carry an `errno`.

## What it does not do

This package is the storage part only. It has no network server, no client,
and no command to run. It does not read or write binlog files itself:
`Recovery.run` takes a `reader_factory` that yields `BinlogRecord`s, and
`SubKeyIndex` takes a `binlog` callback. It does not schedule the periodic
tasks either, so you call `clear_expired`, `trickle` and `StatFile.write`
yourself. The configuration accepts `store_type = MPOOL` and its settings, but
the only store provided is the file-backed `Store`.