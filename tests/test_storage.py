import errno

import pytest

from dhtstore.settings import ServerStat
from dhtstore.storage import (
    EXPIRES_NEVER,
    FULL_KEY_SEPARATOR,
    DbType,
    Environment,
    KeyNotFoundError,
    StorageError,
    cache_geometry,
    pack_expires,
    pack_full_key,
    unpack_expires,
)


@pytest.fixture
def env(tmp_path):
    with Environment(tmp_path, 1024 * 1024, 4096) as environment:
        yield environment


@pytest.fixture
def store(env):
    return env.open_store("db000")


def test_cache_geometry_small_cache():
    size = 64 * 1024 * 1024
    assert cache_geometry(size) == (0, size, 1)


def test_cache_geometry_recombines():
    size = 3 * 1024 * 1024 * 1024 + 12345
    gb, rest, blocks = cache_geometry(size)
    assert gb * 1024 * 1024 * 1024 + rest == size
    assert (blocks - 1) * 256 * 1024 * 1024 < size <= blocks * 256 * 1024 * 1024


def test_pack_full_key_parts():
    full = pack_full_key("ns", "obj", "key")
    assert full.split(FULL_KEY_SEPARATOR) == [b"ns", b"obj", b"key"]


def test_pack_expires_wire_format():
    assert pack_expires(EXPIRES_NEVER, b"x") == b"\x00\x00\x00\x00x"


def test_pack_unpack_round_trip():
    assert unpack_expires(pack_expires(-1, b"payload")) == (-1, b"payload")
    assert unpack_expires(pack_expires(1700000000, "v")) == (1700000000, b"v")


def test_unpack_expires_short_value():
    with pytest.raises(ValueError):
        unpack_expires(b"ab")


def test_environment_creates_sub_dirs(tmp_path):
    with Environment(tmp_path):
        assert all((tmp_path / name).is_dir() for name in ("tmp", "logs", "data"))


def test_environment_missing_base_path(tmp_path):
    with pytest.raises(StorageError) as info:
        Environment(tmp_path / "missing")
    assert info.value.errno == errno.ENOENT


def test_set_get_round_trip(store):
    store.set(b"k", b"value")
    assert store.get(b"k") == b"value"
    assert store.stat.total_set_count == store.stat.success_set_count == 1


def test_get_missing_counts_failure(store):
    with pytest.raises(KeyNotFoundError) as info:
        store.get(b"nope")
    assert info.value.errno == errno.ENOENT
    assert store.stat.total_get_count == 1
    assert store.stat.success_get_count == 0


def test_delete(store):
    store.set("k", "v")
    store.delete("k")
    with pytest.raises(KeyNotFoundError):
        store.delete("k")
    assert store.stat.total_delete_count == 2
    assert store.stat.success_delete_count == 1


def test_partial_set_overwrites_and_pads(store):
    store.set(b"k", b"abcdef")
    store.partial_set(b"k", b"XY", 2)
    assert store.get(b"k") == b"abXYef"
    store.partial_set(b"new", b"Z", 3)
    assert store.get(b"new") == b"\0\0\0Z"


def test_inc_accumulates(store):
    assert int(store.inc(b"c", 5)) == 5
    assert int(store.inc(b"c", 3)) == 8
    assert store.stat.success_inc_count == 2


def test_inc_non_numeric_starts_from_zero(store):
    store.set(b"c", b"abc")
    assert int(store.inc(b"c", 7)) == 7


def test_inc_ex_keeps_expiry_prefix(store):
    value = store.inc_ex(b"c", 4, EXPIRES_NEVER, now=100)
    assert unpack_expires(value) == (EXPIRES_NEVER, b"4")
    assert store.get(b"c") == value


def test_inc_ex_restarts_expired_value(store):
    store.set(b"c", pack_expires(50, b"40"))
    value = store.inc_ex(b"c", 2, 500, now=100)
    assert unpack_expires(value) == (500, b"2")


def test_clear_expired(store):
    store.set(b"old", pack_expires(50, b"a"))
    store.set(b"fresh", pack_expires(500, b"b"))
    store.set(b"forever", pack_expires(EXPIRES_NEVER, b"c"))
    assert store.clear_expired(now=100) == 1
    assert sorted(store.keys()) == [b"forever", b"fresh"]


def test_btree_keys_sorted(store):
    for key in (b"b", b"c", b"a"):
        store.set(key, b"v")
    assert list(store.keys()) == [b"a", b"b", b"c"]


def test_shared_stat_and_hash_store(env):
    stat = ServerStat()
    first = env.open_store("db001", DbType.HASH, stat)
    second = env.open_store("db002", DbType.HASH, stat)
    first.set(b"a", b"1")
    second.set(b"b", b"2")
    assert stat.success_set_count == 2
    assert set(first.keys()) == {b"a"}


def test_sync_reports_changes_and_persists(tmp_path):
    with Environment(tmp_path) as environment:
        store = environment.open_store("db000")
        store.set(b"k", b"v")
        assert environment.sync() == 1
        assert environment.sync() == 0
    with Environment(tmp_path) as environment:
        assert environment.open_store("db000").get(b"k") == b"v"


def test_closed_store_rejects_operations(store):
    store.close()
    with pytest.raises(StorageError) as info:
        store.get(b"k")
    assert info.value.errno == errno.EBADF


def test_closed_environment_rejects_open(tmp_path):
    environment = Environment(tmp_path)
    environment.close()
    with pytest.raises(StorageError):
        environment.open_store("db000")