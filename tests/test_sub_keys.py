import errno

import pytest

from dhtstore.storage import (
    EXPIRES_NEVER,
    Environment,
    KeyNotFoundError,
    StorageError,
    unpack_expires,
)
from dhtstore.sub_keys import (
    OP_SOURCE_DEL,
    OP_SOURCE_SET,
    KeyInfo,
    KeyListFullError,
    SubKeyIndex,
    SubKeysDisabledError,
    join_key_list,
    split_key_list,
)


@pytest.fixture
def store(tmp_path):
    with Environment(tmp_path) as env:
        yield env.open_store("subkeys")


@pytest.fixture
def obj():
    return KeyInfo(b"ns", b"obj")


def with_key(info, key):
    return KeyInfo(info.namespace, info.object_id, key)


def test_split_join_round_trip():
    keys = [b"alpha", b"beta", b"gamma"]
    assert split_key_list(join_key_list(keys)) == keys
    assert split_key_list(b"") == []


def test_join_uses_separator():
    assert join_key_list([b"a", b"b"]) == b"a\x01b"


def test_add_keeps_sorted_list(store, obj):
    index = SubKeyIndex(True, 4)
    for key in (b"c", b"a", b"b"):
        assert index.add(store, with_key(obj, key), 7) is True
    assert index.get(store, obj) == [b"a", b"b", b"c"]


def test_add_duplicate_is_not_new(store, obj):
    index = SubKeyIndex(True, 4)
    index.add(store, with_key(obj, b"k"), 1)
    assert index.add(store, with_key(obj, b"k"), 1) is False
    assert index.get(store, obj) == [b"k"]


def test_list_record_never_expires(store, obj):
    index = SubKeyIndex(True, 2)
    index.add(store, with_key(obj, b"k"), 3)
    expires, payload = unpack_expires(store.get(obj.list_key()))
    assert expires == EXPIRES_NEVER
    assert payload == b"k"


def test_delete_last_key_removes_record(store, obj):
    index = SubKeyIndex(True, 4)
    index.add(store, with_key(obj, b"a"), 1)
    index.add(store, with_key(obj, b"b"), 1)
    assert index.delete(store, with_key(obj, b"a"), 1) is True
    assert index.get(store, obj) == [b"b"]
    assert index.delete(store, with_key(obj, b"b"), 1) is True
    with pytest.raises(KeyNotFoundError):
        store.get(obj.list_key())
    with pytest.raises(KeyNotFoundError):
        index.get(store, obj)


def test_delete_missing_key(store, obj):
    index = SubKeyIndex(True, 4)
    index.add(store, with_key(obj, b"a"), 1)
    assert index.delete(store, with_key(obj, b"zzz"), 1) is False
    assert index.get(store, obj) == [b"a"]


def test_batch_add_merges_unsorted_and_duplicates(store, obj):
    index = SubKeyIndex(True, 4)
    index.add(store, with_key(obj, b"m"), 5)
    assert index.batch_add(store, obj, 5, [b"z", b"b", b"b", b"m"]) is True
    assert index.get(store, obj) == [b"b", b"m", b"z"]
    assert index.batch_add(store, obj, 5, [b"b", b"z"]) is False
    assert index.batch_add(store, obj, 5, []) is False


def test_batch_delete(store, obj):
    index = SubKeyIndex(True, 4)
    index.batch_add(store, obj, 9, [b"a", b"b", b"c", b"d"])
    assert index.batch_delete(store, obj, 9, [b"d", b"b", b"x"]) is True
    assert index.get(store, obj) == [b"a", b"c"]


def test_disabled_index_raises(store, obj):
    index = SubKeyIndex(False, 4)
    with pytest.raises(SubKeysDisabledError) as info:
        index.get(store, obj)
    assert info.value.errno == errno.EOPNOTSUPP
    with pytest.raises(SubKeysDisabledError):
        index.add(store, with_key(obj, b"k"), 1)


def test_empty_object_is_ignored_and_rejected_by_get(store):
    index = SubKeyIndex(True, 4)
    assert index.add(store, KeyInfo(b"", b"obj", b"k"), 1) is False
    with pytest.raises(StorageError) as info:
        index.get(store, KeyInfo(b"ns", b""))
    assert info.value.errno == errno.EINVAL


def test_list_full(store, obj):
    index = SubKeyIndex(True, 4)
    index.max_list_size = 10
    with pytest.raises(KeyListFullError) as info:
        index.add(store, with_key(obj, b"abcdefghij"), 1)
    assert info.value.errno == errno.ENOSPC
    with pytest.raises(KeyNotFoundError):
        index.get(store, obj)


def test_binlog_records_changes(store, obj):
    records = []
    index = SubKeyIndex(True, 4, lambda *args: records.append(args))
    index.add(store, with_key(obj, b"b"), 11)
    index.add(store, with_key(obj, b"a"), 11)
    index.delete(store, with_key(obj, b"a"), 11)
    index.delete(store, with_key(obj, b"b"), 11)
    ops = [(op, code, payload) for _, op, code, _, _, payload in records]
    assert ops == [
        (OP_SOURCE_SET, 11, b"b"),
        (OP_SOURCE_SET, 11, join_key_list([b"a", b"b"])),
        (OP_SOURCE_SET, 11, b"b"),
        (OP_SOURCE_DEL, 11, b""),
    ]
    assert all(rec[4].list_key() == obj.list_key() for rec in records)


def test_str_fields_are_bytes(store):
    index = SubKeyIndex(True, 3)
    info = KeyInfo("ns", "obj", "key")
    index.add(store, info, 2)
    assert index.get(store, KeyInfo("ns", "obj")) == [b"key"]