import errno

import pytest

from dhtstore.config import (
    ConfigError,
    GroupServer,
    ServerConfig,
    find_group_ids,
    load_config,
    merge_group_servers,
    parse_bool,
    parse_bytes,
    parse_time_base,
)
from dhtstore.settings import DEFAULT_MIN_BUFF_SIZE, DEFAULT_SERVER_PORT, TimeInfo
from dhtstore.storage import DbType


def write_conf(tmp_path, extra="", groups=None, base=True):
    lines = []
    if base:
        lines.append(f"base_path = {tmp_path}/")
    lines.append("db_prefix = db")
    for line in groups if groups is not None else ["group0 = 10.0.0.1:11411", "group0 = 10.0.0.2:11411"]:
        lines.append(line)
    lines.append(extra)
    path = tmp_path / "fdhtd.conf"
    path.write_text("\n".join(lines) + "\n")
    return path


def test_parse_bytes_units():
    assert parse_bytes("4096") == 4096
    assert parse_bytes("64KB") == 64 * 1024
    assert parse_bytes("1M") == 1024 * 1024
    assert parse_bytes("2g") == 2 * 1024 * 1024 * 1024


@pytest.mark.parametrize("text", ["", "abc", "-5", "12X"])
def test_parse_bytes_invalid(text):
    with pytest.raises(ConfigError) as info:
        parse_bytes(text)
    assert info.value.errno == errno.EINVAL


def test_parse_bool():
    assert parse_bool(None, True) is True
    assert parse_bool(None, False) is False
    assert parse_bool("Yes", False) is True
    assert parse_bool("on", False) is True
    assert parse_bool("0", True) is False


def test_parse_time_base():
    assert parse_time_base(None, 4, 0) == TimeInfo(4, 0)
    assert parse_time_base("03:15", 0, 0) == TimeInfo(3, 15)
    assert parse_time_base("03:15", 0, 0).describe() == "03:15"


@pytest.mark.parametrize("text", ["25:00", "3", "aa:bb", "12:60"])
def test_parse_time_base_invalid(text):
    with pytest.raises(ConfigError) as info:
        parse_time_base(text, 0, 0)
    assert info.value.errno == errno.EINVAL


def test_find_group_ids():
    a = GroupServer("10.0.0.1", 1)
    b = GroupServer("10.0.0.2", 1)
    groups = [[a], [], [b], [a, b]]
    assert find_group_ids(groups, ["10.0.0.1"]) == [0, 3]
    with pytest.raises(ConfigError) as info:
        find_group_ids(groups, ["192.0.2.9"])
    assert info.value.errno == errno.ENOENT


def test_merge_group_servers_sorted_unique():
    a = GroupServer("10.0.0.2", 5)
    b = GroupServer("10.0.0.1", 7)
    c = GroupServer("10.0.0.1", 6)
    groups = [[a, b, c, a], [c, b, a]]
    merged = merge_group_servers(groups, [0, 1])
    assert merged == sorted({a, b, c})
    assert merged[0] == c


def test_merge_group_servers_mismatch():
    a = GroupServer("10.0.0.1", 1)
    b = GroupServer("10.0.0.2", 1)
    with pytest.raises(ConfigError) as info:
        merge_group_servers([[a, b], [a]], [0, 1])
    assert info.value.errno == errno.EINVAL
    with pytest.raises(ConfigError):
        merge_group_servers([[a], [a, b]], [0, 1])


def test_load_config_defaults(tmp_path):
    config = load_config(write_conf(tmp_path), host_addrs=["10.0.0.1"])
    s = config.settings
    assert isinstance(config, ServerConfig)
    assert s.base_path == str(tmp_path)
    assert s.store_type == "BDB"
    assert config.db_type is DbType.BTREE
    assert config.db_prefix == "db"
    assert s.port == DEFAULT_SERVER_PORT
    assert s.min_buff_size == DEFAULT_MIN_BUFF_SIZE
    assert config.group_ids == [0]
    assert s.group_count == 1
    assert s.group_servers == [GroupServer("10.0.0.1", 11411), GroupServer("10.0.0.2", 11411)]
    assert s.clear_expired_time_base == TimeInfo(4, 0)
    assert s.compress_binlog_time_base == TimeInfo(2, 0)
    assert s.allow_ip_addrs is None
    assert "store_type=BDB" in config.summary()


def test_load_config_values(tmp_path):
    extra = "\n".join([
        "db_type = hash",
        "page_size = 8KB",
        "cache_size = 1K",
        "min_buff_size = 10",
        "sync_wait_msec = 5",
        "store_sub_keys = true",
        "allow_hosts = 10.0.0.9, 10.0.0.3",
    ])
    config = load_config(write_conf(tmp_path, extra), host_addrs=["10.0.0.2"])
    assert config.db_type is DbType.HASH
    assert config.page_size == 8 * 1024
    assert config.cache_size == 1024 * 1024
    assert config.settings.min_buff_size == 1024
    assert config.settings.sync_wait_usec == 5 * 1000
    assert config.settings.store_sub_keys is True
    assert config.settings.allow_ip_addrs == ["10.0.0.3", "10.0.0.9"]


def test_load_config_mpool(tmp_path):
    config = load_config(write_conf(tmp_path, "store_type = mpool"), host_addrs=["10.0.0.1"])
    assert config.settings.store_type == "MPOOL"
    assert "mpool_load_factor=0.75" in config.summary()


def test_bind_addr_overrides_host_addrs(tmp_path):
    groups = ["group0 = 10.0.0.1:1", "group1 = 10.0.0.2:1"]
    config = load_config(write_conf(tmp_path, "bind_addr = 10.0.0.2", groups), host_addrs=["10.0.0.1"])
    assert config.bind_addr == "10.0.0.2"
    assert config.group_ids == [1]


@pytest.mark.parametrize(
    "extra, code",
    [
        ("disabled = true", errno.ECANCELED),
        ("store_type = other", errno.EINVAL),
        ("db_type = queue", errno.EINVAL),
        ("page_size = 256", errno.EINVAL),
        ("page_size = 128K", errno.EINVAL),
        ("max_threads = 0", errno.EINVAL),
        ("accept_threads = -1", errno.EINVAL),
    ],
)
def test_load_config_errors(tmp_path, extra, code):
    with pytest.raises(ConfigError) as info:
        load_config(write_conf(tmp_path, extra), host_addrs=["10.0.0.1"])
    assert info.value.errno == code


def test_load_config_missing_base_path(tmp_path):
    with pytest.raises(ConfigError) as info:
        load_config(write_conf(tmp_path, base=False), host_addrs=["10.0.0.1"])
    assert info.value.errno == errno.ENOENT


def test_load_config_not_a_directory(tmp_path):
    target = tmp_path / "plain"
    target.write_text("x")
    path = tmp_path / "c.conf"
    path.write_text(f"base_path = {target}\ndb_prefix = db\ngroup0 = 10.0.0.1:1\n")
    with pytest.raises(ConfigError) as info:
        load_config(path, host_addrs=["10.0.0.1"])
    assert info.value.errno == errno.ENOTDIR


def test_load_config_missing_db_prefix(tmp_path):
    path = tmp_path / "c.conf"
    path.write_text(f"base_path = {tmp_path}\ngroup0 = 10.0.0.1:1\n")
    with pytest.raises(ConfigError) as info:
        load_config(path, host_addrs=["10.0.0.1"])
    assert info.value.errno == errno.ENOENT


def test_load_config_host_not_in_group(tmp_path):
    with pytest.raises(ConfigError) as info:
        load_config(write_conf(tmp_path), host_addrs=["192.0.2.1"])
    assert info.value.errno == errno.ENOENT


def test_load_config_missing_file(tmp_path):
    with pytest.raises(ConfigError) as info:
        load_config(tmp_path / "absent.conf", host_addrs=["10.0.0.1"])
    assert info.value.errno == errno.ENOENT