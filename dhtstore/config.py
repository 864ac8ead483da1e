"""Loading and validating the storage server's configuration file."""

from __future__ import annotations

import errno
import logging
import re
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Sequence

from dhtstore.settings import (
    DEFAULT_CLEAR_EXPIRED_INTERVAL,
    DEFAULT_COMPRESS_BINLOG_INTERVAL,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_DB_DEAD_LOCK_DETECT_INTERVAL,
    DEFAULT_MAX_CONNECTIONS,
    DEFAULT_MAX_PKG_SIZE,
    DEFAULT_MIN_BUFF_SIZE,
    DEFAULT_MPOOL_CLEAR_MIN_INTERVAL,
    DEFAULT_MPOOL_HTABLE_LOCK_COUNT,
    DEFAULT_MPOOL_INIT_CAPACITY,
    DEFAULT_MPOOL_LOAD_FACTOR,
    DEFAULT_NETWORK_TIMEOUT,
    DEFAULT_SERVER_PORT,
    DEFAULT_SYNC_BINLOG_BUFF_INTERVAL,
    DEFAULT_SYNC_DB_INTERVAL,
    DEFAULT_SYNC_LOG_BUFF_INTERVAL,
    DEFAULT_SYNC_STAT_FILE_INTERVAL,
    DEFAULT_SYNC_WAIT_MSEC,
    DEFAULT_THREAD_STACK_SIZE,
    DEFAULT_WRITE_MARK_FILE_FREQ,
    STORE_TYPE_BDB,
    STORE_TYPE_MPOOL,
    ServerSettings,
    TimeInfo,
)
from dhtstore.storage import DbType

logger = logging.getLogger(__name__)

DB_FILE_PREFIX_MAX_SIZE = 32
DEFAULT_PAGE_SIZE = 4 * 1024
MIN_PAGE_SIZE = 512
MAX_PAGE_SIZE = 64 * 1024
DEFAULT_CACHE_SIZE = 64 * 1024 * 1024
MIN_CACHE_SIZE = 1024 * 1024
MIN_BUFF_SIZE_FLOOR = 1024

_BYTES = re.compile(r"^\s*(-?\d+)\s*([KkMmGgTt]?)[Bb]?\s*$")
_UNITS = {"": 1, "k": 1024, "m": 1024 ** 2, "g": 1024 ** 3, "t": 1024 ** 4}
_LEADING_INT = re.compile(r"\s*([+-]?\d+)")
_GROUP_ITEM = re.compile(r"^group(\d+)$")
_TRUE_WORDS = {"true", "yes", "on", "1"}


class ConfigError(OSError):
    """The configuration is missing, invalid or inconsistent; ``errno`` tells why."""


@dataclass(frozen=True, order=True)
class GroupServer:
    """One server of a group, ordered by address and then port."""

    ip_addr: str
    port: int

    def __str__(self) -> str:
        return f"{self.ip_addr}:{self.port}"


def parse_bytes(text: str) -> int:
    """Parse a size such as ``4096``, ``64KB`` or ``1G`` into bytes."""
    match = _BYTES.match(text)
    if match is None:
        raise ConfigError(errno.EINVAL, f"invalid byte size: {text!r}")
    number = int(match.group(1))
    if number < 0:
        raise ConfigError(errno.EINVAL, f"byte size must not be negative: {text!r}")
    return number * _UNITS[match.group(2).lower()]


def parse_bool(text: str | None, default: bool) -> bool:
    """Interpret a configuration flag; a missing value gives ``default``."""
    if text is None:
        return default
    return text.strip().lower() in _TRUE_WORDS


def parse_time_base(text: str | None, default_hour: int | None, default_minute: int | None) -> TimeInfo:
    """Parse an ``HH:MM`` time of day; a missing value gives the defaults."""
    if text is None or not text.strip():
        return TimeInfo(default_hour, default_minute)
    parts = text.strip().split(":")
    if len(parts) != 2 or not all(part.strip().isdigit() for part in parts):
        raise ConfigError(errno.EINVAL, f"invalid time: {text!r}, expect HH:MM")
    hour, minute = (int(part) for part in parts)
    if not 0 <= hour <= 23 or not 0 <= minute <= 59:
        raise ConfigError(errno.EINVAL, f"invalid time: {text!r}")
    return TimeInfo(hour, minute)


def find_group_ids(groups: Sequence[Sequence[GroupServer]], host_addrs: Iterable[str]) -> list[int]:
    """Return the ids of the groups holding any of the local addresses."""
    addrs = set(host_addrs)
    group_ids = [
        group_id
        for group_id, servers in enumerate(groups)
        if servers and any(server.ip_addr in addrs for server in servers)
    ]
    if not group_ids:
        raise ConfigError(errno.ENOENT, "local host does not belong to any group")
    return group_ids


def merge_group_servers(groups: Sequence[Sequence[GroupServer]], group_ids: Sequence[int]) -> list[GroupServer]:
    """Return the sorted servers shared by the given groups, which must all match."""
    if not group_ids:
        return []
    first = group_ids[0]
    servers = sorted(set(groups[first]))
    known = set(servers)
    for other in group_ids[1:]:
        seen: set[GroupServer] = set()
        for server in groups[other]:
            if server not in known:
                raise ConfigError(
                    errno.EINVAL,
                    f"group {first} and group {other}: servers not same, "
                    f"group {first} no server \"{server}\"",
                )
            seen.add(server)
        if len(seen) != len(servers):
            raise ConfigError(
                errno.EINVAL,
                f"group {first} server count: {len(servers)}, "
                f"group {other} server count: {len(seen)}, servers not same",
            )
    return servers


class _Items:
    """The items of a flat ``name = value`` configuration file."""

    def __init__(self, text: str):
        self._values: dict[str, list[str]] = {}
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            name, value = line.split("=", 1)
            self._values.setdefault(name.strip(), []).append(value.strip())

    def names(self) -> list[str]:
        return list(self._values)

    def get(self, name: str) -> str | None:
        values = self._values.get(name)
        return values[0] if values else None

    def get_all(self, name: str) -> list[str]:
        return list(self._values.get(name, []))

    def get_int(self, name: str, default: int) -> int:
        value = self.get(name)
        if value is None:
            return default
        match = _LEADING_INT.match(value)
        return int(match.group(1)) if match else 0

    def get_positive(self, name: str, default: int) -> int:
        value = self.get_int(name, default)
        return value if value > 0 else default

    def get_float(self, name: str, default: float) -> float:
        value = self.get(name)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError:
            return 0.0

    def get_bool(self, name: str, default: bool) -> bool:
        return parse_bool(self.get(name), default)

    def get_bytes(self, name: str, default: int) -> int:
        value = self.get(name)
        return default if value is None else parse_bytes(value)


def _parse_server(text: str, default_port: int) -> GroupServer:
    host, sep, port_text = text.strip().rpartition(":")
    if not sep:
        host, port_text = text.strip(), ""
    if not host:
        raise ConfigError(errno.EINVAL, f"invalid server address: {text!r}")
    if not port_text:
        return GroupServer(host, default_port)
    if not port_text.isdigit() or not 0 < int(port_text) < 65536:
        raise ConfigError(errno.EINVAL, f"invalid server port: {text!r}")
    return GroupServer(host, int(port_text))


def _load_groups(items: _Items, default_port: int) -> list[list[GroupServer]]:
    indexed: dict[int, list[GroupServer]] = {}
    for name in items.names():
        match = _GROUP_ITEM.match(name)
        if match is None:
            continue
        indexed[int(match.group(1))] = [
            _parse_server(value, default_port) for value in items.get_all(name)
        ]
    group_count = items.get_int("group_count", max(indexed, default=-1) + 1)
    if group_count <= 0:
        raise ConfigError(errno.ENOENT, "no group servers configured")
    extra = [group_id for group_id in indexed if group_id >= group_count]
    if extra:
        raise ConfigError(errno.EINVAL, f"group id {min(extra)} >= group count {group_count}")
    return [indexed.get(group_id, []) for group_id in range(group_count)]


def _load_allow_hosts(items: _Items) -> list[str] | None:
    hosts: list[str] = []
    for value in items.get_all("allow_hosts"):
        for host in value.split(","):
            host = host.strip()
            if host == "*":
                return None
            if host:
                hosts.append(host)
    return sorted(set(hosts)) if hosts else None


def _local_addrs() -> list[str]:
    try:
        _, _, addrs = socket.gethostbyname_ex(socket.gethostname())
    except OSError:
        return []
    return addrs


@dataclass
class ServerConfig:
    """Everything the storage server reads from its configuration file."""

    settings: ServerSettings
    bind_addr: str = ""
    group_ids: list[int] = field(default_factory=list)
    db_type: DbType = DbType.BTREE
    page_size: int = DEFAULT_PAGE_SIZE
    cache_size: int = DEFAULT_CACHE_SIZE
    db_prefix: str = ""
    log_level: str | None = None
    run_by_group: str | None = None
    run_by_user: str | None = None

    def store_params(self) -> str:
        s = self.settings
        if s.store_type == STORE_TYPE_MPOOL:
            return (
                f"mpool_init_capacity={s.mpool_init_capacity}, "
                f"mpool_load_factor={s.mpool_load_factor:.2f}, "
                f"mpool_clear_min_interval={s.mpool_clear_min_interval}s, "
                f"mpool_htable_lock_count={s.mpool_htable_lock_count}"
            )
        return (
            f"db_type={self.db_type.value}, db_prefix={self.db_prefix}, "
            f"page_size={self.page_size}, "
            f"sync_db_time_base={s.sync_db_time_base.describe()}, "
            f"sync_db_interval={s.sync_db_interval}s, "
            f"db_dead_lock_detect_interval={s.db_dead_lock_detect_interval}ms"
        )

    def summary(self) -> str:
        """Describe the loaded configuration in one line."""
        s = self.settings
        allow_count = -1 if s.allow_ip_addrs is None else len(s.allow_ip_addrs)
        return (
            f"base_path={s.base_path}, total group count={s.group_count}, "
            f"my group count={len(self.group_ids)}, "
            f"group server count={len(s.group_servers)}, "
            f"connect_timeout={s.connect_timeout}, network_timeout={s.network_timeout}, "
            f"port={s.port}, bind_addr={self.bind_addr}, "
            f"max_connections={s.max_connections}, accept_threads={s.accept_threads}, "
            f"max_threads={s.max_threads}, max_pkg_size={s.max_pkg_size // 1024} KB, "
            f"min_buff_size={s.min_buff_size // 1024} KB, store_type={s.store_type}, "
            f"cache_size={self.cache_size // (1024 * 1024)} MB, {self.store_params()}, "
            f"sync_wait_msec={s.sync_wait_usec // 1000}ms, "
            f"allow_ip_count={allow_count}, "
            f"sync_log_buff_interval={s.sync_log_buff_interval}s, "
            f"need_clear_expired_data={int(s.need_clear_expired_data)}, "
            f"clear_expired_time_base={s.clear_expired_time_base.describe()}, "
            f"clear_expired_interval={s.clear_expired_interval}s, "
            f"write_to_binlog={int(s.write_to_binlog)}, "
            f"sync_binlog_buff_interval={s.sync_binlog_buff_interval}s, "
            f"compress_binlog_time_base={s.compress_binlog_time_base.describe()}, "
            f"compress_binlog_interval={s.compress_binlog_interval}s, "
            f"sync_stat_file_interval={s.sync_stat_file_interval}s, "
            f"write_mark_file_freq={s.write_mark_file_freq}, "
            f"thread_stack_size={s.thread_stack_size // 1024} KB, "
            f"if_alias_prefix={s.if_alias_prefix}, "
            f"store_sub_keys={int(s.store_sub_keys)}"
        )


def _load_store_settings(items: _Items, config: ServerConfig) -> None:
    s = config.settings
    store_type = items.get("store_type")
    if store_type is None or store_type.upper() == STORE_TYPE_BDB:
        s.store_type = STORE_TYPE_BDB
    elif store_type.upper() == STORE_TYPE_MPOOL:
        s.store_type = STORE_TYPE_MPOOL
    else:
        raise ConfigError(errno.EINVAL, f"item \"store_type\" is invalid, value: \"{store_type}\"")

    if s.store_type == STORE_TYPE_MPOOL:
        capacity = items.get_int("mpool_init_capacity", DEFAULT_MPOOL_INIT_CAPACITY)
        s.mpool_init_capacity = capacity if capacity >= 0 else DEFAULT_MPOOL_INIT_CAPACITY
        s.mpool_load_factor = items.get_float("mpool_load_factor", DEFAULT_MPOOL_LOAD_FACTOR)
        s.mpool_clear_min_interval = items.get_positive(
            "mpool_clear_min_interval", DEFAULT_MPOOL_CLEAR_MIN_INTERVAL)
        s.mpool_htable_lock_count = items.get_positive(
            "mpool_htable_lock_count", DEFAULT_MPOOL_HTABLE_LOCK_COUNT)
        return

    db_type = items.get("db_type")
    if db_type is None or db_type.lower() == "btree":
        config.db_type = DbType.BTREE
    elif db_type.lower() == "hash":
        config.db_type = DbType.HASH
    else:
        raise ConfigError(errno.EINVAL, f"item \"db_type\" is invalid, value: \"{db_type}\"")

    page_size = items.get_bytes("page_size", DEFAULT_PAGE_SIZE)
    if not MIN_PAGE_SIZE <= page_size <= MAX_PAGE_SIZE:
        raise ConfigError(
            errno.EINVAL,
            f"page_size: {page_size} is invalid, which < {MIN_PAGE_SIZE} or > {MAX_PAGE_SIZE}",
        )
    config.page_size = page_size

    db_prefix = items.get("db_prefix")
    if not db_prefix:
        raise ConfigError(errno.ENOENT, "item \"db_prefix\" not exist or is empty")
    config.db_prefix = db_prefix[:DB_FILE_PREFIX_MAX_SIZE - 1]
    s.sync_db_interval = items.get_int("sync_db_interval", DEFAULT_SYNC_DB_INTERVAL)
    s.sync_db_time_base = parse_time_base(items.get("sync_db_time_base"), 0, 0)
    s.db_dead_lock_detect_interval = items.get_int(
        "db_dead_lock_detect_interval", DEFAULT_DB_DEAD_LOCK_DETECT_INTERVAL)


def load_config(path: str | Path, host_addrs: Iterable[str] | None = None) -> ServerConfig:
    """Read and validate a server configuration file.

    ``host_addrs`` lists the local addresses used to find this server's
    groups; when omitted they are looked up, and a configured ``bind_addr``
    always takes their place.
    """
    path = Path(path)
    try:
        items = _Items(path.read_text())
    except OSError as exc:
        raise ConfigError(exc.errno or errno.ENOENT, f"load conf file \"{path}\" fail: {exc.strerror}") from exc

    if items.get_bool("disabled", False):
        raise ConfigError(errno.ECANCELED, f"conf file \"{path}\" disabled=true")

    base_path = items.get("base_path")
    if base_path is None:
        raise ConfigError(errno.ENOENT, f"conf file \"{path}\" must have item \"base_path\"")
    base_path = base_path.rstrip("/") or "/"
    if not Path(base_path).exists():
        raise ConfigError(errno.ENOENT, f"\"{base_path}\" can't be accessed")
    if not Path(base_path).is_dir():
        raise ConfigError(errno.ENOTDIR, f"\"{base_path}\" is not a directory")

    settings = ServerSettings(base_path=base_path)
    config = ServerConfig(settings=settings, log_level=items.get("log_level"))

    settings.connect_timeout = items.get_positive("connect_timeout", DEFAULT_CONNECT_TIMEOUT)
    settings.network_timeout = items.get_positive("network_timeout", DEFAULT_NETWORK_TIMEOUT)
    settings.port = items.get_positive("port", DEFAULT_SERVER_PORT)
    config.bind_addr = items.get("bind_addr") or ""
    settings.max_connections = items.get_positive("max_connections", DEFAULT_MAX_CONNECTIONS)

    _load_store_settings(items, config)

    settings.max_threads = items.get_int("max_threads", 4)
    if settings.max_threads <= 0:
        raise ConfigError(errno.EINVAL, f"item \"max_threads\" is invalid, value: {settings.max_threads} <= 0")
    settings.accept_threads = items.get_int("accept_threads", 1)
    if settings.accept_threads <= 0:
        raise ConfigError(errno.EINVAL, f"item \"accept_threads\" is invalid, value: {settings.accept_threads} <= 0")

    settings.max_pkg_size = items.get_bytes("max_pkg_size", DEFAULT_MAX_PKG_SIZE)
    min_buff_size = items.get("min_buff_size")
    if min_buff_size is None:
        settings.min_buff_size = DEFAULT_MIN_BUFF_SIZE
    else:
        settings.min_buff_size = max(MIN_BUFF_SIZE_FLOOR, parse_bytes(min_buff_size))

    settings.sync_wait_usec = items.get_positive("sync_wait_msec", DEFAULT_SYNC_WAIT_MSEC) * 1000

    config.run_by_group = items.get("run_by_group")
    config.run_by_user = items.get("run_by_user")
    settings.allow_ip_addrs = _load_allow_hosts(items)

    config.cache_size = max(MIN_CACHE_SIZE, items.get_bytes("cache_size", DEFAULT_CACHE_SIZE))
    settings.if_alias_prefix = items.get("if_alias_prefix") or ""

    groups = _load_groups(items, settings.port)
    settings.group_count = len(groups)
    if config.bind_addr:
        addrs = [config.bind_addr]
    else:
        addrs = list(host_addrs) if host_addrs is not None else _local_addrs()
        if not addrs:
            raise ConfigError(errno.ENOENT, "can't get ip address from local host")
    config.group_ids = find_group_ids(groups, addrs)
    settings.group_servers = merge_group_servers(groups, config.group_ids)

    settings.sync_log_buff_interval = items.get_positive(
        "sync_log_buff_interval", DEFAULT_SYNC_LOG_BUFF_INTERVAL)
    settings.need_clear_expired_data = items.get_bool("need_clear_expired_data", True)
    settings.clear_expired_interval = items.get_int(
        "clear_expired_interval", DEFAULT_CLEAR_EXPIRED_INTERVAL)
    settings.clear_expired_time_base = parse_time_base(items.get("clear_expired_time_base"), 4, 0)
    settings.write_to_binlog = items.get_bool("write_to_binlog", True)
    settings.sync_binlog_buff_interval = items.get_positive(
        "sync_binlog_buff_interval", DEFAULT_SYNC_BINLOG_BUFF_INTERVAL)
    settings.compress_binlog_time_base = parse_time_base(items.get("compress_binlog_time_base"), 2, 0)
    settings.compress_binlog_interval = items.get_int(
        "compress_binlog_interval", DEFAULT_COMPRESS_BINLOG_INTERVAL)
    settings.sync_stat_file_interval = items.get_positive(
        "sync_stat_file_interval", DEFAULT_SYNC_STAT_FILE_INTERVAL)
    settings.write_mark_file_freq = items.get_positive(
        "write_mark_file_freq", DEFAULT_WRITE_MARK_FILE_FREQ)
    settings.thread_stack_size = items.get_bytes("thread_stack_size", DEFAULT_THREAD_STACK_SIZE)
    settings.store_sub_keys = items.get_bool("store_sub_keys", False)

    logger.info(config.summary())
    return config