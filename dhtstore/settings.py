"""Server-wide settings, scheduling time bases and operation counters."""

from __future__ import annotations

import copy as _copy
from dataclasses import asdict, dataclass, field

DEFAULT_SERVER_PORT = 24000
DEFAULT_MAX_CONNECTIONS = 256
DEFAULT_MAX_PKG_SIZE = 64 * 1024
DEFAULT_MIN_BUFF_SIZE = 64 * 1024
DEFAULT_CONNECT_TIMEOUT = 30
DEFAULT_NETWORK_TIMEOUT = 30
DEFAULT_SYNC_WAIT_MSEC = 100
DEFAULT_SYNC_LOG_BUFF_INTERVAL = 10
DEFAULT_SYNC_BINLOG_BUFF_INTERVAL = 60
DEFAULT_SYNC_DB_INTERVAL = 86400
DEFAULT_CLEAR_EXPIRED_INTERVAL = 0
DEFAULT_DB_DEAD_LOCK_DETECT_INTERVAL = 1000
DEFAULT_COMPRESS_BINLOG_INTERVAL = 0
DEFAULT_SYNC_STAT_FILE_INTERVAL = 300
DEFAULT_WRITE_MARK_FILE_FREQ = 5000
DEFAULT_MPOOL_INIT_CAPACITY = 10000
DEFAULT_MPOOL_LOAD_FACTOR = 0.75
DEFAULT_MPOOL_CLEAR_MIN_INTERVAL = 300
DEFAULT_MPOOL_HTABLE_LOCK_COUNT = 1361
DEFAULT_THREAD_STACK_SIZE = 1 * 1024 * 1024

STORE_TYPE_BDB = "BDB"
STORE_TYPE_MPOOL = "MPOOL"


@dataclass(frozen=True)
class TimeInfo:
    """A daily time of day; ``hour is None`` means "start from now"."""

    hour: int | None = None
    minute: int | None = None

    def describe(self) -> str:
        """Render the time base the way the server logs it."""
        if self.hour is None:
            return "current time"
        return f"{self.hour:02d}:{self.minute or 0:02d}"


@dataclass
class ServerStat:
    """Counters of requested and successful storage operations."""

    total_set_count: int = 0
    success_set_count: int = 0
    total_get_count: int = 0
    success_get_count: int = 0
    total_inc_count: int = 0
    success_inc_count: int = 0
    total_delete_count: int = 0
    success_delete_count: int = 0

    def as_dict(self) -> dict[str, int]:
        """Return the counters keyed by their names, in a fixed order."""
        return asdict(self)

    def copy(self) -> ServerStat:
        """Return an independent snapshot of the counters."""
        return _copy.copy(self)


@dataclass
class ServerSettings:
    """Runtime settings of a storage server, with their default values."""

    base_path: str = ""
    port: int = DEFAULT_SERVER_PORT
    max_connections: int = DEFAULT_MAX_CONNECTIONS
    max_threads: int = 4
    accept_threads: int = 1
    max_pkg_size: int = DEFAULT_MAX_PKG_SIZE
    min_buff_size: int = DEFAULT_MIN_BUFF_SIZE
    connect_timeout: int = DEFAULT_CONNECT_TIMEOUT
    network_timeout: int = DEFAULT_NETWORK_TIMEOUT
    write_to_binlog: bool = True

    sync_wait_usec: int = DEFAULT_SYNC_WAIT_MSEC
    sync_log_buff_interval: int = DEFAULT_SYNC_LOG_BUFF_INTERVAL
    sync_binlog_buff_interval: int = DEFAULT_SYNC_BINLOG_BUFF_INTERVAL
    sync_db_time_base: TimeInfo = field(default_factory=TimeInfo)
    sync_db_interval: int = DEFAULT_SYNC_DB_INTERVAL
    need_clear_expired_data: bool = True
    clear_expired_time_base: TimeInfo = field(default_factory=TimeInfo)
    clear_expired_interval: int = DEFAULT_CLEAR_EXPIRED_INTERVAL
    db_dead_lock_detect_interval: int = DEFAULT_DB_DEAD_LOCK_DETECT_INTERVAL
    compress_binlog_time_base: TimeInfo = field(default_factory=TimeInfo)
    compress_binlog_interval: int = DEFAULT_COMPRESS_BINLOG_INTERVAL
    sync_stat_file_interval: int = DEFAULT_SYNC_STAT_FILE_INTERVAL
    write_mark_file_freq: int = DEFAULT_WRITE_MARK_FILE_FREQ

    stat: ServerStat = field(default_factory=ServerStat)

    group_count: int = 0
    group_servers: list = field(default_factory=list)

    server_join_time: int = 0
    sync_old_done: bool = False
    sync_src_ip_addr: str = ""
    sync_src_port: int = 0
    sync_until_timestamp: int = 0
    sync_done_timestamp: int = 0

    # None means any address may connect; otherwise a sorted list.
    allow_ip_addrs: list[str] | None = field(default_factory=list)

    server_start_time: int = 0
    store_type: str = STORE_TYPE_BDB
    mpool_init_capacity: int = DEFAULT_MPOOL_INIT_CAPACITY
    mpool_load_factor: float = DEFAULT_MPOOL_LOAD_FACTOR
    mpool_clear_min_interval: int = DEFAULT_MPOOL_CLEAR_MIN_INTERVAL
    mpool_htable_lock_count: int = DEFAULT_MPOOL_HTABLE_LOCK_COUNT

    thread_stack_size: int = DEFAULT_THREAD_STACK_SIZE
    store_sub_keys: bool = False
    if_alias_prefix: str = ""

    @property
    def heart_beat_interval(self) -> int:
        """Half the network timeout, never below one second."""
        return max(1, self.network_timeout // 2)