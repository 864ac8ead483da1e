"""Replaying the binlog into local stores after an unclean shutdown."""

from __future__ import annotations

import errno
import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Sequence

from dhtstore.stats import rewrite_file
from dhtstore.storage import (
    Environment,
    KeyNotFoundError,
    Store,
    StorageError,
    pack_expires,
    pack_full_key,
)
from dhtstore.sub_keys import KeyInfo

logger = logging.getLogger(__name__)

MARK_FILENAME = "db_recovery_mark.dat"
MARK_ITEM_BINLOG_INDEX = "binlog_index"
MARK_ITEM_BINLOG_OFFSET = "binlog_offset"
MARK_ITEM_START_TIME = "start_time"
MARK_ITEM_TIME_USED = "time_used"
MARK_ITEM_WRITTEN_PAGES = "written_pages"

_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"
_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


class OpType(str, Enum):
    """Kind of change a binlog record describes."""

    SOURCE_SET = "S"
    REPLICA_SET = "s"
    SOURCE_DEL = "D"
    REPLICA_DEL = "d"

    @property
    def is_set(self) -> bool:
        return self in (OpType.SOURCE_SET, OpType.REPLICA_SET)


@dataclass(frozen=True)
class BinlogRecord:
    """One change read back from the binlog."""

    timestamp: int
    op_type: OpType | str
    key_hash_code: int
    expires: int
    key_info: KeyInfo
    value: bytes = b""


@dataclass(frozen=True)
class RecoveryMark:
    """How far the stores are known to hold the binlog's changes."""

    binlog_index: int
    binlog_offset: int
    written_pages: int = 0
    start_time: int = 0
    time_used_ms: int = 0


def _leading_int(text: str) -> int:
    match = _LEADING_INT.match(text)
    return int(match.group(1)) if match else 0


def read_mark(path: str | Path) -> RecoveryMark:
    """Read a recovery mark file; binlog index and offset must be present."""
    path = Path(path)
    try:
        text = path.read_text()
    except OSError as exc:
        raise StorageError(
            exc.errno or errno.ENOENT, f"load from file \"{path}\" fail: {exc.strerror}"
        ) from exc

    items: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        name, value = line.split("=", 1)
        items.setdefault(name.strip(), value.strip())

    for required in (MARK_ITEM_BINLOG_INDEX, MARK_ITEM_BINLOG_OFFSET):
        if required not in items:
            raise StorageError(
                errno.ENOENT, f"in file \"{path}\", item \"{required}\" not exists"
            )

    start_time = 0
    if MARK_ITEM_START_TIME in items:
        try:
            start_time = int(time.mktime(
                time.strptime(items[MARK_ITEM_START_TIME], _DATETIME_FORMAT)))
        except (ValueError, OverflowError):
            start_time = 0

    return RecoveryMark(
        binlog_index=_leading_int(items[MARK_ITEM_BINLOG_INDEX]),
        binlog_offset=_leading_int(items[MARK_ITEM_BINLOG_OFFSET]),
        written_pages=_leading_int(items.get(MARK_ITEM_WRITTEN_PAGES, "0")),
        start_time=start_time,
        time_used_ms=_leading_int(items.get(MARK_ITEM_TIME_USED, "0")),
    )


def write_mark(path: str | Path, mark: RecoveryMark) -> None:
    """Replace the recovery mark file with ``mark``."""
    started = time.strftime(_DATETIME_FORMAT, time.localtime(mark.start_time))
    rewrite_file(path, (
        f"{MARK_ITEM_BINLOG_INDEX}={mark.binlog_index}\n"
        f"{MARK_ITEM_BINLOG_OFFSET}={mark.binlog_offset}\n"
        f"{MARK_ITEM_WRITTEN_PAGES}={mark.written_pages}\n"
        f"{MARK_ITEM_START_TIME}={started}\n"
        f"{MARK_ITEM_TIME_USED}={mark.time_used_ms} ms\n"
    ))


ReaderFactory = Callable[[int, int], Iterable[BinlogRecord]]


class Recovery:
    """Brings the local stores up to date with the binlog and tracks progress."""

    def __init__(self, base_path: str | Path, stores: Sequence[Store | None], group_count: int):
        if group_count <= 0:
            raise ValueError("group_count must be positive")
        self.base_path = Path(base_path)
        self.stores = list(stores)
        self.group_count = group_count
        self.mark_path = self.base_path / "data" / MARK_FILENAME

    def _store_for(self, record: BinlogRecord) -> Store:
        group_id = (record.key_hash_code & 0xFFFFFFFF) % self.group_count
        if group_id >= len(self.stores):
            raise StorageError(
                errno.EINVAL,
                f"invalid group_id: {group_id}, which < 0 or >= {len(self.stores)}",
            )
        store = self.stores[group_id]
        if store is None:
            raise StorageError(
                errno.EINVAL,
                f"invalid group_id: {group_id}, which does not belong to this server",
            )
        return store

    def apply(self, records: Iterable[BinlogRecord]) -> tuple[int, int]:
        """Replay records; return how many were scanned and how many applied.

        Deleting a key that is already gone is counted as scanned but not
        applied; any other failure stops the replay and is raised.
        """
        scanned = 0
        applied = 0
        for record in records:
            try:
                op_type = OpType(record.op_type)
            except ValueError as exc:
                raise StorageError(
                    errno.EINVAL, f"invalid op type: {record.op_type!r}"
                ) from exc
            store = self._store_for(record)
            info = record.key_info
            full_key = pack_full_key(info.namespace, info.object_id, info.key)
            scanned += 1
            if op_type.is_set:
                store.set(full_key, pack_expires(record.expires, record.value))
            else:
                try:
                    store.delete(full_key)
                except KeyNotFoundError:
                    continue
            applied += 1
        logger.info("recover data, scan row count: %d, success recover count: %d",
                    scanned, applied)
        return scanned, applied

    def _write(self, mark: RecoveryMark) -> None:
        self.mark_path.parent.mkdir(parents=True, exist_ok=True)
        write_mark(self.mark_path, mark)

    def run(self, binlog_index: int, binlog_offset: int,
            reader_factory: ReaderFactory) -> tuple[int, int]:
        """Replay whatever the binlog holds beyond the saved mark.

        ``binlog_index`` and ``binlog_offset`` give the binlog's current end;
        ``reader_factory(index, offset)`` yields the records from a position.
        Returns the scanned and applied counts, ``(0, 0)`` when nothing was due.
        """
        started = time.monotonic()
        start_time = int(time.time())
        mark_exists = self.mark_path.exists()
        if mark_exists:
            saved = read_mark(self.mark_path)
            synced_index, synced_offset = saved.binlog_index, saved.binlog_offset
        else:
            synced_index, synced_offset = 0, 0

        recovering = synced_index < binlog_index or synced_offset < binlog_offset
        counts = (0, 0)
        if recovering:
            counts = self.apply(reader_factory(synced_index, synced_offset))

        if not mark_exists or recovering:
            self._write(RecoveryMark(
                binlog_index=binlog_index,
                binlog_offset=binlog_offset,
                written_pages=0,
                start_time=start_time,
                time_used_ms=int((time.monotonic() - started) * 1000),
            ))
        return counts

    def trickle(self, env: Environment, binlog_index: int, binlog_offset: int,
                force: bool = False) -> int:
        """Flush the stores and record the binlog position they now hold.

        The mark is written when something was flushed without error, or
        always when ``force`` is set. Returns the number of flushed stores.
        """
        started = time.monotonic()
        start_time = int(time.time())
        failed = False
        written = 0
        try:
            written = env.sync()
        except StorageError as exc:
            logger.error("memp trickle fail: %s", exc)
            failed = True

        if (not failed and written > 0) or force:
            self._write(RecoveryMark(
                binlog_index=binlog_index,
                binlog_offset=binlog_offset,
                written_pages=written,
                start_time=start_time,
                time_used_ms=int((time.monotonic() - started) * 1000),
            ))
        logger.info("db_sync total_written_pages=%d", written)
        return written