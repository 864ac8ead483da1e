"""Persisting the server's operation counters in a small stat file."""

from __future__ import annotations

import errno
import logging
import os
import re
from pathlib import Path

from dhtstore.settings import ServerStat
from dhtstore.storage import StorageError

logger = logging.getLogger(__name__)

STAT_FILENAME = "stat.dat"
STAT_ITEM_COUNT = len(ServerStat().as_dict())

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")
_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1


def rewrite_file(path: str | Path, text: str) -> None:
    """Replace the whole content of ``path`` with ``text`` and flush it to disk."""
    data = text.encode()
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT, 0o644)
    try:
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        view = memoryview(data)
        while view:
            written = os.write(fd, view)
            if written <= 0:
                raise StorageError(errno.EIO, f"write to file \"{path}\" fail")
            view = view[written:]
        os.fsync(fd)
    except OSError as exc:
        logger.error("rewrite file \"%s\" fail: %s", path, exc)
        raise
    finally:
        os.close(fd)


def format_stat(stat: ServerStat) -> str:
    """Render the counters as ``name=value`` lines."""
    return "".join(f"{name}={value}\n" for name, value in stat.as_dict().items())


def _parse_int64(text: str) -> int:
    match = _LEADING_INT.match(text)
    if match is None:
        return 0
    return max(_INT64_MIN, min(_INT64_MAX, int(match.group(1))))


def parse_stat(text: str) -> ServerStat:
    """Read counters from stat file text; absent counters are zero.

    Raises StorageError (ENOENT) when the text holds fewer items than
    there are counters.
    """
    items: dict[str, str] = {}
    count = 0
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        name, value = line.split("=", 1)
        count += 1
        items.setdefault(name.strip(), value.strip())
    if count < STAT_ITEM_COUNT:
        raise StorageError(
            errno.ENOENT, f"stat file item count: {count} < {STAT_ITEM_COUNT}"
        )
    return ServerStat(**{
        name: _parse_int64(items[name]) if name in items else 0
        for name in ServerStat().as_dict()
    })


class StatFile:
    """The stat file under ``<base_path>/data``, rewritten only when counters change."""

    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)
        self.data_path = self.base_path / "data"
        self.path = self.data_path / STAT_FILENAME
        self._last: ServerStat | None = None

    def load(self) -> ServerStat:
        """Read the saved counters (zero when there is no file) and make sure the file exists."""
        if not self.data_path.exists():
            try:
                self.data_path.mkdir(mode=0o755)
            except OSError as exc:
                logger.error("mkdir \"%s\" fail: %s", self.data_path, exc.strerror)
                raise StorageError(
                    exc.errno or errno.ENOENT,
                    f"mkdir \"{self.data_path}\" fail: {exc.strerror}",
                ) from exc

        if self.path.exists():
            try:
                text = self.path.read_text()
            except OSError as exc:
                raise StorageError(
                    exc.errno or errno.ENOENT,
                    f"load from stat file \"{self.path}\" fail: {exc.strerror}",
                ) from exc
            stat = parse_stat(text)
            self._last = stat.copy()
        else:
            stat = ServerStat()
            self._last = None

        self.write(stat)
        return stat

    def write(self, stat: ServerStat) -> bool:
        """Save ``stat`` if it differs from what was last saved; return True if written."""
        if self._last is not None and self._last == stat:
            return False
        snapshot = stat.copy()
        rewrite_file(self.path, format_stat(snapshot))
        self._last = snapshot
        return True