"""Append-only log-structured key/value store with an in-memory key directory.

Each entry in the log file is laid out as::

    key length (u32, big endian) | value length or -1 tombstone (i32) | key | value

The key directory maps every live key to the position and length of its
value in the file, so reads need a single seek.
"""

from __future__ import annotations

import bisect
import logging
import os
import struct
from dataclasses import dataclass

try:
    import fcntl
except ImportError:  # pragma: no cover - Windows
    fcntl = None  # type: ignore[assignment]
    import msvcrt

_log = logging.getLogger(__name__)

_HEADER = struct.Struct(">Ii")
_TOMBSTONE = -1


class FileLockedError(OSError):
    """Raised when the log file is already locked by another handle."""


@dataclass
class Status:
    """Storage statistics of a BitCask store."""

    name: str
    keys: int
    size: int
    total_disk_size: int
    live_disk_size: int
    garbage_disk_size: int
    file_name: str


def _lock(file) -> None:
    try:
        if fcntl is not None:
            fcntl.flock(file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        else:  # pragma: no cover - Windows
            file.seek(0)
            msvcrt.locking(file.fileno(), msvcrt.LK_NBLCK, 1)
    except OSError as exc:
        raise FileLockedError("file is already locked") from exc


def _unlock(file) -> None:
    try:
        if fcntl is not None:
            fcntl.flock(file.fileno(), fcntl.LOCK_UN)
        else:  # pragma: no cover - Windows
            file.seek(0)
            msvcrt.locking(file.fileno(), msvcrt.LK_UNLCK, 1)
    except OSError:
        pass


class BitCask:
    """A very small BitCask: an append-only log plus a sorted key directory.

    Deleting a key appends a tombstone entry. The file is held under an
    exclusive lock until the store is closed.
    """

    def __init__(self, path):
        self.path = os.fspath(path)
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        flags = os.O_CREAT | os.O_RDWR | getattr(os, "O_BINARY", 0)
        fd = os.open(self.path, flags, 0o666)
        self._file = os.fdopen(fd, "r+b")
        try:
            _lock(self._file)
        except FileLockedError:
            self._file.close()
            raise
        self._offsets: dict[bytes, tuple[int, int]] = {}
        self._keys: list[bytes] = []
        try:
            self._build_keydir()
        except BaseException:
            self.close()
            raise

    # -- key directory -------------------------------------------------

    def _insert(self, key: bytes, pos: int, length: int) -> None:
        if key not in self._offsets:
            bisect.insort(self._keys, key)
        self._offsets[key] = (pos, length)

    def _remove(self, key: bytes) -> None:
        if self._offsets.pop(key, None) is not None:
            del self._keys[bisect.bisect_left(self._keys, key)]

    def _truncate(self, pos: int) -> None:
        self._file.truncate(pos)
        self._file.flush()

    def _build_keydir(self) -> None:
        """Scan the log; an incomplete trailing entry is truncated away."""
        file = self._file
        file_len = os.fstat(file.fileno()).st_size
        file.seek(0)
        pos = 0
        while pos < file_len:
            header = file.read(_HEADER.size)
            if len(header) < _HEADER.size:
                self._truncate(pos)
                return
            key_len, value_len = _HEADER.unpack(header)
            key = file.read(key_len)
            if len(key) < key_len:
                self._truncate(pos)
                return
            value_pos = pos + _HEADER.size + key_len
            if value_len > 0:
                if value_pos + value_len > file_len:
                    self._truncate(pos)
                    return
                file.seek(value_len, os.SEEK_CUR)
                self._insert(key, value_pos, value_len)
                pos = value_pos + value_len
            else:
                self._remove(key)
                pos = value_pos

    # -- log file --------------------------------------------------------

    def _read_value(self, pos: int, length: int) -> bytes:
        self._file.seek(pos)
        return self._file.read(length)

    def _write_entry(self, key: bytes, value: bytes | None) -> tuple[int, int]:
        value_bytes = b"" if value is None else value
        length_field = _TOMBSTONE if value is None else len(value_bytes)
        file = self._file
        pos = file.seek(0, os.SEEK_END)
        file.write(_HEADER.pack(len(key), length_field) + key + value_bytes)
        file.flush()
        os.fsync(file.fileno())
        return pos, _HEADER.size + len(key) + len(value_bytes)

    # -- public API ------------------------------------------------------

    def set(self, key, value) -> None:
        key, value = bytes(key), bytes(value)
        pos, item_len = self._write_entry(key, value)
        self._insert(key, pos + item_len - len(value), len(value))

    def get(self, key) -> bytes | None:
        entry = self._offsets.get(bytes(key))
        if entry is None:
            return None
        return self._read_value(*entry)

    def delete(self, key) -> None:
        key = bytes(key)
        self._remove(key)
        self._write_entry(key, None)

    def scan(self, start, end) -> list[tuple[bytes, bytes]]:
        """Return (key, value) pairs with start <= key <= end, in key order.

        With ``end`` of None the range is unbounded above.
        """
        start = bytes(start)
        lo = bisect.bisect_left(self._keys, start)
        if end is None:
            hi = len(self._keys)
        else:
            hi = bisect.bisect_right(self._keys, bytes(end))
        return [(key, self._read_value(*self._offsets[key])) for key in self._keys[lo:hi]]

    def scan_prefix(self, prefix) -> list[tuple[bytes, bytes]]:
        """Scan from ``prefix`` up to and including a bumped copy of it.

        A two-byte prefix bumps its last byte, a ten-byte prefix its third
        byte, any other its third-from-last byte; the first byte at or before
        that position which is not 0xff is incremented.
        """
        prefix = bytes(prefix)
        end_offset = 3
        if len(prefix) == 2:
            end_offset = 1
        if len(prefix) == 10:
            end_offset = 8
        bumped = bytearray(prefix)
        for i in range(len(bumped) - end_offset, -1, -1):
            if bumped[i] != 0xFF:
                bumped[i] += 1
                return self.scan(prefix, bytes(bumped))
        return self.scan(prefix, None)

    def status(self) -> Status:
        keys = len(self._keys)
        size = sum(len(key) + length for key, (_, length) in self._offsets.items())
        total = os.fstat(self._file.fileno()).st_size
        live = size + _HEADER.size * keys
        return Status(
            name="bitcask",
            keys=keys,
            size=size,
            total_disk_size=total,
            live_disk_size=live,
            garbage_disk_size=total - live,
            file_name=self.file_name(),
        )

    def compact(self) -> None:
        """Rewrite the log so that it holds only the live entries."""
        live = [(key, self._read_value(*self._offsets[key])) for key in self._keys]
        self._truncate(0)
        for key, value in live:
            pos, item_len = self._write_entry(key, value)
            self._offsets[key] = (pos + item_len - len(value), len(value))

    def flush(self) -> None:
        self._file.flush()
        os.fsync(self._file.fileno())

    def file_name(self) -> str:
        return os.path.abspath(self.path)

    def close(self) -> None:
        if self._file.closed:
            return
        _unlock(self._file)
        self._file.close()

    def __enter__(self) -> BitCask:
        return self

    def __exit__(self, *args) -> None:
        self.close()


def open_compacted(path, garbage_ratio_threshold: float) -> BitCask:
    """Open a store and compact it if its garbage ratio reaches the threshold."""
    store = BitCask(path)
    try:
        status = store.status()
        if status.garbage_disk_size > 0:
            ratio = status.garbage_disk_size / status.total_disk_size
            if ratio >= garbage_ratio_threshold:
                _log.info("start compact")
                store.compact()
    except BaseException:
        store.close()
        raise
    return store