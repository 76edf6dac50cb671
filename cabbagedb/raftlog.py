"""Persistent Raft log stored in a key/value engine.

Entries are stored under ``0x02 0x02 | index (u64, big endian)`` with the
value ``term (u64) | command``. The current term and vote live under
``0x02 0x03`` and the last committed entry under ``0x02 0x04``.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import Protocol

from .bitcask import Status

_log = logging.getLogger(__name__)

LOG_KEY_PREFIX = 0x02
ENTRY_PREFIX = 0x02
TERM_VOTE_PREFIX = 0x03
COMMIT_INDEX_PREFIX = 0x04

MAX_INDEX = 2**64 - 1

_U64 = struct.Struct(">Q")
_ENTRY_KEY_PREFIX = bytes([LOG_KEY_PREFIX, ENTRY_PREFIX])
_TERM_VOTE_KEY = bytes([LOG_KEY_PREFIX, TERM_VOTE_PREFIX])
_COMMIT_KEY = bytes([LOG_KEY_PREFIX, COMMIT_INDEX_PREFIX])
_ENTRY_KEY_LEN = len(_ENTRY_KEY_PREFIX) + _U64.size


@dataclass
class Entry:
    """A log entry: its index, the term it was added in, and its command."""

    index: int
    term: int
    command: bytes = b""


class Engine(Protocol):
    """The storage operations the Raft log needs."""

    def delete(self, key: bytes) -> None: ...

    def get(self, key: bytes) -> bytes | None: ...

    def scan(self, start: bytes, end: bytes | None) -> list[tuple[bytes, bytes]]: ...

    def scan_prefix(self, prefix: bytes) -> list[tuple[bytes, bytes]]: ...

    def set(self, key: bytes, value: bytes) -> None: ...

    def status(self) -> Status: ...

    def flush(self) -> None: ...

    def file_name(self) -> str: ...


def _entry_key(index: int) -> bytes:
    return _ENTRY_KEY_PREFIX + _U64.pack(index)


def _entry_value(term: int, command: bytes) -> bytes:
    return _U64.pack(term) + bytes(command)


def _decode_value(index: int, value: bytes) -> Entry:
    if not value:
        return Entry(index, 0, b"")
    if len(value) < _U64.size:
        raise ValueError("entry value too short")
    (term,) = _U64.unpack_from(value)
    return Entry(index, term, bytes(value[_U64.size:]))


def _is_entry_key(key: bytes) -> bool:
    return len(key) == _ENTRY_KEY_LEN and key.startswith(_ENTRY_KEY_PREFIX)


def decode_entry(key, value) -> Entry:
    """Decode an entry from its storage key and value."""
    key = bytes(key)
    if not _is_entry_key(key):
        raise ValueError("invalid entry key")
    (index,) = _U64.unpack_from(key, len(_ENTRY_KEY_PREFIX))
    return _decode_value(index, bytes(value))


def _encode_commit(entry: Entry) -> bytes:
    return _U64.pack(entry.index) + _U64.pack(entry.term) + entry.command


def _decode_commit(value: bytes | None) -> Entry:
    if not value or len(value) < 2 * _U64.size:
        return Entry(0, 0, b"")
    (index,) = _U64.unpack_from(value)
    (term,) = _U64.unpack_from(value, _U64.size)
    return Entry(index, term, bytes(value[2 * _U64.size:]))


class RaftLog:
    """A Raft log over a storage engine, tracking the last and committed entries."""

    def __init__(self, engine):
        self.engine = engine
        stored = [
            (key, value)
            for key, value in engine.scan_prefix(_ENTRY_KEY_PREFIX)
            if _is_entry_key(key)
        ]
        if stored:
            last = decode_entry(*stored[-1])
            self.last_index, self.last_term = last.index, last.term
        else:
            self.last_index, self.last_term = 0, 0
        committed = _decode_commit(engine.get(_COMMIT_KEY))
        self.commit_index, self.commit_term = committed.index, committed.term

    def set_term(self, term: int, voted_for: int) -> None:
        """Persist the current term and the node voted for (0 for none)."""
        self.engine.set(_TERM_VOTE_KEY, _U64.pack(term) + bytes([voted_for]))

    def get_term(self) -> tuple[int, int]:
        """Return the persisted (term, voted_for), or (0, 0) if none."""
        value = self.engine.get(_TERM_VOTE_KEY)
        if not value:
            return 0, 0
        (term,) = _U64.unpack_from(value)
        voted_for = value[_U64.size] if len(value) > _U64.size else 0
        return term, voted_for

    def get(self, index: int) -> Entry | None:
        if not 0 <= index <= MAX_INDEX:
            return None
        value = self.engine.get(_entry_key(index))
        if not value:
            return None
        return _decode_value(index, value)

    def commit(self, index: int) -> int:
        """Commit up to ``index``; returns the index, or 0 if it cannot be committed."""
        if index < self.commit_index:
            _log.info("Commit index regression %s -> %s", self.commit_index, index)
            return 0
        entry = self.get(index)
        if entry is None:
            _log.info("Can't commit non-existant index %s", index)
            return 0
        self.engine.set(_COMMIT_KEY, _encode_commit(entry))
        self.commit_index, self.commit_term = entry.index, entry.term
        return index

    def append(self, term: int, command) -> int:
        """Append a command at the next index and return that index."""
        index = self.last_index + 1
        self.engine.set(_entry_key(index), _entry_value(term, command))
        self.last_index, self.last_term = index, term
        return index

    def has(self, index: int, term: int) -> bool:
        entry = self.get(index)
        if entry is None:
            return False
        return entry.term == term

    def splice(self, entries) -> int:
        """Merge entries from a leader into the log, replacing conflicting ones.

        Entries already stored with the same term are kept; from the first
        conflict on, the given entries overwrite the log and any stored tail
        beyond the last given entry is removed. Returns the new last index.
        """
        entries = list(entries)
        if not entries:
            return self.last_index
        first, last = entries[0], entries[-1]
        existing = self.scan(first.index, last.index, True, True)
        matched = 0
        for stored, incoming in zip(existing, entries):
            if stored.term != incoming.term:
                break
            matched += 1
        for entry in entries[matched:]:
            self.engine.set(_entry_key(entry.index), _entry_value(entry.term, entry.command))
        for index in range(last.index + 1, self.last_index + 1):
            self.engine.delete(_entry_key(index))
        self.last_index, self.last_term = last.index, last.term
        return self.last_index

    def scan(self, start: int, end: int, include_start: bool, include_end: bool) -> list[Entry]:
        """Return the stored entries whose index lies between ``start`` and ``end``."""
        if not include_start:
            start += 1
        if not include_end:
            end -= 1
        start = max(start, 0)
        end = min(end, MAX_INDEX)
        if end < start:
            return []
        items = self.engine.scan(_entry_key(start), _entry_key(end))
        return [decode_entry(key, value) for key, value in items]

    def status(self) -> Status:
        return self.engine.status()