import pytest

from cabbagedb.bitcask import BitCask
from cabbagedb.raftlog import Entry, RaftLog, decode_entry


@pytest.fixture
def store(tmp_path):
    with BitCask(tmp_path / "log") as engine:
        yield engine


def test_empty_log(store):
    log = RaftLog(store)
    assert (log.last_index, log.last_term) == (0, 0)
    assert (log.commit_index, log.commit_term) == (0, 0)
    assert log.get(1) is None


def test_append_and_get(store):
    log = RaftLog(store)
    assert log.append(1, b"a") == 1
    assert log.append(2, b"b") == 2
    assert log.get(1) == Entry(1, 1, b"a")
    assert log.get(2) == Entry(2, 2, b"b")
    assert (log.last_index, log.last_term) == (2, 2)


def test_reopen_restores_state(tmp_path):
    path = tmp_path / "log"
    with BitCask(path) as engine:
        log = RaftLog(engine)
        log.append(1, b"a")
        log.append(3, b"b")
        log.set_term(3, 2)
        assert log.commit(1) == 1
    with BitCask(path) as engine:
        log = RaftLog(engine)
        assert (log.last_index, log.last_term) == (2, 3)
        assert (log.commit_index, log.commit_term) == (1, 1)
        assert log.get_term() == (3, 2)


def test_term_roundtrip(store):
    log = RaftLog(store)
    assert log.get_term() == (0, 0)
    log.set_term(7, 4)
    assert log.get_term() == (7, 4)


def test_commit_missing_and_regression(store):
    log = RaftLog(store)
    assert log.commit(1) == 0
    log.append(1, b"a")
    log.append(1, b"b")
    assert log.commit(2) == 2
    assert log.commit(1) == 0
    assert log.commit_index == 2


def test_scan_bounds(store):
    log = RaftLog(store)
    for command in (b"a", b"b", b"c", b"d"):
        log.append(1, command)
    assert [e.index for e in log.scan(1, 4, True, True)] == [1, 2, 3, 4]
    assert [e.index for e in log.scan(1, 4, False, False)] == [2, 3]
    assert [e.index for e in log.scan(2, 2**64 - 1, True, True)] == [2, 3, 4]
    assert log.scan(0, 0, False, False) == []


def test_scan_ignores_other_keys(store):
    log = RaftLog(store)
    log.append(1, b"a")
    log.set_term(1, 1)
    log.commit(1)
    assert log.scan(0, 2**64 - 1, True, True) == [Entry(1, 1, b"a")]


def test_has(store):
    log = RaftLog(store)
    log.append(2, b"a")
    assert log.has(1, 2)
    assert not log.has(1, 1)
    assert not log.has(2, 2)


def test_splice_empty_returns_last(store):
    log = RaftLog(store)
    log.append(1, b"a")
    assert log.splice([]) == 1


def test_splice_appends(store):
    log = RaftLog(store)
    log.append(1, b"a")
    assert log.splice([Entry(2, 1, b"b"), Entry(3, 2, b"c")]) == 3
    assert log.get(3) == Entry(3, 2, b"c")
    assert (log.last_index, log.last_term) == (3, 2)


def test_splice_replaces_conflict_and_tail(store):
    log = RaftLog(store)
    for command in (b"a", b"b", b"c"):
        log.append(1, command)
    assert log.splice([Entry(2, 2, b"x")]) == 2
    assert log.get(2) == Entry(2, 2, b"x")
    assert log.get(3) is None
    assert log.get(1) == Entry(1, 1, b"a")


def test_decode_entry_wire_format():
    key = bytes([2, 2, 0, 0, 0, 0, 0, 0, 0, 5])
    value = bytes(7) + b"\x03" + b"cmd"
    assert decode_entry(key, value) == Entry(5, 3, b"cmd")


def test_decode_entry_invalid_key():
    with pytest.raises(ValueError):
        decode_entry(b"\x02\x03" + bytes(8), bytes(8))


def test_status_counts_keys(store):
    log = RaftLog(store)
    log.append(1, b"a")
    log.append(1, b"b")
    assert log.status().keys == 2