# cabbagedb

cabbagedb is the storage and consensus core of a small replicated database.
It is made of these modules:

- **`cabbagedb.bitcask`**: `BitCask`, a log-structured key-value store. Every
  write is appended to one file, and an in-memory sorted index maps each key to
  the place of its value in that file. A deletion is written as a tombstone.
  The file is held under an exclusive lock while the store is open. If the file
  ends in an incomplete entry, that entry is truncated away when the store is
  opened. `open_compacted` opens a store and compacts it when its share of
  garbage reaches a threshold.
- **`cabbagedb.raftlog`**: `RaftLog`, a Raft log kept in any engine with the
  `BitCask` interface (the `Engine` protocol). It stores entries, the last
  committed entry, and the current term with the node voted for.
- **`cabbagedb.messages`**: the events exchanged between Raft nodes and
  clients (`HeartBeat`, `AppendEntries`, `ClientRequest`, ...), node addresses
  (`node_address`, `node_id_of`) and the JSON wire encoding
  (`encode_message`, `decode_message`).
- **`cabbagedb.driver`**: `Driver`, which applies committed entries to a state
  machine, answers clients waiting for a write, and runs read queries once a
  quorum has confirmed leadership and their index has been applied.
- **`cabbagedb.node`**: the Raft roles `Leader`, `Candidate` and `Follower`,
  and `new_node` to create a node. A node without peers becomes leader at once.
- **`cabbagedb.raftserver`**: `RaftServer`, which ticks a node every 100 ms,
  exchanges messages with peers over TCP, and takes client requests as
  `ClientCall` objects from a queue.
- **`cabbagedb.config`** and **`cabbagedb.logsetup`**: node configuration read
  from a YAML file, and logging to the console and a JSON log file per node.

## Key-value store

```python
from cabbagedb.bitcask import BitCask, open_compacted

with BitCask("data/kv.log") as store:
    store.set(b"apple", b"red")
    store.set(b"banana", b"yellow")
    store.delete(b"apple")

    print(store.get(b"banana"))                # b'yellow'
    print(store.get(b"apple"))                 # None
    print(store.scan(b"a", b"c"))              # [(b'banana', b'yellow')]
    print(store.status())                      # key count, live and garbage sizes

# Reopen the store; it is compacted when garbage / total size >= 0.2.
store = open_compacted("data/kv.log", 0.2)
store.close()
```

`scan(start, end)` returns `(key, value)` pairs with `start <= key <= end` in
key order; an `end` of `None` leaves the range open above. `scan_prefix`
scans from the prefix up to and including a copy of it with one byte
increased (the last byte of a two-byte prefix, the third byte of a ten-byte
prefix, otherwise the third byte from the end), so it suits the key layouts
of the Raft log rather than arbitrary string prefixes.

While one `BitCask` holds a file open, a second attempt to open the same file
raises `FileLockedError`. A value of length zero is kept while the store is
open but reads as deleted once the file is reopened.

## Raft log

```python
from cabbagedb.bitcask import BitCask
from cabbagedb.raftlog import RaftLog

with BitCask("data/raft.log") as engine:
    log = RaftLog(engine)
    index = log.append(1, b"set x = 1")
    log.commit(index)
    entry = log.get(index)
    print(entry.index, entry.term, entry.command)
    print(log.scan(1, index, True, True))
```

## Running a node

`RaftServer` needs a state machine with three methods: `applied_index()`,
`apply(entry)` returning the result bytes, and `query(command)` returning the
answer bytes. An exception raised by `apply` or `query` is sent back to the
client as a `RaftError`.

```python
import queue
import socket

from cabbagedb.bitcask import BitCask
from cabbagedb.messages import RaftMutate, RaftQuery
from cabbagedb.raftlog import RaftLog
from cabbagedb.raftserver import ClientCall, RaftServer


class Counter:
    def __init__(self):
        self.applied = 0
        self.total = 0

    def applied_index(self):
        return self.applied

    def apply(self, entry):
        self.applied = entry.index
        if entry.command:
            self.total += int(entry.command)
        return str(self.total).encode()

    def query(self, command):
        return str(self.total).encode()


engine = BitCask("data/raft.log")
server = RaftServer(1, {}, RaftLog(engine), Counter())   # no peers: leader at once
calls = queue.Queue()
listener = socket.create_server(("127.0.0.1", 9705))
server.serve(listener, calls)

write = ClientCall(RaftMutate(b"5"))
calls.put(write)
print(write.responses.get(timeout=5))    # RaftMutate(command=b'5')

read = ClientCall(RaftQuery(b"total"))
calls.put(read)
print(read.responses.get(timeout=5))     # RaftQuery(command=b'5')

server.stop()
listener.close()
engine.close()
```

With peers, pass a mapping of node id to `"host:port"`. Each peer message is
sent as a frame of `0x07 0x03`, a big-endian four-byte length and the encoded
message.

## Configuration and logging

`load_config` reads a YAML file and returns a `Config`. A key the file leaves
out keeps its default. If the file cannot be read, or a value cannot be
decoded, the problem is printed and the defaults are used.

| key                 | default        |
|---------------------|----------------|
| `id`                | `1`            |
| `peers`             | `{}`           |
| `listen_sql`        | `0.0.0.0:9605` |
| `listen_raft`       | `0.0.0.0:9705` |
| `log_level`         | `INFO`         |
| `data_dir`          | `data`         |
| `compact_threshold` | `0.2`          |
| `storage_raft`      | `bitcask`      |
| `storage_sql`       | `bitcask`      |

```python
from cabbagedb.config import load_config
from cabbagedb.logsetup import init_logger

config = load_config("config/db.yaml")
logger = init_logger(config.id, config.log_level, "logs")
```

`init_logger` configures the `cabbagedb` logger to write text lines to
standard output and JSON lines to `logs/server_<id>.log`. Level names are
`debug`, `info`, `warn`, `error`, `dpanic`, `panic` and `fatal`; any other
name gives INFO.

## What the package does not do

The package holds no SQL engine, no SQL client and no command to start a
server. `listen_sql` and `storage_sql` are read into `Config` but nothing in
the package uses them; to run a node you build a `RaftServer` yourself, as
shown above, with your own state machine.

## Tests

The tests use pytest, which is included in the `test` extra:

```
pip install -e .[test]
pytest
```