"""Raft messages between nodes and clients, with their wire encoding."""

from __future__ import annotations

import base64
import dataclasses
import json
import uuid
from dataclasses import dataclass, field
from typing import Union

from .raftlog import Entry

ADDRESS_PREFIX = 0x07
BROADCAST_PREFIX = 0x02
NODE_PREFIX = 0x03
CLIENT_PREFIX = 0x04

BROADCAST_ADDRESS = bytes([ADDRESS_PREFIX, BROADCAST_PREFIX])
CLIENT_ADDRESS = bytes([ADDRESS_PREFIX, CLIENT_PREFIX])


def node_address(node_id: int) -> bytes:
    """Return the address of a node."""
    return bytes([ADDRESS_PREFIX, NODE_PREFIX, node_id])


def node_id_of(address) -> int:
    """Return the node id in a node address, or 0 for any other address."""
    address = bytes(address)
    if len(address) > 2 and address[0] == ADDRESS_PREFIX and address[1] == NODE_PREFIX:
        return address[2]
    return 0


@dataclass
class NodeStatus:
    server: int = 0
    leader: int = 0
    term: int = 0
    node_last_index: dict[int, int] = field(default_factory=dict)
    commit_index: int = 0
    apply_index: int = 0
    storage: str = ""
    storage_size: int = 0
    file_name: str = ""


@dataclass
class HeartBeat:
    commit_index: int = 0
    commit_term: int = 0


@dataclass
class ConfirmLeader:
    commit_index: int = 0
    has_committed: bool = False


@dataclass
class SolicitVote:
    last_index: int = 0
    last_term: int = 0


@dataclass
class GrantVote:
    pass


@dataclass
class AppendEntries:
    base_index: int = 0
    base_term: int = 0
    entries: list[Entry] = field(default_factory=list)


@dataclass
class AcceptEntries:
    last_index: int = 0


@dataclass
class RejectEntries:
    pass


@dataclass
class RaftQuery:
    command: bytes = b""


@dataclass
class RaftMutate:
    command: bytes = b""


@dataclass
class RaftStatus:
    status: NodeStatus | None = None


@dataclass
class RaftError:
    errmsg: str | None = None


Request = Union[RaftQuery, RaftMutate, RaftStatus]
Response = Union[RaftQuery, RaftMutate, RaftStatus, RaftError]


@dataclass
class ClientRequest:
    id: uuid.UUID
    request: Request


@dataclass
class ClientResponse:
    id: uuid.UUID
    response: Response


Event = Union[
    HeartBeat,
    ConfirmLeader,
    SolicitVote,
    GrantVote,
    AppendEntries,
    AcceptEntries,
    RejectEntries,
    ClientRequest,
    ClientResponse,
]


@dataclass
class Message:
    """An event sent from one address to another in a given term."""

    term: int
    sender: bytes
    to: bytes
    event: Event


_TYPES = {
    cls.__name__: cls
    for cls in (
        Entry,
        NodeStatus,
        HeartBeat,
        ConfirmLeader,
        SolicitVote,
        GrantVote,
        AppendEntries,
        AcceptEntries,
        RejectEntries,
        RaftQuery,
        RaftMutate,
        RaftStatus,
        RaftError,
        ClientRequest,
        ClientResponse,
        Message,
    )
}


def _pack(value):
    if isinstance(value, (bytes, bytearray)):
        return {"$bytes": base64.b64encode(value).decode("ascii")}
    if isinstance(value, uuid.UUID):
        return {"$uuid": str(value)}
    if dataclasses.is_dataclass(value) and _TYPES.get(type(value).__name__) is type(value):
        return {
            "$type": type(value).__name__,
            "fields": {f.name: _pack(getattr(value, f.name)) for f in dataclasses.fields(value)},
        }
    if isinstance(value, dict):
        return {"$map": [[_pack(k), _pack(v)] for k, v in value.items()]}
    if isinstance(value, (list, tuple)):
        return [_pack(v) for v in value]
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    raise TypeError(f"cannot encode {type(value).__name__}")


def _unpack(value):
    if isinstance(value, list):
        return [_unpack(v) for v in value]
    if isinstance(value, dict):
        if "$bytes" in value:
            return base64.b64decode(value["$bytes"], validate=True)
        if "$uuid" in value:
            return uuid.UUID(value["$uuid"])
        if "$map" in value:
            return {_unpack(k): _unpack(v) for k, v in value["$map"]}
        if "$type" in value:
            cls = _TYPES.get(value["$type"])
            if cls is None:
                raise ValueError(f"unknown type {value['$type']!r}")
            try:
                return cls(**{k: _unpack(v) for k, v in value["fields"].items()})
            except (TypeError, KeyError, AttributeError) as exc:
                raise ValueError(f"malformed {value['$type']}") from exc
        raise ValueError("malformed value")
    return value


def encode_message(message: Message) -> bytes:
    """Encode a message for the wire."""
    return json.dumps(_pack(message), separators=(",", ":")).encode("utf-8")


def decode_message(data) -> Message:
    """Decode a message; raises ValueError if the data is not a valid message."""
    try:
        raw = json.loads(bytes(data).decode("utf-8"))
        message = _unpack(raw)
    except (ValueError, TypeError) as exc:
        raise ValueError(f"invalid message: {exc}") from exc
    if not isinstance(message, Message):
        raise ValueError("data does not hold a message")
    return message