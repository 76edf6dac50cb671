"""Drives the replicated state machine: applies committed entries and answers clients."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Callable, Iterable, Protocol, Union

from .messages import (
    ADDRESS_PREFIX,
    NODE_PREFIX,
    ClientResponse,
    Message,
    NodeStatus,
    RaftError,
    RaftMutate,
    RaftQuery,
    RaftStatus,
    node_address,
)
from .raftlog import Entry, RaftLog


class RaftTxnState(Protocol):
    """A state machine driven by the Raft log."""

    def applied_index(self) -> int: ...

    def apply(self, entry: Entry) -> bytes: ...

    def query(self, command: bytes) -> bytes: ...


@dataclass
class Abort:
    """Abort every pending notification and query."""


@dataclass
class Apply:
    entry: Entry


@dataclass
class Notify:
    """Notify a client when the entry at ``index`` has been applied."""

    id: uuid.UUID
    address: bytes
    index: int


@dataclass
class Query:
    """A read query, answered once a quorum confirms and ``index`` is applied."""

    id: uuid.UUID
    address: bytes
    command: bytes
    term: int
    index: int
    quorum: int


@dataclass
class Status:
    id: uuid.UUID
    address: bytes
    status: NodeStatus


@dataclass
class Vote:
    """A confirmation by ``address`` of leadership in ``term`` up to ``index``."""

    term: int
    index: int
    address: bytes


Instruction = Union[Abort, Apply, Notify, Query, Status, Vote]


@dataclass
class _PendingQuery:
    id: uuid.UUID
    term: int
    address: bytes
    command: bytes
    quorum: int
    votes: set[int] = field(default_factory=set)


class Driver:
    """Applies instructions to a state machine and sends the results out.

    ``outbox`` is called with every outgoing message.
    """

    def __init__(self, node_id: int, outbox: Callable[[Message], object]):
        self.node_id = node_id
        self._outbox = outbox
        self._notify: dict[int, tuple[bytes, uuid.UUID]] = {}
        self._queries: dict[int, dict[bytes, _PendingQuery]] = {}

    def _send(self, to: bytes, event) -> None:
        self._outbox(Message(term=0, sender=node_address(self.node_id), to=to, event=event))

    def apply_log(self, state: RaftTxnState, log: RaftLog) -> int:
        """Apply committed entries the state has not yet applied."""
        applied = state.applied_index()
        commit_index = log.commit_index
        if applied > commit_index:
            raise RuntimeError("applied index above commit index")
        if applied < commit_index:
            for entry in log.scan(applied, commit_index, False, True):
                self.apply(state, entry)
        return state.applied_index()

    def drive(self, state: RaftTxnState, instructions: Iterable[Instruction]) -> None:
        for instruction in instructions:
            self.execute(instruction, state)

    def execute(self, instruction: Instruction, state: RaftTxnState) -> None:
        if isinstance(instruction, Abort):
            self.notify_abort()
            self.query_abort()
        elif isinstance(instruction, Apply):
            self.apply(state, instruction.entry)
        elif isinstance(instruction, Notify):
            if instruction.index > state.applied_index():
                self._notify[instruction.index] = (instruction.address, instruction.id)
            else:
                self._send(instruction.address, ClientResponse(instruction.id, RaftError()))
        elif isinstance(instruction, Query):
            pending = self._queries.setdefault(instruction.index, {})
            pending[instruction.id.bytes] = _PendingQuery(
                id=instruction.id,
                term=instruction.term,
                address=instruction.address,
                command=instruction.command,
                quorum=instruction.quorum,
            )
        elif isinstance(instruction, Status):
            instruction.status.apply_index = state.applied_index()
            self._send(
                instruction.address,
                ClientResponse(instruction.id, RaftStatus(status=instruction.status)),
            )
        elif isinstance(instruction, Vote):
            self.query_vote(instruction.term, instruction.index, instruction.address)
            self.query_execute(state)
        else:
            raise TypeError(f"unknown instruction {instruction!r}")

    def apply(self, state: RaftTxnState, entry: Entry) -> int:
        """Apply one entry, notify any waiting client and run ready queries."""
        try:
            result = state.apply(entry)
        except Exception as exc:
            response = RaftError(errmsg=str(exc))
        else:
            response = RaftMutate(command=result)
        waiting = self._notify.pop(state.applied_index(), None)
        if waiting is not None:
            address, request_id = waiting
            self._send(address, ClientResponse(request_id, response))
        self.query_execute(state)
        return state.applied_index()

    def query_vote(self, term: int, commit_index: int, address) -> None:
        """Record a vote by a node for the queries up to ``commit_index``."""
        address = bytes(address)
        if len(address) < 3 or address[0] != ADDRESS_PREFIX or address[1] != NODE_PREFIX:
            return
        voter = address[2]
        for index, pending in self._queries.items():
            if index > commit_index:
                continue
            for query in pending.values():
                if term >= query.term:
                    query.votes.add(voter)

    def _ready_queries(self, applied_index: int) -> list[_PendingQuery]:
        ready = []
        for index in sorted(self._queries):
            if index > applied_index:
                break
            pending = self._queries[index]
            for key in sorted(pending):
                query = pending[key]
                if len(query.votes) >= query.quorum:
                    ready.append(query)
                    del pending[key]
            if not pending:
                del self._queries[index]
        return ready

    def query_execute(self, state: RaftTxnState) -> None:
        """Run the queries that have a quorum and whose index is applied."""
        for query in self._ready_queries(state.applied_index()):
            try:
                response = RaftQuery(command=state.query(query.command))
            except Exception as exc:
                response = RaftError(errmsg=str(exc))
            self._send(query.address, ClientResponse(query.id, response))

    def notify_abort(self) -> None:
        for address, request_id in self._notify.values():
            self._send(address, ClientResponse(request_id, RaftError()))
        self._notify.clear()

    def query_abort(self) -> None:
        for index in sorted(self._queries):
            for key in sorted(self._queries[index]):
                query = self._queries[index][key]
                self._send(query.address, ClientResponse(query.id, RaftError()))
        self._queries.clear()