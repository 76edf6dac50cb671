"""Raft node roles: leader, candidate and follower, and the state they share."""

from __future__ import annotations

import logging
import queue
import random
import threading
from dataclasses import dataclass, field
from typing import Callable, Union

from .driver import Apply, Driver, Notify, Query, RaftTxnState, Status, Vote
from .messages import (
    BROADCAST_ADDRESS,
    CLIENT_ADDRESS,
    AcceptEntries,
    AppendEntries,
    ClientRequest,
    ClientResponse,
    ConfirmLeader,
    GrantVote,
    HeartBeat,
    Message,
    NodeStatus,
    RaftError,
    RaftMutate,
    RaftQuery,
    RaftStatus,
    RejectEntries,
    SolicitVote,
    node_address,
    node_id_of,
)
from .raftlog import MAX_INDEX, RaftLog

_log = logging.getLogger(__name__)

ELECTION_TIMEOUT_MIN = 10
ELECTION_TIMEOUT_MAX = 20
HEARTBEAT_INTERVAL = 3


def rand_election_timeout() -> int:
    """Return a random election timeout in ticks, in [MIN, MAX)."""
    return random.randrange(ELECTION_TIMEOUT_MIN, ELECTION_TIMEOUT_MAX)


@dataclass
class Progress:
    """Replication progress of one peer as seen by the leader."""

    next: int
    last: int = 0


@dataclass
class NodeInfo:
    """State shared by every role of a node.

    ``node_tx`` receives outgoing messages, ``state_tx`` receives
    instructions for the state machine driver.
    """

    id: int
    peers: set[int]
    term: int
    log: RaftLog
    node_tx: Callable[[Message], object]
    state_tx: Callable[[object], object]

    def quorum(self) -> int:
        return (len(self.peers) + 1) // 2 + 1

    def send(self, to, event) -> None:
        self.node_tx(Message(term=self.term, sender=node_address(self.id), to=bytes(to), event=event))

    def become_follower(self, term: int, leader: int, voted_for: int | None) -> Follower:
        if leader != 0:
            _log.info("Lost election, following leader %s in term %s", leader, term)
            vote = self.id if voted_for is None else voted_for
            return Follower(leader, vote, self)
        self.term = term
        self.log.set_term(term, 0)
        return Follower(0, 0, self)

    def become_leader(self) -> Leader:
        leader = Leader(self.peers, self.log.last_index, self)
        leader.heartbeat()
        leader.propose(b"")
        return leader


class Leader:
    """A node that replicates its log to its peers."""

    def __init__(self, peers, last_index: int, info: NodeInfo):
        self.progress = {peer: Progress(next=last_index + 1) for peer in peers}
        self.since_heartbeat = 0
        self.info = info

    def step(self, msg: Message) -> Node:
        info = self.info
        if 0 < msg.term < info.term:
            return self
        if msg.term > info.term:
            return info.become_follower(msg.term, 0, None).step(msg)

        event = msg.event
        if isinstance(event, ConfirmLeader):
            sender = node_id_of(msg.sender)
            info.state_tx(Vote(term=msg.term, index=event.commit_index, address=msg.sender))
            if not event.has_committed:
                self.send_log(sender)
        elif isinstance(event, AcceptEntries):
            progress = self.progress.get(node_id_of(msg.sender))
            if progress is not None:
                progress.last = event.last_index
                progress.next = event.last_index + 1
                self.maybe_commit()
        elif isinstance(event, RejectEntries):
            sender = node_id_of(msg.sender)
            progress = self.progress.get(sender)
            if progress is not None and progress.next > 1:
                progress.next -= 1
            self.send_log(sender)
        elif isinstance(event, ClientRequest):
            self._client_request(msg, event)
        elif isinstance(event, ClientResponse):
            if isinstance(event.response, RaftStatus) and event.response.status is not None:
                event.response.status.server = info.id
            info.send(CLIENT_ADDRESS, ClientResponse(event.id, event.response))
        return self

    def _client_request(self, msg: Message, event: ClientRequest) -> None:
        info = self.info
        request = event.request
        if isinstance(request, RaftQuery):
            commit_index = info.log.commit_index
            info.state_tx(
                Query(
                    id=event.id,
                    address=msg.sender,
                    command=request.command,
                    term=info.term,
                    index=commit_index,
                    quorum=info.quorum(),
                )
            )
            info.state_tx(Vote(term=info.term, index=commit_index, address=node_address(info.id)))
            self.heartbeat()
        elif isinstance(request, RaftMutate):
            index = self.propose(request.command)
            info.state_tx(Notify(id=event.id, address=msg.sender, index=index))
            if not info.peers:
                self.maybe_commit()
        elif isinstance(request, RaftStatus):
            engine_status = info.log.status()
            last_indexes = {peer: progress.last for peer, progress in self.progress.items()}
            last_indexes[info.id] = info.log.last_index
            status = NodeStatus(
                server=info.id,
                leader=info.id,
                term=info.term,
                node_last_index=last_indexes,
                commit_index=info.log.commit_index,
                apply_index=0,
                storage=engine_status.name,
                storage_size=engine_status.size,
                file_name=info.log.engine.file_name(),
            )
            info.state_tx(Status(id=event.id, address=msg.sender, status=status))

    def tick(self) -> Node:
        self.since_heartbeat += 1
        if self.since_heartbeat >= HEARTBEAT_INTERVAL:
            self.heartbeat()
            self.since_heartbeat = 0
        return self

    def heartbeat(self) -> None:
        log = self.info.log
        self.info.send(BROADCAST_ADDRESS, HeartBeat(log.commit_index, log.commit_term))

    def propose(self, command) -> int:
        """Append a command to the log and replicate it; returns its index."""
        index = self.info.log.append(self.info.term, bytes(command))
        for peer in self.info.peers:
            self.send_log(peer)
        return index

    def maybe_commit(self) -> int:
        """Commit the highest index replicated on a quorum, applying new entries."""
        info = self.info
        indexes = [progress.last for progress in self.progress.values()]
        indexes.append(info.log.last_index)
        indexes.sort(reverse=True)
        commit_index = indexes[info.quorum() - 1]
        if commit_index == 0:
            return commit_index
        previous = info.log.commit_index
        if commit_index < previous:
            return previous
        entry = info.log.get(commit_index)
        if entry is not None and entry.term != info.term:
            return previous
        if commit_index > previous:
            info.log.commit(commit_index)
            for committed in info.log.scan(previous, commit_index, False, True):
                info.state_tx(Apply(entry=committed))
        return commit_index

    def send_log(self, peer: int) -> None:
        base_index, base_term = 0, 0
        progress = self.progress.get(peer)
        if progress is not None and progress.next > 1:
            entry = self.info.log.get(progress.next - 1)
            if entry is not None:
                base_index, base_term = entry.index, entry.term
        entries = self.info.log.scan(base_index + 1, MAX_INDEX, True, True)
        self.info.send(node_address(peer), AppendEntries(base_index, base_term, entries))


class Candidate:
    """A node campaigning for leadership."""

    def __init__(self, info: NodeInfo):
        self.votes: set[int] = set()
        self.election_duration = 0
        self.election_timeout = rand_election_timeout()
        self.info = info

    def step(self, msg: Message) -> Node:
        info = self.info
        if 0 < msg.term < info.term:
            _log.info("Dropping message from past term %s", msg)
            return self
        if msg.term > info.term:
            return info.become_follower(msg.term, 0, None).step(msg)

        event = msg.event
        if isinstance(event, GrantVote):
            voter = node_id_of(msg.sender)
            if voter != 0:
                self.votes.add(voter)
            if len(self.votes) >= info.quorum():
                return info.become_leader()
        elif isinstance(event, (HeartBeat, AppendEntries)):
            return info.become_follower(msg.term, node_id_of(msg.sender), None).step(msg)
        elif isinstance(event, ClientRequest):
            info.send(msg.sender, ClientResponse(event.id, RaftError()))
        return self

    def tick(self) -> Node:
        self.election_duration += 1
        if self.election_duration >= self.election_timeout:
            candidate = Candidate(self.info)
            candidate.campaign()
            return candidate
        return self

    def campaign(self) -> None:
        """Start a new term, vote for ourselves and solicit votes."""
        info = self.info
        info.term += 1
        self.votes.add(info.id)
        info.log.set_term(info.term, info.id)
        info.send(BROADCAST_ADDRESS, SolicitVote(info.log.last_index, info.log.last_term))


class Follower:
    """A node following a leader, or waiting for one."""

    def __init__(self, leader: int, voted_for: int, info: NodeInfo):
        self.leader = leader
        self.voted_for = voted_for
        self.leader_seen = 0
        self.election_timeout = rand_election_timeout()
        self.forwarded: set = set()
        self.info = info

    def step(self, msg: Message) -> Node:
        info = self.info
        if 0 < msg.term < info.term:
            _log.info("Dropping message from past term %s", msg)
            return self
        if msg.term > info.term:
            return info.become_follower(msg.term, 0, self.voted_for).step(msg)
        if self.is_leader(msg.sender):
            self.leader_seen = 0

        event = msg.event
        if isinstance(event, HeartBeat):
            if self.leader == 0:
                return info.become_follower(
                    msg.term, node_id_of(msg.sender), self.voted_for
                ).step(msg)
            has_committed = info.log.has(event.commit_index, event.commit_term)
            old_commit = info.log.commit_index
            if has_committed and event.commit_index > old_commit:
                info.log.commit(event.commit_index)
                for entry in info.log.scan(old_commit + 1, event.commit_index, True, True):
                    info.state_tx(Apply(entry=entry))
            info.send(msg.sender, ConfirmLeader(event.commit_index, has_committed))
        elif isinstance(event, AppendEntries):
            sender = node_id_of(msg.sender)
            if self.leader == 0:
                self.leader = sender
            elif self.leader != sender:
                _log.info("Multiple leaders in term")
                return self
            if event.base_index > 0 and not info.log.has(event.base_index, event.base_term):
                info.send(msg.sender, RejectEntries())
            else:
                last_index = info.log.splice(event.entries)
                info.send(msg.sender, AcceptEntries(last_index))
        elif isinstance(event, SolicitVote):
            sender = node_id_of(msg.sender)
            if self.voted_for != 0 and sender != self.voted_for:
                return self
            last_index, last_term = info.log.last_index, info.log.last_term
            if event.last_term > last_term or (
                event.last_term == last_term and event.last_index >= last_index
            ):
                info.send(msg.sender, GrantVote())
                info.log.set_term(info.term, sender)
                self.voted_for = sender
        elif isinstance(event, ClientRequest):
            if not bytes(msg.sender).startswith(CLIENT_ADDRESS):
                return self
            if self.leader != 0:
                self.forwarded.add(event.id)
                info.send(node_address(self.leader), event)
            else:
                info.send(msg.sender, ClientResponse(event.id, RaftError()))
        elif isinstance(event, ClientResponse):
            if not self.is_leader(msg.sender):
                return self
            if isinstance(event.response, RaftStatus) and event.response.status is not None:
                event.response.status.server = info.id
            if event.id in self.forwarded:
                info.send(CLIENT_ADDRESS, ClientResponse(event.id, event.response))
                self.forwarded.discard(event.id)
        return self

    def is_leader(self, address) -> bool:
        return node_id_of(address) == self.leader

    def tick(self) -> Node:
        self.leader_seen += 1
        if self.leader_seen >= self.election_timeout:
            return self.become_candidate()
        return self

    def become_candidate(self) -> Candidate:
        self.abort_forwarded()
        candidate = Candidate(self.info)
        candidate.campaign()
        return candidate

    def abort_forwarded(self) -> None:
        """Answer every forwarded request with an error."""
        for request_id in self.forwarded:
            self.info.send(CLIENT_ADDRESS, ClientResponse(request_id, RaftError()))
        self.forwarded.clear()


Node = Union[Leader, Candidate, Follower]


def new_node(node_id: int, peers, log: RaftLog, state: RaftTxnState, node_tx) -> Node:
    """Create a node, apply committed entries and start the state machine driver.

    A node without peers becomes leader at once; otherwise it starts as a
    follower without a leader.
    """
    instructions: queue.Queue = queue.Queue()
    driver = Driver(node_id, node_tx)
    driver.apply_log(state, log)
    threading.Thread(
        target=driver.drive,
        args=(state, iter(instructions.get, None)),
        daemon=True,
    ).start()

    term, voted_for = log.get_term()
    info = NodeInfo(
        id=node_id,
        peers=set(peers),
        term=term,
        log=log,
        node_tx=node_tx,
        state_tx=instructions.put,
    )
    if not info.peers:
        if voted_for != node_id:
            info.term += 1
            info.log.set_term(info.term, node_id)
        return Leader(set(), info.log.last_index, info)
    return Follower(0, voted_for, info)