import uuid

import pytest

from cabbagedb.bitcask import BitCask
from cabbagedb.driver import Apply, Notify, Query, Vote
from cabbagedb.messages import (
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
    RaftError,
    RaftMutate,
    RaftQuery,
    RejectEntries,
    SolicitVote,
    node_address,
)
from cabbagedb.node import (
    Candidate,
    Follower,
    Leader,
    NodeInfo,
    Progress,
    new_node,
    rand_election_timeout,
)
from cabbagedb.raftlog import Entry, RaftLog


@pytest.fixture
def store(tmp_path):
    with BitCask(tmp_path / "log") as engine:
        yield engine


def make_info(store, node_id=1, peers=(), term=1):
    sent, instructions = [], []
    info = NodeInfo(
        id=node_id,
        peers=set(peers),
        term=term,
        log=RaftLog(store),
        node_tx=sent.append,
        state_tx=instructions.append,
    )
    return info, sent, instructions


class _State:
    def __init__(self):
        self.applied = 0

    def applied_index(self):
        return self.applied

    def apply(self, entry):
        self.applied = entry.index
        return entry.command

    def query(self, command):
        return command


def test_quorum(store):
    assert make_info(store)[0].quorum() == 1
    assert make_info(store, peers=(2, 3))[0].quorum() == 2


def test_send_fills_term_and_sender(store):
    info, sent, _ = make_info(store, node_id=4, term=7)
    info.send(BROADCAST_ADDRESS, HeartBeat(0, 0))
    assert sent == [Message(7, node_address(4), BROADCAST_ADDRESS, HeartBeat(0, 0))]


def test_rand_election_timeout_range():
    for _ in range(50):
        assert 10 <= rand_election_timeout() < 20


def test_become_follower_without_leader_persists_term(store):
    info, _, _ = make_info(store, term=1)
    follower = info.become_follower(5, 0, None)
    assert isinstance(follower, Follower)
    assert info.term == 5
    assert info.log.get_term() == (5, 0)
    assert follower.leader == 0


def test_become_follower_with_leader_uses_own_vote(store):
    info, _, _ = make_info(store, node_id=3)
    follower = info.become_follower(1, 2, None)
    assert follower.leader == 2
    assert follower.voted_for == 3


def test_leader_propose_sends_entries_to_peers(store):
    info, sent, _ = make_info(store, peers=(2, 3))
    leader = Leader(info.peers, 0, info)
    index = leader.propose(b"x")
    assert index == 1
    assert {m.to for m in sent} == {node_address(2), node_address(3)}
    for message in sent:
        assert message.event == AppendEntries(0, 0, [Entry(1, 1, b"x")])


def test_single_node_leader_commits_mutation(store):
    info, _, instructions = make_info(store)
    leader = Leader(set(), 0, info)
    request_id = uuid.uuid4()
    msg = Message(0, CLIENT_ADDRESS, node_address(1), ClientRequest(request_id, RaftMutate(b"cmd")))
    assert leader.step(msg) is leader
    assert instructions[0] == Notify(request_id, CLIENT_ADDRESS, 1)
    assert instructions[1] == Apply(Entry(1, 1, b"cmd"))
    assert info.log.commit_index == 1


def test_leader_commits_after_quorum_accepts(store):
    info, _, instructions = make_info(store, peers=(2, 3))
    leader = Leader(info.peers, 0, info)
    leader.propose(b"x")
    assert info.log.commit_index == 0
    leader.step(Message(1, node_address(2), node_address(1), AcceptEntries(1)))
    assert leader.progress[2] == Progress(next=2, last=1)
    assert info.log.commit_index == 1
    assert instructions == [Apply(Entry(1, 1, b"x"))]


def test_leader_reject_decrements_next(store):
    info, sent, _ = make_info(store, peers=(2,))
    info.log.append(1, b"a")
    info.log.append(1, b"b")
    leader = Leader(info.peers, 2, info)
    leader.step(Message(1, node_address(2), node_address(1), RejectEntries()))
    assert leader.progress[2].next == 2
    assert sent[-1].event == AppendEntries(1, 1, [Entry(2, 1, b"b")])


def test_leader_query_queues_query_and_vote(store):
    info, sent, instructions = make_info(store, peers=(2, 3))
    leader = Leader(info.peers, 0, info)
    request_id = uuid.uuid4()
    leader.step(Message(0, CLIENT_ADDRESS, node_address(1), ClientRequest(request_id, RaftQuery(b"q"))))
    assert instructions[0] == Query(request_id, CLIENT_ADDRESS, b"q", 1, 0, 2)
    assert instructions[1] == Vote(1, 0, node_address(1))
    assert sent[-1].event == HeartBeat(0, 0)


def test_leader_confirm_leader_emits_vote(store):
    info, _, instructions = make_info(store, peers=(2,))
    leader = Leader(info.peers, 0, info)
    leader.step(Message(1, node_address(2), node_address(1), ConfirmLeader(0, True)))
    assert instructions == [Vote(1, 0, node_address(2))]


def test_leader_steps_down_on_higher_term(store):
    info, _, _ = make_info(store, peers=(2,))
    leader = Leader(info.peers, 0, info)
    node = leader.step(Message(4, node_address(2), BROADCAST_ADDRESS, SolicitVote(0, 0)))
    assert isinstance(node, Follower)
    assert info.term == 4


def test_leader_ignores_past_term(store):
    info, sent, _ = make_info(store, peers=(2,), term=3)
    leader = Leader(info.peers, 0, info)
    assert leader.step(Message(1, node_address(2), node_address(1), RejectEntries())) is leader
    assert sent == []


def test_leader_tick_sends_heartbeat_on_interval(store):
    info, sent, _ = make_info(store, peers=(2,))
    leader = Leader(info.peers, 0, info)
    leader.tick()
    leader.tick()
    assert sent == []
    leader.tick()
    assert [m.event for m in sent] == [HeartBeat(0, 0)]
    assert leader.since_heartbeat == 0


def test_candidate_wins_election(store):
    info, sent, _ = make_info(store, peers=(2, 3), term=0)
    candidate = Candidate(info)
    candidate.campaign()
    assert info.term == 1
    assert info.log.get_term() == (1, 1)
    assert sent[-1].event == SolicitVote(0, 0)
    node = candidate.step(Message(1, node_address(2), node_address(1), GrantVote()))
    assert isinstance(node, Leader)
    assert info.log.last_index == 1


def test_candidate_rejects_client_request(store):
    info, sent, _ = make_info(store, peers=(2,))
    candidate = Candidate(info)
    request_id = uuid.uuid4()
    candidate.step(Message(0, CLIENT_ADDRESS, node_address(1), ClientRequest(request_id, RaftMutate(b""))))
    assert sent[-1].event == ClientResponse(request_id, RaftError())
    assert sent[-1].to == CLIENT_ADDRESS


def test_candidate_follows_heartbeat(store):
    info, _, _ = make_info(store, peers=(2,))
    candidate = Candidate(info)
    node = candidate.step(Message(1, node_address(2), node_address(1), HeartBeat(0, 0)))
    assert isinstance(node, Follower)
    assert node.leader == 2


def test_follower_votes_once(store):
    info, sent, _ = make_info(store, peers=(2, 3))
    follower = Follower(0, 0, info)
    follower.step(Message(1, node_address(2), BROADCAST_ADDRESS, SolicitVote(0, 0)))
    assert sent[-1].event == GrantVote()
    assert follower.voted_for == 2
    assert info.log.get_term() == (1, 2)
    count = len(sent)
    follower.step(Message(1, node_address(3), BROADCAST_ADDRESS, SolicitVote(0, 0)))
    assert len(sent) == count


def test_follower_append_and_commit(store):
    info, sent, instructions = make_info(store, peers=(2,))
    follower = Follower(0, 0, info)
    entries = [Entry(1, 1, b"a"), Entry(2, 1, b"b")]
    follower.step(Message(1, node_address(2), node_address(1), AppendEntries(0, 0, entries)))
    assert follower.leader == 2
    assert sent[-1].event == AcceptEntries(2)
    assert info.log.get(2) == Entry(2, 1, b"b")
    follower.step(Message(1, node_address(2), BROADCAST_ADDRESS, HeartBeat(2, 1)))
    assert info.log.commit_index == 2
    assert instructions == [Apply(entries[0]), Apply(entries[1])]
    assert sent[-1].event == ConfirmLeader(2, True)


def test_follower_rejects_missing_base(store):
    info, sent, _ = make_info(store, peers=(2,))
    follower = Follower(2, 0, info)
    follower.step(Message(1, node_address(2), node_address(1), AppendEntries(5, 1, [Entry(6, 1, b"")])))
    assert sent[-1].event == RejectEntries()
    assert info.log.last_index == 0


def test_follower_ignores_second_leader(store):
    info, sent, _ = make_info(store, peers=(2, 3))
    follower = Follower(2, 0, info)
    follower.step(Message(1, node_address(3), node_address(1), AppendEntries(0, 0, [])))
    assert sent == []


def test_follower_forwards_request_and_response(store):
    info, sent, _ = make_info(store, peers=(2,))
    follower = Follower(2, 0, info)
    request_id = uuid.uuid4()
    request = ClientRequest(request_id, RaftMutate(b"m"))
    follower.step(Message(0, CLIENT_ADDRESS, node_address(1), request))
    assert sent[-1].to == node_address(2)
    assert sent[-1].event == request
    response = ClientResponse(request_id, RaftMutate(b"ok"))
    follower.step(Message(1, node_address(2), node_address(1), response))
    assert sent[-1].to == CLIENT_ADDRESS
    assert sent[-1].event == response
    assert follower.forwarded == set()


def test_follower_times_out_into_candidate(store):
    info, sent, _ = make_info(store, peers=(2,))
    follower = Follower(2, 0, info)
    request_id = uuid.uuid4()
    follower.forwarded.add(request_id)
    node = follower
    for _ in range(follower.election_timeout):
        node = node.tick()
    assert isinstance(node, Candidate)
    assert info.term == 2
    assert ClientResponse(request_id, RaftError()) in [m.event for m in sent]


def test_new_node_single_becomes_leader(store):
    sent = []
    log = RaftLog(store)
    node = new_node(1, {}, log, _State(), sent.append)
    assert isinstance(node, Leader)
    assert node.info.term == 1
    assert log.get_term() == (1, 1)


def test_new_node_with_peers_is_follower(store):
    log = RaftLog(store)
    log.set_term(3, 2)
    node = new_node(1, {2: "127.0.0.1:9705"}, log, _State(), [].append)
    assert isinstance(node, Follower)
    assert node.voted_for == 2
    assert node.info.term == 3