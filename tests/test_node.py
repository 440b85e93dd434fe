import copy
import queue
import random
import threading
import time

import pytest

from raftkv.messages import (
    AppendEntriesArgs,
    Entry,
    InstallSnapshotArgs,
    RaftState,
    RequestVoteArgs,
)
from raftkv.node import Raft, make
from raftkv.persister import Persister, decode_state


class _NoPeer:
    def call(self, method, args):
        return None


def _lone(persister=None):
    persister = persister or Persister()
    return Raft([_NoPeer()] * 3, 0, persister, queue.Queue()), persister


# ----- handler-level tests ---------------------------------------------------

def test_request_vote_grants_and_persists():
    rf, ps = _lone()
    reply = rf.request_vote(RequestVoteArgs(term=1, candidate_id=1,
                                            last_log_index=0, last_log_term=-1))
    assert reply.vote_granted and reply.term == 1
    assert decode_state(ps.read_raft_state())[:2] == (1, 1)


def test_request_vote_only_once_per_term():
    rf, _ = _lone()
    rf.request_vote(RequestVoteArgs(term=1, candidate_id=1, last_log_index=0, last_log_term=-1))
    reply = rf.request_vote(RequestVoteArgs(term=1, candidate_id=2,
                                            last_log_index=0, last_log_term=-1))
    assert reply.vote_granted is False


def test_request_vote_rejects_stale_term():
    rf, _ = _lone()
    rf.request_vote(RequestVoteArgs(term=3, candidate_id=1, last_log_index=0, last_log_term=-1))
    reply = rf.request_vote(RequestVoteArgs(term=2, candidate_id=2,
                                            last_log_index=5, last_log_term=2))
    assert (reply.term, reply.vote_granted) == (3, False)


def _fill(rf):
    return rf.append_entries(AppendEntriesArgs(
        term=1, leader_id=1, prev_log_index=0, prev_log_term=-1,
        entries=[Entry(1, "a"), Entry(1, "b"), Entry(1, "c")], leader_commit=1))


def test_append_entries_appends_and_commits():
    rf, _ = _lone()
    reply = _fill(rf)
    assert reply.success and reply.term == 1
    assert rf.log.last_index() == 3
    assert rf.commit_index == 1


def test_append_entries_short_log_hint():
    rf, _ = _lone()
    reply = rf.append_entries(AppendEntriesArgs(term=1, leader_id=1, prev_log_index=5,
                                                prev_log_term=1))
    assert (reply.success, reply.x_term, reply.x_len) == (False, -1, 1)


def test_append_entries_conflict_hint():
    rf, _ = _lone()
    _fill(rf)
    reply = rf.append_entries(AppendEntriesArgs(term=2, leader_id=1, prev_log_index=2,
                                                prev_log_term=2))
    assert (reply.success, reply.x_term, reply.x_index) == (False, 1, 1)


def test_append_entries_truncates_conflicting_suffix():
    rf, _ = _lone()
    _fill(rf)
    reply = rf.append_entries(AppendEntriesArgs(term=2, leader_id=1, prev_log_index=1,
                                                prev_log_term=1, entries=[Entry(2, "z")]))
    assert reply.success
    assert rf.log.last_index() == 2
    assert rf.log.get(2).command == "z"


def test_append_entries_rejects_old_term():
    rf, _ = _lone()
    rf.request_vote(RequestVoteArgs(term=5, candidate_id=1, last_log_index=0, last_log_term=-1))
    reply = rf.append_entries(AppendEntriesArgs(term=4, leader_id=1))
    assert (reply.term, reply.success) == (5, False)


def test_install_snapshot_trims_and_delivers():
    rf, ps = _lone()
    _fill(rf)
    rf.install_snapshot(InstallSnapshotArgs(term=1, leader_id=1, last_included_index=2,
                                            last_included_term=1, data=b"snap"))
    assert rf.log.snap_index == 2
    assert rf.log.last_index() == 3
    assert ps.read_snapshot() == b"snap"
    msg = rf.apply_ch.get_nowait()
    assert msg.snapshot_valid and msg.snapshot_index == 2 and msg.snapshot == b"snap"


def test_snapshot_and_restore():
    rf, ps = _lone()
    _fill(rf)
    rf.snapshot(2, b"s")
    assert rf.log.snap_index == 2
    restored = Raft([_NoPeer()] * 3, 0, ps, queue.Queue())
    assert restored.log.snap_index == 2
    assert restored.current_term == 1
    assert restored.snapshot_data == b"s"
    assert restored.log.get(3).command == "c"


def test_start_on_follower_and_leader():
    rf, _ = _lone()
    assert rf.start("x") == (-1, -1, False)
    rf.state = RaftState.LEADER
    rf.current_term = 4
    assert rf.start("x") == (1, 4, True)


def test_killed_state():
    rf, _ = _lone()
    rf.kill()
    assert rf.killed()
    assert rf.get_state() == (-1, False)


# ----- cluster tests -----------------------------------------------------------

_METHODS = {
    "Raft.RequestVote": "request_vote",
    "Raft.AppendEntries": "append_entries",
    "Raft.InstallSnapshot": "install_snapshot",
}


class _End:
    def __init__(self, cluster, src, dst):
        self.cluster, self.src, self.dst = cluster, src, dst

    def call(self, method, args):
        return self.cluster.deliver(self.src, self.dst, method, args)


class _Cluster:
    def __init__(self, n):
        self.n = n
        self.lock = threading.Lock()
        self.stop = threading.Event()
        self.persisters = [Persister() for _ in range(n)]
        self.rafts = [None] * n
        self.connected = [True] * n
        self.logs = [{} for _ in range(n)]
        self.errors = []
        for i in range(n):
            self.start1(i)

    def deliver(self, src, dst, method, args):
        with self.lock:
            rf = self.rafts[dst]
            ok = self.connected[src] and self.connected[dst]
        if not ok or rf is None or rf.killed():
            return None
        reply = getattr(rf, _METHODS[method])(copy.deepcopy(args))
        return copy.deepcopy(reply)

    def _applier(self, i, ch):
        while not self.stop.is_set():
            try:
                msg = ch.get(timeout=0.1)
            except queue.Empty:
                continue
            if not msg.command_valid:
                continue
            with self.lock:
                idx = msg.command_index
                for j, other in enumerate(self.logs):
                    if idx in other and other[idx] != msg.command:
                        self.errors.append(f"index {idx}: {i} vs {j}")
                if idx > 1 and idx - 1 not in self.logs[i]:
                    self.errors.append(f"server {i} out of order at {idx}")
                self.logs[i][idx] = msg.command

    def crash1(self, i):
        with self.lock:
            rf, self.rafts[i] = self.rafts[i], None
            self.persisters[i] = self.persisters[i].copy()
        if rf is not None:
            rf.kill()

    def start1(self, i):
        self.crash1(i)
        ch = queue.Queue()
        ends = [_End(self, i, j) for j in range(self.n)]
        rf = make(ends, i, self.persisters[i], ch)
        with self.lock:
            self.rafts[i] = rf
        threading.Thread(target=self._applier, args=(i, ch), daemon=True).start()

    def cleanup(self):
        self.stop.set()
        for rf in self.rafts:
            if rf is not None:
                rf.kill()

    def check_one_leader(self):
        for _ in range(10):
            time.sleep(0.45 + random.random() / 10)
            leaders = {}
            for i in range(self.n):
                if self.connected[i] and self.rafts[i] is not None:
                    term, is_leader = self.rafts[i].get_state()
                    if is_leader:
                        leaders.setdefault(term, []).append(i)
            for term, ids in leaders.items():
                assert len(ids) == 1, f"term {term} has {len(ids)} leaders"
            if leaders:
                return leaders[max(leaders)][0]
        raise AssertionError("expected one leader, got none")

    def check_no_leader(self):
        for i in range(self.n):
            if self.connected[i]:
                assert self.rafts[i].get_state()[1] is False

    def n_committed(self, index):
        assert not self.errors, self.errors
        with self.lock:
            values = [log[index] for log in self.logs if index in log]
        assert len(set(values)) <= 1
        return len(values), (values[0] if values else None)

    def one(self, cmd, expected, retry):
        t0 = time.monotonic()
        starts = 0
        while time.monotonic() - t0 < 10:
            index = -1
            for _ in range(self.n):
                starts = (starts + 1) % self.n
                rf = self.rafts[starts] if self.connected[starts] else None
                if rf is not None:
                    idx, _, ok = rf.start(cmd)
                    if ok:
                        index = idx
                        break
            if index != -1:
                t1 = time.monotonic()
                while time.monotonic() - t1 < 2:
                    nd, got = self.n_committed(index)
                    if nd > 0 and nd >= expected and got == cmd:
                        return index
                    time.sleep(0.02)
                if not retry:
                    raise AssertionError(f"one({cmd}) failed to reach agreement")
            else:
                time.sleep(0.05)
        raise AssertionError(f"one({cmd}) failed to reach agreement")


@pytest.fixture
def cluster_factory():
    made = []

    def factory(n):
        c = _Cluster(n)
        made.append(c)
        return c

    yield factory
    for c in made:
        c.cleanup()


def test_initial_election(cluster_factory):
    c = cluster_factory(3)
    leader = c.check_one_leader()
    time.sleep(0.05)
    terms = {rf.get_state()[0] for rf in c.rafts}
    assert len(terms) == 1
    term = terms.pop()
    assert term >= 1
    assert c.rafts[leader].state is RaftState.LEADER
    persisted_term, voted_for = decode_state(c.persisters[leader].read_raft_state())[:2]
    assert (persisted_term, voted_for) == (term, leader)
    assert c.check_one_leader() in range(3)


def test_re_election(cluster_factory):
    c = cluster_factory(3)
    leader1 = c.check_one_leader()
    c.connected[leader1] = False
    assert c.check_one_leader() != leader1
    c.connected[leader1] = True
    leader2 = c.check_one_leader()
    c.connected[leader2] = False
    c.connected[(leader2 + 1) % 3] = False
    time.sleep(2)
    c.check_no_leader()
    lone = (leader2 + 2) % 3
    assert c.rafts[lone].state is not RaftState.LEADER
    c.connected[(leader2 + 1) % 3] = True
    leader3 = c.check_one_leader()
    assert leader3 in range(3)
    assert c.rafts[leader3].state is RaftState.LEADER
    term = c.rafts[leader3].get_state()[0]
    assert decode_state(c.persisters[leader3].read_raft_state())[0] == term


def test_basic_agree(cluster_factory):
    c = cluster_factory(3)
    for index in range(1, 4):
        assert c.n_committed(index)[0] == 0
        assert c.one(index * 100, 3, False) == index
    leader = c.check_one_leader()
    assert c.rafts[leader].state is RaftState.LEADER
    term = c.rafts[leader].get_state()[0]
    assert decode_state(c.persisters[leader].read_raft_state())[0] == term


def test_fail_no_agree(cluster_factory):
    c = cluster_factory(5)
    c.one(10, 5, False)
    leader = c.check_one_leader()
    for k in (1, 2, 3):
        c.connected[(leader + k) % 5] = False
    assert c.rafts[leader].state is RaftState.LEADER
    index, _, ok = c.rafts[leader].start(20)
    assert ok and index == 2
    time.sleep(2)
    assert c.n_committed(index)[0] == 0
    for k in (1, 2, 3):
        c.connected[(leader + k) % 5] = True
    assert c.one(1000, 5, True) >= 2
    leader2 = c.check_one_leader()
    term = c.rafts[leader2].get_state()[0]
    assert decode_state(c.persisters[leader2].read_raft_state())[0] == term


def test_persist_restart_all(cluster_factory):
    c = cluster_factory(3)
    assert c.one(11, 3, True) == 1
    for i in range(3):
        c.start1(i)
    assert c.one(12, 3, True) == 2
    leader = c.check_one_leader()
    c.start1(leader)
    assert c.one(13, 3, True) == 3
    assert c.n_committed(1) == (3, 11)
    for i in range(3):
        assert decode_state(c.persisters[i].read_raft_state())[0] >= 1
    leader2 = c.check_one_leader()
    assert c.rafts[leader2].state is RaftState.LEADER