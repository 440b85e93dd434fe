"""A Raft peer: leader election, log replication, persistence and snapshots.

Peers are reached through objects with a ``call(method, args)`` method that
returns the reply, or ``None`` when the RPC could not be delivered. Method
names are ``"Raft.RequestVote"``, ``"Raft.AppendEntries"`` and
``"Raft.InstallSnapshot"``. Committed commands and installed snapshots are
delivered as :class:`ApplyMsg` objects through ``apply_ch.put``.
"""

from __future__ import annotations

import random
import threading
import time

from raftkv.log import RaftLog
from raftkv.messages import (
    ELECTION_TIMEOUT,
    HEARTBEAT_INTERVAL,
    AppendEntriesArgs,
    AppendEntriesReply,
    ApplyMsg,
    Entry,
    InstallSnapshotArgs,
    InstallSnapshotReply,
    RaftState,
    RequestVoteArgs,
    RequestVoteReply,
)
from raftkv.persister import decode_state, encode_state


class Raft:
    """One Raft peer. Use :func:`make` to create a running peer."""

    def __init__(self, peers, me, persister, apply_ch):
        self.peers = list(peers)
        self.me = me
        self.persister = persister
        self.apply_ch = apply_ch

        self._lock = threading.Lock()
        self._dead = threading.Event()
        self._wake = threading.Event()

        self.current_term = 0
        self.voted_for = -1
        self.state = RaftState.FOLLOWER
        self._last_touched = time.monotonic()
        self.log = RaftLog()
        self.commit_index = 0
        self.last_applied = 0
        self.next_index: list[int] = []
        self.match_index: list[int] = []
        self.snapshot_data = b""

        self._read_persist(persister.read_raft_state())

    # ----- background work -------------------------------------------------

    def _start_background(self):
        threading.Thread(target=self._ticker, daemon=True).start()
        threading.Thread(target=self._guard_kick, daemon=True).start()

    def _ticker(self):
        while not self.killed():
            with self._lock:
                if (time.monotonic() - self._last_touched > ELECTION_TIMEOUT
                        and self.state != RaftState.LEADER):
                    self._become_candidate()
                    threading.Thread(target=self._collect_opinion, daemon=True).start()
            time.sleep((50 + random.randrange(300)) / 1000)

    def _kick(self):
        self._wake.set()

    def _guard_kick(self):
        while not self.killed():
            if not self._wake.wait(0.05):
                continue
            self._wake.clear()
            with self._lock:
                start, end = self.last_applied + 1, self.commit_index
                if end < start:
                    continue
                applies = [
                    ApplyMsg(command_valid=True,
                             command=self.log.get(i).command,
                             command_index=i)
                    for i in range(max(start, self.log.snap_index + 1), end + 1)
                ]
                self.last_applied = self.commit_index
            for msg in applies:
                self.apply_ch.put(msg)

    # ----- persistence -----------------------------------------------------

    def _persist(self):
        state = encode_state(self.current_term, self.voted_for,
                             self.log.entries, self.log.snap_index)
        self.persister.save(state, self.snapshot_data)

    def _read_persist(self, data):
        decoded = decode_state(data)
        if decoded is None:
            return
        self.current_term, self.voted_for, entries, snap_index = decoded
        self.log = RaftLog(entries, snap_index)
        self.snapshot_data = self.persister.read_snapshot()

    def snapshot(self, index, snapshot):
        """The service has snapshotted everything through ``index``; trim the log."""
        with self._lock:
            if index <= self.log.snap_index:
                return
            self.log.compact(index)
            self.snapshot_data = bytes(snapshot)
            self._persist()

    # ----- public state ----------------------------------------------------

    def start(self, command):
        """Propose a command. Returns ``(index, term, is_leader)``."""
        with self._lock:
            if self.state != RaftState.LEADER:
                return -1, -1, False
            self.log.append(Entry(self.current_term, command))
            self._kick()
            self._persist()
            return self.log.last_index(), self.current_term, True

    def get_state(self):
        """Return ``(current_term, is_leader)``."""
        if self.killed():
            return -1, False
        with self._lock:
            return self.current_term, self.state == RaftState.LEADER

    def kill(self):
        self._dead.set()

    def killed(self):
        return self._dead.is_set()

    # ----- role changes (lock held) ----------------------------------------

    def _touch(self):
        self._last_touched = time.monotonic()

    def _become_candidate(self):
        self.current_term += 1
        self.state = RaftState.CANDIDATE
        self.voted_for = self.me
        self._persist()

    def _become_leader(self):
        self.state = RaftState.LEADER
        last = self.log.last_index()
        count = len(self.peers)
        self.next_index = [last + 1] * count
        self.match_index = [0] * count
        self.next_index[self.me] = -1
        self.match_index[self.me] = -1
        term = self.current_term
        for server in range(count):
            if server != self.me:
                threading.Thread(target=self._replicator, args=(server, term),
                                 daemon=True).start()

    def _new_gen(self, term):
        self.current_term = term
        self.state = RaftState.FOLLOWER
        self.voted_for = -1
        self._persist()

    def _try_voting_for(self, candidate, last_log_index, last_log_term):
        my_last_index = self.log.last_index()
        my_last_term = self.log.last_term()
        up_to_date = (last_log_term > my_last_term
                      or (last_log_term == my_last_term
                          and last_log_index >= my_last_index))
        if self.voted_for in (-1, candidate) and up_to_date:
            self.voted_for = candidate
            self._persist()
            self._touch()
            return True
        return False

    # ----- elections -------------------------------------------------------

    def _collect_opinion(self):
        supporters = [1]
        for server in range(len(self.peers)):
            if server != self.me:
                threading.Thread(target=self._ask_vote, args=(server, supporters),
                                 daemon=True).start()

    def _ask_vote(self, server, supporters):
        with self._lock:
            args = RequestVoteArgs(term=self.current_term, candidate_id=self.me,
                                   last_log_index=self.log.last_index(),
                                   last_log_term=self.log.last_term())
        reply = self.peers[server].call("Raft.RequestVote", args)
        if reply is None:
            return
        with self._lock:
            if reply.term > self.current_term:
                self._new_gen(reply.term)
            if (reply.vote_granted and self.state == RaftState.CANDIDATE
                    and self.current_term == args.term):
                supporters[0] += 1
                if supporters[0] > len(self.peers) // 2:
                    self._become_leader()

    def request_vote(self, args):
        """Handle a RequestVote RPC."""
        with self._lock:
            if args.term > self.current_term:
                self._new_gen(args.term)
            if args.term < self.current_term:
                return RequestVoteReply(term=self.current_term, vote_granted=False)
            granted = self._try_voting_for(args.candidate_id, args.last_log_index,
                                           args.last_log_term)
            return RequestVoteReply(term=self.current_term, vote_granted=granted)

    # ----- replication (leader side) ---------------------------------------

    def _replicator(self, server, term):
        while not self.killed():
            with self._lock:
                if self.state != RaftState.LEADER or self.current_term != term:
                    return
            while self._single_append(server):
                pass
            time.sleep(HEARTBEAT_INTERVAL)

    def _single_append(self, server):
        """Send one round to ``server``; return True when it should be retried."""
        if self.killed():
            return False
        with self._lock:
            if self.state != RaftState.LEADER:
                return False
            prev = self.next_index[server] - 1
            if prev < self.log.snap_index:
                install = InstallSnapshotArgs(
                    term=self.current_term, leader_id=self.me,
                    last_included_index=self.log.snap_index,
                    last_included_term=self.log.snap_term,
                    data=self.snapshot_data)
                args = None
            else:
                install = None
                args = AppendEntriesArgs(
                    term=self.current_term, leader_id=self.me,
                    prev_log_index=prev,
                    prev_log_term=self.log.get(prev).term,
                    entries=self.log.entries_from(prev + 1),
                    leader_commit=self.commit_index)

        if install is not None:
            reply = self.peers[server].call("Raft.InstallSnapshot", install)
            if reply is None:
                return False
            with self._lock:
                if reply.term > self.current_term:
                    self._new_gen(reply.term)
                    return False
                self.match_index[server] = install.last_included_index
                self.next_index[server] = install.last_included_index + 1
            return False

        reply = self.peers[server].call("Raft.AppendEntries", args)
        if reply is None:
            time.sleep(0.01)
            return True
        with self._lock:
            if reply.term > self.current_term:
                self._new_gen(reply.term)
                return False
            if self.current_term != args.term or self.state != RaftState.LEADER:
                return False
            if not reply.success:
                self._step_back(server, reply.x_term, reply.x_index, reply.x_len)
                return True
            self.match_index[server] = prev + len(args.entries)
            self.next_index[server] = self.match_index[server] + 1
            self._update_commit_index()
            return False

    def _update_commit_index(self):
        majority = len(self.peers) // 2
        lower = max(self.commit_index, self.log.snap_index)
        for n in range(self.log.last_index(), lower, -1):
            count = 1 + sum(1 for i, match in enumerate(self.match_index)
                            if i != self.me and match >= n)
            if count > majority and self.log.get(n).term == self.current_term:
                self.commit_index = n
                self._kick()
                break

    def _step_back(self, server, x_term, x_index, x_len):
        if x_term == -1:
            self.next_index[server] = min(x_len, len(self.log))
            return
        last = self.log.last_index_of_term(x_term)
        self.next_index[server] = last + 1 if last != -1 else x_index

    # ----- replication (follower side) -------------------------------------

    def _reconcile(self, my_idx, your_idx, entries):
        self.log.reconcile(my_idx, your_idx, entries)
        self._kick()
        self._persist()

    def _try_update_commit(self, leader_commit):
        if leader_commit > self.commit_index:
            self.commit_index = min(leader_commit, self.log.last_index())
            if self.commit_index > self.last_applied:
                self._kick()

    def append_entries(self, args):
        """Handle an AppendEntries RPC."""
        with self._lock:
            if args.term > self.current_term:
                self._new_gen(args.term)
            elif self.state == RaftState.CANDIDATE and args.term == self.current_term:
                self.state = RaftState.FOLLOWER

            if args.term < self.current_term:
                return AppendEntriesReply(term=self.current_term, success=False)

            self._touch()
            snap = self.log.snap_index

            if args.prev_log_index <= snap:
                append_start = snap - args.prev_log_index
                if append_start < len(args.entries):
                    self._reconcile(snap + 1, append_start, args.entries)
                self._try_update_commit(args.leader_commit)
                return AppendEntriesReply(term=self.current_term, success=True)

            if args.prev_log_index >= len(self.log):
                return AppendEntriesReply(term=self.current_term, success=False,
                                          x_term=-1, x_index=-1, x_len=len(self.log))

            local_term = self.log.get(args.prev_log_index).term
            if local_term != args.prev_log_term:
                x_index = args.prev_log_index
                while x_index - 1 >= snap + 1 and self.log.get(x_index - 1).term == local_term:
                    x_index -= 1
                return AppendEntriesReply(term=self.current_term, success=False,
                                          x_term=local_term, x_index=x_index, x_len=-1)

            self._reconcile(args.prev_log_index + 1, 0, args.entries)
            self._try_update_commit(args.leader_commit)
            return AppendEntriesReply(term=self.current_term, success=True)

    def install_snapshot(self, args):
        """Handle an InstallSnapshot RPC."""
        with self._lock:
            if args.term < self.current_term:
                return InstallSnapshotReply(term=self.current_term)
            if args.term > self.current_term:
                self._new_gen(args.term)
            self._touch()

            if not self.log.install(args.last_included_index, args.last_included_term):
                return InstallSnapshotReply(term=self.current_term)
            self.snapshot_data = bytes(args.data)
            self._persist()

            if self.last_applied < self.log.snap_index:
                self.last_applied = self.log.snap_index
                self.commit_index = self.log.snap_index
                self.apply_ch.put(ApplyMsg(snapshot_valid=True,
                                           snapshot=bytes(args.data),
                                           snapshot_term=args.last_included_term,
                                           snapshot_index=args.last_included_index))
            return InstallSnapshotReply(term=self.current_term)


def make(peers, me, persister, apply_ch):
    """Create a Raft peer, restore its persisted state and start it running."""
    rf = Raft(peers, me, persister, apply_ch)
    rf._start_background()
    return rf