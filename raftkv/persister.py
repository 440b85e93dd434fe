"""Stable storage for Raft state and service snapshots."""

from __future__ import annotations

import pickle
import threading

from raftkv.messages import Entry


class Persister:
    """Holds a peer's persisted Raft state and snapshot, saved together atomically."""

    def __init__(self, raftstate=b"", snapshot=b""):
        self._lock = threading.Lock()
        self._raftstate = bytes(raftstate or b"")
        self._snapshot = bytes(snapshot or b"")

    def copy(self):
        """Return a new persister holding the same contents."""
        with self._lock:
            return Persister(self._raftstate, self._snapshot)

    def read_raft_state(self):
        with self._lock:
            return self._raftstate

    def raft_state_size(self):
        with self._lock:
            return len(self._raftstate)

    def save(self, raftstate, snapshot):
        """Save both the Raft state and the snapshot in one step."""
        with self._lock:
            self._raftstate = bytes(raftstate or b"")
            self._snapshot = bytes(snapshot or b"")

    def read_snapshot(self):
        with self._lock:
            return self._snapshot

    def snapshot_size(self):
        with self._lock:
            return len(self._snapshot)


def encode_state(current_term, voted_for, log, snap_index):
    """Serialize a peer's persistent Raft state to bytes."""
    record = (
        int(current_term),
        int(voted_for),
        [(entry.term, entry.command) for entry in log],
        int(snap_index),
    )
    return pickle.dumps(record)


def decode_state(data):
    """Decode bytes made by :func:`encode_state`.

    Returns ``(current_term, voted_for, log, snap_index)``, or ``None`` when
    ``data`` is empty. Raises ``ValueError`` when the data cannot be decoded.
    """
    if not data:
        return None
    try:
        record = pickle.loads(bytes(data))
        current_term, voted_for, raw_log, snap_index = record
        log = [Entry(int(term), command) for term, command in raw_log]
    except (pickle.UnpicklingError, EOFError, TypeError, ValueError,
            AttributeError, IndexError, ImportError) as exc:
        raise ValueError("cannot decode persisted raft state") from exc
    if not all(isinstance(v, int) for v in (current_term, voted_for, snap_index)):
        raise ValueError("cannot decode persisted raft state")
    return current_term, voted_for, log, snap_index