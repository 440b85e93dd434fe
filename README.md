# raftkv

`raftkv` implements the Raft consensus algorithm in pure Python. It covers
leader election, log replication with fast back-off over conflicting follower
logs, persistence, and log compaction through snapshots. It also provides
client-side clerks for a shard controller and for a sharded key/value service.
The package uses only the standard library.

## Installation

```
pip install .
```

To install the test dependencies and run the test suite:

```
pip install .[test]
pytest
```

## Modules

### `raftkv.messages`

- `RaftState` is an `IntEnum` with the members `FOLLOWER`, `CANDIDATE` and
  `LEADER`.
- `Entry` is a log entry. It holds a `term` and a `command`.
- `ApplyMsg` is what a peer delivers to its service. When `command_valid` is
  set it carries a committed command and its index. When `snapshot_valid` is
  set it carries an installed snapshot with its term and index.
- The RPC records are `RequestVoteArgs`/`RequestVoteReply`,
  `AppendEntriesArgs`/`AppendEntriesReply` and
  `InstallSnapshotArgs`/`InstallSnapshotReply`. `AppendEntriesReply` also
  carries the conflict hints `x_term`, `x_index` and `x_len`.
- `ELECTION_TIMEOUT` is 0.5 seconds and `HEARTBEAT_INTERVAL` is 0.1 seconds.
- `dprintf(format, *args)` logs to the `raftkv` logger only while `DEBUG` is
  true.

### `raftkv.persister`

- `Persister` holds a peer's Raft state and snapshot as bytes, guarded by a
  lock. Its methods are `save(raftstate, snapshot)`, which stores both in one
  step, `read_raft_state()`, `read_snapshot()`, `raft_state_size()`,
  `snapshot_size()` and `copy()`.
- `encode_state(current_term, voted_for, log, snap_index)` serializes a peer's
  durable state with `pickle`.
- `decode_state(data)` reverses `encode_state`. It returns `None` for empty
  data and raises `ValueError` when the data cannot be decoded.

### `raftkv.log`

`RaftLog` is a log addressed by global index. `entries[0]` is a placeholder
for the last index covered by the snapshot (`snap_index`), and its term is
exposed as `snap_term`. `len(log)` counts the snapshotted prefix too.

- `get`, `entries_from`, `append`, `last_index`, `last_term` and
  `last_index_of_term` read and extend the log. An index outside the log
  raises `IndexError`.
- `reconcile(my_idx, your_idx, entries)` merges entries from a leader. It cuts
  the local log at the first term conflict and then appends whatever incoming
  entries remain.
- `compact(index)` drops the log up to `index` after a local snapshot.
- `install(last_included_index, last_included_term)` adopts a leader's
  snapshot and keeps any later entries.

Both `compact` and `install` return `False` when the snapshot is not newer
than the current one.

### `raftkv.node`

- `make(peers, me, persister, apply_ch)` builds a `Raft` peer, restores its
  persisted state and starts its background threads. Those threads run the
  election ticker and deliver committed entries.
- `Raft.start(command)` returns `(index, term, is_leader)`. It returns
  `(-1, -1, False)` on a peer that is not the leader.
- `Raft.get_state()` returns `(current_term, is_leader)`.
- `Raft.snapshot(index, data)` trims the log after the service has
  snapshotted everything through `index`.
- `Raft.kill()` and `Raft.killed()` stop the peer and report whether it has
  been stopped.
- `request_vote`, `append_entries` and `install_snapshot` are the RPC
  handlers. Each takes an args record and returns the matching reply record.

Each entry in `peers` is any object with a `call(method, args)` method. It
returns the reply, or `None` when the RPC was not delivered. The method names
used are `"Raft.RequestVote"`, `"Raft.AppendEntries"` and
`"Raft.InstallSnapshot"`. `apply_ch` is any object with a `put` method, such
as `queue.Queue`.

### `raftkv.shardctrler`

- `Config` holds `num`, `shards` and `groups`. `shards` is a list of
  `NSHARDS` (10) group ids and `groups` maps a group id to its server names.
  Building a `Config` with the wrong number of shards raises `ValueError`.
- `JoinArgs`, `LeaveArgs`, `MoveArgs`, `QueryArgs` and `Reply` are the RPC
  records.
- `Clerk(servers)` has `query(num)`, `join(servers)`, `leave(gids)` and
  `move(shard, gid)`. `query(-1)` returns the latest configuration.
- Each call tries every server in turn until one replies without
  `wrong_leader`. After each full pass it waits `RETRY_INTERVAL` seconds, and
  it keeps retrying indefinitely.

### `raftkv.shardkv`

- `key2shard(key)` returns the key's first byte modulo `NSHARDS`, or 0 for an
  empty key.
- `Err` lists the outcome codes `OK`, `NO_KEY`, `WRONG_GROUP` and
  `WRONG_LEADER`.
- `PutAppendArgs`, `PutAppendReply`, `GetArgs` and `GetReply` are the RPC
  records.
- `Clerk(ctrlers, make_end)` has `get`, `put`, `append` and `put_append`.
  - It routes each key to the group that owns the key's shard.
  - `make_end(server_name)` must return an object with a `call(method, args)`
    method.
  - On a wrong group, or when no server answers, it waits and fetches the
    latest configuration from the controller, then tries again.
  - `get` returns `""` for a missing key.

## Quick look

```python
import queue

from raftkv.node import make
from raftkv.persister import Persister

apply_ch = queue.Queue()
node = make([], 0, Persister(), apply_ch)
term, is_leader = node.get_state()
index, term, ok = node.start("set x=1")  # ok is False unless this node leads
node.kill()
```

A key's shard is fixed by its first byte:

```python
from raftkv.shardkv import key2shard

key2shard("")   # 0
key2shard("a")  # ord("a") % 10 == 7
```

## What the package does not do

- **No network transport.** Peers, controller servers and group servers are
  whatever objects you pass in that have a `call` method.
- **No servers for the shard controller or the key/value service.** The
  package has clerks only. Nothing here stores configurations or key/value
  data; `raftkv.node` provides only the replicated log they would be built on.
- **Persistence is in memory.** `Persister` keeps its bytes in memory and
  writes nothing to disk.