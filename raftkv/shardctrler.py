"""Shard controller client: assigns shards to replication groups.

The controller keeps a numbered history of configurations. Configuration 0
has no groups and every shard assigned to group 0, the invalid group.

Controller servers are reached through objects with a ``call(method, args)``
method that returns the reply, or ``None`` when the RPC was not delivered.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

NSHARDS = 10
"""The number of shards."""

OK = "OK"

RETRY_INTERVAL = 0.1
"""Seconds to wait after every known server has been tried without success."""


def _unassigned_shards():
    return [0] * NSHARDS


@dataclass
class Config:
    """A configuration: which group serves each shard, and each group's servers."""

    num: int = 0
    shards: list[int] = field(default_factory=_unassigned_shards)
    groups: dict[int, list[str]] = field(default_factory=dict)

    def __post_init__(self):
        self.shards = list(self.shards)
        if len(self.shards) != NSHARDS:
            raise ValueError(f"a config assigns exactly {NSHARDS} shards, "
                             f"got {len(self.shards)}")


@dataclass
class JoinArgs:
    """Add groups: new GID -> list of server names."""

    servers: dict[int, list[str]] = field(default_factory=dict)


@dataclass
class LeaveArgs:
    """Remove the groups with these GIDs."""

    gids: list[int] = field(default_factory=list)


@dataclass
class MoveArgs:
    """Hand one shard over to the group ``gid``."""

    shard: int = 0
    gid: int = 0


@dataclass
class QueryArgs:
    """Fetch configuration ``num``, or the latest when ``num`` is -1."""

    num: int = -1


@dataclass
class Reply:
    """Reply to any controller RPC; ``config`` is filled in by Query."""

    wrong_leader: bool = False
    err: str = ""
    config: Config = field(default_factory=Config)


class Clerk:
    """Client of the replicated shard controller service."""

    def __init__(self, servers):
        self.servers = list(servers)

    def _call(self, method, args):
        """Try every server until one that is the leader answers."""
        while True:
            for server in self.servers:
                reply = server.call(method, args)
                if reply is not None and not reply.wrong_leader:
                    return reply
            time.sleep(RETRY_INTERVAL)

    def query(self, num):
        """Return configuration ``num``, or the latest when ``num`` is -1."""
        return self._call("ShardCtrler.Query", QueryArgs(num=num)).config

    def join(self, servers):
        """Add groups given as a mapping from GID to server names."""
        self._call("ShardCtrler.Join", JoinArgs(servers=dict(servers)))

    def leave(self, gids):
        """Remove the groups with the given GIDs."""
        self._call("ShardCtrler.Leave", LeaveArgs(gids=list(gids)))

    def move(self, shard, gid):
        """Assign ``shard`` to group ``gid``."""
        self._call("ShardCtrler.Move", MoveArgs(shard=shard, gid=gid))