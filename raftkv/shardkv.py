"""Client of a sharded key/value service.

The client asks the shard controller which group serves a key's shard, then
talks to that group's servers. Group servers are reached through objects made
by ``make_end(server_name)``, each with a ``call(method, args)`` method that
returns the reply, or ``None`` when the RPC was not delivered.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum

from raftkv import shardctrler
from raftkv.shardctrler import NSHARDS, Config

RETRY_INTERVAL = 0.1
"""Seconds to wait before asking the controller for a fresh configuration."""


class Err(str, Enum):
    """Outcome codes of the key/value RPCs."""

    OK = "OK"
    NO_KEY = "ErrNoKey"
    WRONG_GROUP = "ErrWrongGroup"
    WRONG_LEADER = "ErrWrongLeader"


@dataclass
class PutAppendArgs:
    """Arguments of Put and Append; ``op`` is ``"Put"`` or ``"Append"``."""

    key: str = ""
    value: str = ""
    op: str = "Put"


@dataclass
class PutAppendReply:
    err: str = ""


@dataclass
class GetArgs:
    key: str = ""


@dataclass
class GetReply:
    err: str = ""
    value: str = ""


def key2shard(key):
    """Return the shard a key belongs to: its first byte modulo the shard count."""
    data = key.encode() if isinstance(key, str) else bytes(key)
    shard = data[0] if data else 0
    return shard % NSHARDS


class Clerk:
    """Client that routes each key to the group serving its shard."""

    def __init__(self, ctrlers, make_end):
        self.sm = shardctrler.Clerk(ctrlers)
        self.config = Config()
        self.make_end = make_end

    def _servers_for(self, key):
        gid = self.config.shards[key2shard(key)]
        return self.config.groups.get(gid)

    def _refresh(self):
        time.sleep(RETRY_INTERVAL)
        self.config = self.sm.query(-1)

    def get(self, key):
        """Return the value of ``key``, or ``""`` when it does not exist.

        Keeps trying for as long as it takes.
        """
        args = GetArgs(key=key)
        while True:
            for name in self._servers_for(key) or ():
                reply = self.make_end(name).call("ShardKV.Get", args)
                if reply is None:
                    continue
                if reply.err in (Err.OK, Err.NO_KEY):
                    return reply.value
                if reply.err == Err.WRONG_GROUP:
                    break
            self._refresh()

    def put_append(self, key, value, op):
        """Send a Put or Append, retrying until a server of the right group accepts it."""
        args = PutAppendArgs(key=key, value=value, op=op)
        while True:
            for name in self._servers_for(key) or ():
                reply = self.make_end(name).call("ShardKV.PutAppend", args)
                if reply is None:
                    continue
                if reply.err == Err.OK:
                    return
                if reply.err == Err.WRONG_GROUP:
                    break
            self._refresh()

    def put(self, key, value):
        self.put_append(key, value, "Put")

    def append(self, key, value):
        self.put_append(key, value, "Append")