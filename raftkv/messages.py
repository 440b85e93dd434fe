"""Core Raft data types: roles, log entries, apply messages and RPC payloads."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

ELECTION_TIMEOUT = 0.5
"""Seconds without contact from a leader before a follower starts an election."""

HEARTBEAT_INTERVAL = 0.1
"""Seconds between rounds of AppendEntries sent by a leader."""

DEBUG = False
"""When true, :func:`dprintf` writes its messages to the ``raftkv`` logger."""

_logger = logging.getLogger("raftkv")


def dprintf(format, *args):
    """Log a printf-style debugging message when :data:`DEBUG` is enabled."""
    if DEBUG:
        _logger.debug(format, *args)


class RaftState(IntEnum):
    """The role a Raft peer currently plays."""

    FOLLOWER = 0
    CANDIDATE = 1
    LEADER = 2


@dataclass
class Entry:
    """One log entry: the term it was written in and the command it carries."""

    term: int
    command: Any = None


@dataclass
class ApplyMsg:
    """A message delivered to the service: either a committed command or a snapshot."""

    command_valid: bool = False
    command: Any = None
    command_index: int = 0

    snapshot_valid: bool = False
    snapshot: bytes = b""
    snapshot_term: int = 0
    snapshot_index: int = 0


@dataclass
class RequestVoteArgs:
    """Arguments of the RequestVote RPC."""

    term: int = 0
    candidate_id: int = 0
    last_log_index: int = 0
    last_log_term: int = 0


@dataclass
class RequestVoteReply:
    """Reply of the RequestVote RPC."""

    term: int = 0
    vote_granted: bool = False


@dataclass
class AppendEntriesArgs:
    """Arguments of the AppendEntries RPC."""

    term: int = 0
    leader_id: int = 0
    prev_log_index: int = 0
    prev_log_term: int = 0
    entries: list[Entry] = field(default_factory=list)
    leader_commit: int = 0


@dataclass
class AppendEntriesReply:
    """Reply of the AppendEntries RPC, with the fast-backup conflict hints."""

    term: int = 0
    success: bool = False
    x_term: int = 0
    x_index: int = 0
    x_len: int = 0


@dataclass
class InstallSnapshotArgs:
    """Arguments of the InstallSnapshot RPC."""

    term: int = 0
    leader_id: int = 0
    last_included_index: int = 0
    last_included_term: int = 0
    data: bytes = b""


@dataclass
class InstallSnapshotReply:
    """Reply of the InstallSnapshot RPC."""

    term: int = 0