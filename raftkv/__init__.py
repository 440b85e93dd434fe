"""Raft consensus with snapshots, and clerks for a shard controller and a sharded key/value service."""

__version__ = "0.1.0"
__all__ = ["messages", "persister", "log", "node", "shardctrler", "shardkv"]