"""The Raft log with a compacted prefix covered by a snapshot."""

from __future__ import annotations

from raftkv.messages import Entry


class RaftLog:
    """A log addressed by global index.

    ``entries[0]`` is a placeholder standing for the last index covered by the
    snapshot (``snap_index``); its term is the snapshot's last included term.
    """

    def __init__(self, entries=None, snap_index=0):
        self.entries = list(entries) if entries is not None else [Entry(term=-1)]
        if not self.entries:
            raise ValueError("a raft log needs its placeholder entry")
        self.snap_index = snap_index

    def __len__(self):
        return len(self.entries) + self.snap_index

    def __repr__(self):
        return f"RaftLog(snap_index={self.snap_index}, entries={self.entries!r})"

    @property
    def snap_term(self):
        """Term of the last entry covered by the snapshot."""
        return self.entries[0].term

    @snap_term.setter
    def snap_term(self, term):
        self.entries[0].term = term

    def _offset(self, index):
        offset = index - self.snap_index
        if offset < 0 or offset >= len(self.entries):
            raise IndexError(f"log index {index} out of range "
                             f"[{self.snap_index}, {len(self) - 1}]")
        return offset

    def get(self, index):
        """Return the entry at a global index."""
        return self.entries[self._offset(index)]

    def entries_from(self, start):
        """Return a copy of the entries from a global index to the end."""
        offset = start - self.snap_index
        if offset < 0 or offset > len(self.entries):
            raise IndexError(f"log index {start} out of range")
        return list(self.entries[offset:])

    def append(self, *args):
        """Append entries to the end of the log."""
        self.entries.extend(args)

    def last_index(self):
        return len(self) - 1

    def last_term(self):
        return self.get(self.last_index()).term

    def last_index_of_term(self, term):
        """Return the last index after the snapshot holding ``term``, or -1."""
        for index in range(self.last_index(), self.snap_index, -1):
            if self.get(index).term == term:
                return index
        return -1

    def reconcile(self, my_idx, your_idx, entries):
        """Merge incoming entries into the log.

        Walks the local log from ``my_idx`` alongside ``entries`` from
        ``your_idx``; on the first term conflict the local log is cut there.
        Whatever incoming entries remain are then appended.
        """
        while my_idx < len(self) and your_idx < len(entries):
            if self.get(my_idx).term != entries[your_idx].term:
                del self.entries[my_idx - self.snap_index:]
                break
            my_idx += 1
            your_idx += 1
        self.entries.extend(entries[your_idx:])

    def compact(self, index):
        """Drop everything up to and including ``index`` after a local snapshot.

        Returns False when ``index`` is already covered by the snapshot.
        """
        if index <= self.snap_index:
            return False
        snap_term = self.get(index).term
        tail = self.entries[index - self.snap_index + 1:]
        self.entries = [Entry(snap_term), *tail]
        self.snap_index = index
        return True

    def install(self, last_included_index, last_included_term):
        """Adopt a snapshot received from a leader, keeping any later entries.

        Returns False when the snapshot is not newer than the current one.
        """
        if last_included_index <= self.snap_index:
            return False
        new_entries = [Entry(last_included_term)]
        if last_included_index < self.last_index():
            new_entries.extend(self.entries_from(last_included_index + 1))
        self.entries = new_entries
        self.snap_index = last_included_index
        return True