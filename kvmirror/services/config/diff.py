"""
Snapshot Diff

Pure computation of the puts and deletes that turn one snapshot into
another. When a key is both a put and a delete candidate, it is
resolved as a put only.
"""

from dataclasses import dataclass, field

from ...kv.snapshot import Snapshot, make_snapshot
from .events import ChangeEvent, DeleteEvent, PutEvent


@dataclass(frozen=True)
class SnapshotDiff:
    """Result of comparing previous -> current"""
    puts: Snapshot = field(default_factory=make_snapshot)
    deletes: frozenset[str] = frozenset()

    @property
    def is_empty(self) -> bool:
        return not self.puts and not self.deletes

    def apply(self, snapshot: Snapshot) -> Snapshot:
        """Apply puts then deletes to snapshot."""
        result = dict(snapshot)
        result.update(self.puts)
        for key in self.deletes:
            result.pop(key, None)
        return make_snapshot(result)

    def events(self) -> list[ChangeEvent]:
        """All puts (sorted by key), then all deletes (sorted by key)."""
        events: list[ChangeEvent] = [PutEvent(key, self.puts[key]) for key in sorted(self.puts)]
        events.extend(DeleteEvent(key) for key in sorted(self.deletes))
        return events

    def to_dict(self) -> dict:
        return {"puts": dict(self.puts), "deletes": sorted(self.deletes)}


def compute_diff(previous: Snapshot, current: Snapshot) -> SnapshotDiff:
    """
    Diff two snapshots.

    Args:
        previous: Last known state
        current: New state

    Returns:
        SnapshotDiff whose puts hold every key of current that is new or
        changed, and whose deletes hold every key of previous missing from
        current. No key is ever in both.
    """
    puts = {
        key: value
        for key, value in current.items()
        if key not in previous or previous[key] != value
    }
    deletes = frozenset(key for key in previous if key not in current and key not in puts)
    return SnapshotDiff(puts=make_snapshot(puts), deletes=deletes)
