"""
Snapshot Type

A Snapshot is a point-in-time mapping of fully-qualified keys to
values. Snapshots are read-only once captured.
"""

from types import MappingProxyType
from typing import Iterable, Mapping

Snapshot = Mapping[str, str]

EMPTY_SNAPSHOT: Snapshot = MappingProxyType({})


def make_snapshot(items: Mapping[str, str] | Iterable[tuple[str, str]] = ()) -> Snapshot:
    """Capture a read-only snapshot over a private copy of items."""
    return MappingProxyType(dict(items))


def filter_namespace(snapshot: Snapshot, namespace: str) -> tuple[Snapshot, list[str]]:
    """
    Keep only keys under namespace.

    Returns:
        Tuple of (filtered snapshot, rejected keys)
    """
    rejected = [key for key in snapshot if not key.startswith(namespace)]
    if not rejected:
        return snapshot, []
    return make_snapshot((k, v) for k, v in snapshot.items() if k.startswith(namespace)), rejected
