"""
Config Engine

Mirrors a namespace of the remote key-value store into local
consumers and pushes local config sources into it.
"""

from .configurator import Configurator
from .diff import SnapshotDiff, compute_diff
from .events import (
    ChangeEvent,
    DeleteEvent,
    EventDispatcher,
    ListenerDispatcher,
    PutEvent,
    dispatch_event,
)
from .mirror import ConfigMirror
from .source import flatten, load_all
from .watcher import Watcher, WatchState

__all__ = [
    "Configurator",
    "SnapshotDiff",
    "compute_diff",
    "ChangeEvent",
    "DeleteEvent",
    "EventDispatcher",
    "ListenerDispatcher",
    "PutEvent",
    "dispatch_event",
    "ConfigMirror",
    "flatten",
    "load_all",
    "Watcher",
    "WatchState",
]
