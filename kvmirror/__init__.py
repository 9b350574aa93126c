"""
kvmirror

Mirrors a namespace of an etcd-style key/value store into local
consumers, pushes local config files into it, and ships a small
pooled database facade.
"""

from .services.config import Configurator, ConfigMirror, SnapshotDiff, compute_diff
from .services.database import Database

__version__ = "0.1.0"

__all__ = [
    "Configurator",
    "ConfigMirror",
    "Database",
    "SnapshotDiff",
    "compute_diff",
]
