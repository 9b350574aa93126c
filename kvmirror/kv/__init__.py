"""Remote key-value store access"""

from .client import KVClient, EtcdClient, InMemoryKVClient, prefix_range_end
from .snapshot import Snapshot, EMPTY_SNAPSHOT, make_snapshot, filter_namespace

__all__ = [
    "KVClient",
    "EtcdClient",
    "InMemoryKVClient",
    "prefix_range_end",
    "Snapshot",
    "EMPTY_SNAPSHOT",
    "make_snapshot",
    "filter_namespace",
]
