"""
Configurator

Engine facade over one namespace of the key-value store:
- get / all: read the remote namespace
- listen: mirror the namespace into a dispatcher (baseline + polling)
- sync: push a local config source into the namespace, local wins
- close: stop listening and release the client
"""

import time
from pathlib import Path

from ...common.config import AppConfig, EtcdSettings, WatchSettings
from ...common.exceptions import AlreadyActiveError
from ...common.logging_setup import get_service_logger, log_sync_result
from ...kv.client import EtcdClient, KVClient
from ...kv.snapshot import Snapshot, filter_namespace, make_snapshot
from .diff import SnapshotDiff, compute_diff
from .events import EventDispatcher
from .source import load_all
from .watcher import Watcher, WatchState

logger = get_service_logger("config.configurator")


class Configurator:
    """
    Config synchronization engine for one namespace.

    At most one watcher is active per Configurator.
    """

    def __init__(self, client: KVClient, settings: WatchSettings | None = None):
        self.client = client
        self.settings = settings or WatchSettings()
        self._watcher: Watcher | None = None

    @classmethod
    async def create(
        cls,
        etcd: EtcdSettings,
        settings: WatchSettings | None = None,
    ) -> "Configurator":
        """Build an etcd-backed Configurator and authenticate it."""
        client = EtcdClient(etcd.url, timeout=etcd.timeout)
        try:
            await client.authenticate(etcd.user, etcd.password)
        except Exception:
            await client.close()
            raise
        return cls(client, settings)

    @classmethod
    async def from_config(cls, config: AppConfig) -> "Configurator":
        return await cls.create(config.etcd, config.watch)

    @property
    def namespace(self) -> str:
        return self.settings.namespace

    @property
    def watcher(self) -> Watcher | None:
        return self._watcher

    @property
    def is_listening(self) -> bool:
        return self._watcher is not None and self._watcher.is_running

    async def get(self, key: str, default: str = "") -> str:
        """Point lookup; default when the key is absent."""
        value = await self.client.get(key)
        if value is None:
            return default
        return value

    async def all(self) -> Snapshot:
        """Current remote snapshot of the namespace."""
        snapshot = await self.client.get_keys_with_prefix(self.namespace)
        snapshot, rejected = filter_namespace(snapshot, self.namespace)
        if rejected:
            logger.warning(
                f"Dropped {len(rejected)} keys outside {self.namespace}",
                extra={"namespace": self.namespace},
            )
        return snapshot

    async def listen(self, dispatcher: EventDispatcher) -> Watcher:
        """
        Start mirroring the namespace into dispatcher.

        Raises:
            AlreadyActiveError: already listening, or still starting
            RemoteUnavailableError: baseline scan failed
        """
        if self._watcher is not None and self._watcher.state != WatchState.STOPPED:
            raise AlreadyActiveError(self.namespace)

        watcher = Watcher(self.client, self.namespace, dispatcher, self.settings)
        self._watcher = watcher
        try:
            await watcher.start()
        except Exception:
            if self._watcher is watcher:
                self._watcher = None
            raise
        return watcher

    def load_local(self, path: str | Path) -> Snapshot:
        """Load a local source and namespace its keys."""
        return make_snapshot(
            (f"{self.namespace}{key}", value) for key, value in load_all(path).items()
        )

    async def sync(self, path: str | Path) -> SnapshotDiff:
        """
        Make the remote namespace match a local config source.

        Not transactional: the first failed write propagates and leaves
        earlier writes in place. Re-running is safe, the diff is
        recomputed from current state.

        Returns:
            The diff that was applied
        """
        start = time.time()

        local = self.load_local(path)
        remote = await self.all()
        diff = compute_diff(remote, local)

        for key in sorted(diff.puts):
            await self.client.put(key, diff.puts[key])

        delete_keys = sorted(key for key in diff.deletes if key not in diff.puts)
        for key in delete_keys:
            await self.client.delete(key)

        log_sync_result(
            logger,
            self.namespace,
            len(diff.puts),
            len(delete_keys),
            (time.time() - start) * 1000,
        )

        # Let local listeners see the change now rather than next interval
        if not diff.is_empty and self.is_listening:
            await self._watcher.trigger()

        return diff

    async def close(self) -> None:
        """Stop listening and close the client"""
        if self._watcher is not None:
            await self._watcher.stop()
        await self.client.close()
