"""Tests for the Configurator (get/all/listen/sync)."""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest
import yaml

from kvmirror.common.config import AppConfig, EtcdSettings
from kvmirror.common.exceptions import AlreadyActiveError, ConfigError, RemoteUnavailableError
from kvmirror.kv.client import EtcdClient, InMemoryKVClient
from kvmirror.services.config.configurator import Configurator
from kvmirror.services.config.events import DeleteEvent, ListenerDispatcher, PutEvent
from kvmirror.services.config.watcher import Watcher

from conftest import NAMESPACE, FailingKVClient, RecordingDispatcher


@pytest.fixture
def configurator(kv_client, watch_settings):
    return Configurator(kv_client, watch_settings)


@pytest.fixture
def source_file(tmp_path):
    """Local source with two top-level keys and one nested key."""
    path = tmp_path / "app.yaml"
    path.write_text(yaml.safe_dump({"a": "1", "c": "3", "db": {"host": "localhost"}}))
    return path


class TestConfiguratorReads:
    """Tests for get() and all()."""

    @pytest.mark.asyncio
    async def test_get_existing_key(self, configurator):
        """Test get returns the stored value."""
        assert await configurator.get("ns/a") == "1"

    @pytest.mark.asyncio
    async def test_get_missing_key_returns_default(self, configurator):
        """Test get falls back to the default."""
        assert await configurator.get("ns/missing") == ""
        assert await configurator.get("ns/missing", "fallback") == "fallback"

    @pytest.mark.asyncio
    async def test_all_filters_namespace(self, configurator):
        """Test all() only returns keys under the namespace."""
        snapshot = await configurator.all()

        assert dict(snapshot) == {"ns/a": "1", "ns/b": "2"}

    @pytest.mark.asyncio
    async def test_remote_failure_propagates(self, configurator, kv_client):
        """Test a failing scan surfaces as RemoteUnavailableError."""
        kv_client.fail_scans = True

        with pytest.raises(RemoteUnavailableError):
            await configurator.all()


class TestConfiguratorListen:
    """Tests for listen()."""

    @pytest.mark.asyncio
    async def test_listen_emits_baseline(self, configurator):
        """Test listen() delivers the baseline to the dispatcher."""
        events = []
        listeners = ListenerDispatcher()
        listeners.subscribe(events.append)

        await configurator.listen(listeners)
        try:
            assert configurator.is_listening
            assert events == [PutEvent("ns/a", "1"), PutEvent("ns/b", "2")]
        finally:
            await configurator.close()

    @pytest.mark.asyncio
    async def test_listen_twice_raises(self, configurator, dispatcher):
        """Test a second listen() while running raises AlreadyActiveError."""
        await configurator.listen(dispatcher)
        try:
            with pytest.raises(AlreadyActiveError):
                await configurator.listen(dispatcher)
        finally:
            await configurator.close()

    @pytest.mark.asyncio
    async def test_concurrent_listen_starts_one_watcher(self, watch_settings):
        """Test a listen() arriving during another's baseline is refused."""
        class SlowClient(FailingKVClient):
            async def get_keys_with_prefix(self, prefix):
                await asyncio.sleep(0.05)
                return await super().get_keys_with_prefix(prefix)

        configurator = Configurator(SlowClient({"ns/a": "1"}), watch_settings)
        first, second = RecordingDispatcher(), RecordingDispatcher()

        results = await asyncio.gather(
            configurator.listen(first),
            configurator.listen(second),
            return_exceptions=True,
        )
        try:
            watchers = [r for r in results if isinstance(r, Watcher)]
            errors = [r for r in results if isinstance(r, AlreadyActiveError)]
            assert len(watchers) == 1
            assert len(errors) == 1
            assert configurator.watcher is watchers[0]
            assert configurator.watcher.is_running
            assert second.events == []
        finally:
            await configurator.close()

    @pytest.mark.asyncio
    async def test_listen_again_after_stop(self, configurator, dispatcher):
        """Test a stopped watcher can be replaced by a new listen()."""
        first = await configurator.listen(dispatcher)
        await first.stop()

        second = await configurator.listen(dispatcher)
        try:
            assert second is not first
            assert second.is_running
        finally:
            await configurator.close()

    @pytest.mark.asyncio
    async def test_failed_listen_is_not_listening(self, configurator, kv_client, dispatcher):
        """Test a failed baseline leaves the configurator idle."""
        kv_client.fail_scans = True

        with pytest.raises(RemoteUnavailableError):
            await configurator.listen(dispatcher)

        assert configurator.watcher is None
        assert not configurator.is_listening


class TestConfiguratorSync:
    """Tests for sync()."""

    @pytest.mark.asyncio
    async def test_sync_puts_and_deletes(self, configurator, kv_client, source_file):
        """Test sync makes the namespace match the local source."""
        diff = await configurator.sync(source_file)

        assert dict(diff.puts) == {"ns/c": "3", "ns/db.host": "localhost"}
        assert diff.deletes == frozenset({"ns/b"})
        assert kv_client.data == {
            "ns/a": "1",
            "ns/c": "3",
            "ns/db.host": "localhost",
            "other/x": "9",
        }

    @pytest.mark.asyncio
    async def test_sync_is_idempotent(self, configurator, source_file):
        """Test a second sync of the same source changes nothing."""
        await configurator.sync(source_file)

        diff = await configurator.sync(source_file)

        assert diff.is_empty

    @pytest.mark.asyncio
    async def test_sync_notifies_listeners(self, configurator, dispatcher, source_file):
        """Test listeners see sync changes before sync returns."""
        await configurator.listen(dispatcher)
        dispatcher.events.clear()
        try:
            await configurator.sync(source_file)
        finally:
            await configurator.close()

        assert dispatcher.events == [
            PutEvent("ns/c", "3"),
            PutEvent("ns/db.host", "localhost"),
            DeleteEvent("ns/b"),
        ]

    @pytest.mark.asyncio
    async def test_noop_sync_skips_tick(self, kv_client, watch_settings, dispatcher, tmp_path):
        """Test an empty diff does not trigger an extra tick."""
        path = tmp_path / "same.json"
        path.write_text(json.dumps({"a": "1", "b": "2"}))
        configurator = Configurator(kv_client, watch_settings)
        watcher = await configurator.listen(dispatcher)
        try:
            with patch.object(watcher, "trigger", new=AsyncMock()) as trigger:
                diff = await configurator.sync(path)
            assert diff.is_empty
            trigger.assert_not_awaited()
        finally:
            await configurator.close()

    @pytest.mark.asyncio
    async def test_sync_without_listener(self, configurator, source_file):
        """Test sync works when nobody is listening."""
        diff = await configurator.sync(source_file)

        assert not diff.is_empty
        assert configurator.watcher is None

    @pytest.mark.asyncio
    async def test_partial_failure_propagates(self, watch_settings, source_file):
        """Test the first failed write stops the sync and earlier writes stay."""

        class BrokenPut(InMemoryKVClient):
            async def put(self, key, value):
                if key == "ns/db.host":
                    raise RemoteUnavailableError("write refused", operation="put", key=key)
                await super().put(key, value)

        client = BrokenPut({"ns/a": "1", "ns/b": "2"})
        configurator = Configurator(client, watch_settings)

        with pytest.raises(RemoteUnavailableError):
            await configurator.sync(source_file)

        assert client.data["ns/c"] == "3"
        assert "ns/b" in client.data

    @pytest.mark.asyncio
    async def test_sync_missing_source(self, configurator, tmp_path):
        """Test a missing local source raises ConfigError before any write."""
        with pytest.raises(ConfigError):
            await configurator.sync(tmp_path / "nope.yaml")

    def test_load_local_namespaces_keys(self, configurator, source_file):
        """Test local keys are prefixed with the namespace."""
        snapshot = configurator.load_local(source_file)

        assert all(key.startswith(NAMESPACE) for key in snapshot)


class TestConfiguratorCreate:
    """Tests for building an etcd-backed Configurator."""

    @pytest.mark.asyncio
    async def test_create_authenticates(self):
        """Test create() authenticates with the configured user."""
        with patch.object(EtcdClient, "authenticate", new=AsyncMock(return_value="tok")) as auth:
            configurator = await Configurator.create(
                EtcdSettings(url="http://etcd:2379/v3", user="root", password="pw")
            )

        auth.assert_awaited_once_with("root", "pw")
        assert isinstance(configurator.client, EtcdClient)
        await configurator.close()

    @pytest.mark.asyncio
    async def test_create_closes_client_on_auth_failure(self):
        """Test a failed authentication does not leak the client."""
        failure = AsyncMock(side_effect=RemoteUnavailableError("down"))
        with patch.object(EtcdClient, "authenticate", new=failure), \
                patch.object(EtcdClient, "close", new=AsyncMock()) as close:
            with pytest.raises(RemoteUnavailableError):
                await Configurator.from_config(AppConfig())

        close.assert_awaited_once()
