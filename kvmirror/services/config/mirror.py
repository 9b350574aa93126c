"""
Local Config Mirror

Keeps the current key/value state of a watched namespace in memory,
optionally persisted to a JSON cache file for offline start.
"""

import inspect
import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from ...common.exceptions import ConfigError
from ...common.logging_setup import get_service_logger
from ...kv.snapshot import Snapshot, make_snapshot
from .events import ChangeEvent, DeleteEvent, PutEvent

logger = get_service_logger("config.mirror")

# Called with (key, new value or None on delete)
KeyCallback = Callable[[str, str | None], Any]


class ConfigMirror:
    """
    Event consumer holding the mirrored namespace.

    Usable directly as the dispatcher passed to Configurator.listen().
    """

    def __init__(self, cache_path: str | Path | None = None):
        self.cache_path = Path(cache_path) if cache_path else None
        self._values: dict[str, str] = {}
        self._callbacks: dict[str, list[KeyCallback]] = {}
        self._event_count = 0
        self._updated_at: datetime | None = None

    def __len__(self) -> int:
        return len(self._values)

    def __contains__(self, key: str) -> bool:
        return key in self._values

    def get(self, key: str, default: str | None = None) -> str | None:
        return self._values.get(key, default)

    def snapshot(self) -> Snapshot:
        return make_snapshot(self._values)

    def on_change(self, key: str, callback: KeyCallback) -> None:
        """Register a callback for changes to one key"""
        self._callbacks.setdefault(key, []).append(callback)

    async def dispatch(self, event: ChangeEvent) -> None:
        if isinstance(event, PutEvent):
            if self._values.get(event.key) == event.value:
                return
            self._values[event.key] = event.value
            new_value: str | None = event.value
        elif isinstance(event, DeleteEvent):
            if event.key not in self._values:
                return
            del self._values[event.key]
            new_value = None
        else:
            raise TypeError(f"Unsupported event: {event!r}")

        self._event_count += 1
        self._updated_at = datetime.now(timezone.utc)

        for callback in self._callbacks.get(event.key, []):
            result = callback(event.key, new_value)
            if inspect.isawaitable(result):
                await result

        if self.cache_path:
            self.save_cache()

    async def prune(self, live: Snapshot) -> int:
        """
        Drop keys restored from cache that are gone remotely.

        The baseline only emits puts, so stale cached keys need this
        after listening starts.
        """
        stale = [key for key in self._values if key not in live]
        for key in stale:
            await self.dispatch(DeleteEvent(key))
        if stale:
            logger.info(f"Pruned {len(stale)} stale cached keys", extra={"stale_count": len(stale)})
        return len(stale)

    def save_cache(self) -> None:
        """Write current state: temp file, then atomic rename"""
        if not self.cache_path:
            return

        self.cache_path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "values": self._values,
            "_updated_at": (self._updated_at or datetime.now(timezone.utc)).isoformat(),
        }
        temp_path = self.cache_path.with_suffix(".tmp")
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        temp_path.replace(self.cache_path)

    def load_cache(self) -> int:
        """
        Restore state from the cache file.

        Returns:
            Number of keys restored (0 when there is no cache)
        """
        if not self.cache_path or not self.cache_path.exists():
            return 0

        try:
            with open(self.cache_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read mirror cache: {e}", path=str(self.cache_path)) from e

        values = data.get("values", {})
        if not isinstance(values, dict):
            raise ConfigError("Mirror cache has no values mapping", path=str(self.cache_path))

        self._values = {str(k): str(v) for k, v in values.items()}
        logger.info(
            f"Loaded {len(self._values)} keys from mirror cache",
            extra={"path": str(self.cache_path), "key_count": len(self._values)},
        )
        return len(self._values)

    def get_stats(self) -> dict:
        return {
            "key_count": len(self._values),
            "event_count": self._event_count,
            "updated_at": self._updated_at.isoformat() if self._updated_at else None,
            "cache_path": str(self.cache_path) if self.cache_path else None,
        }
