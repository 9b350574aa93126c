"""
Config Watch Service

Long-running process that mirrors one namespace:
- Restores the local mirror from its cache (offline start)
- Listens to the namespace (baseline, then polling)
- Serves a health endpoint and an on-demand sync trigger
- Shuts down cleanly on SIGTERM/SIGINT
"""

import asyncio
import signal
from datetime import datetime, timezone

from aiohttp import web

from ...common.config import AppConfig
from ...common.exceptions import ConfigError, KvMirrorError
from ...common.logging_setup import get_service_logger
from .configurator import Configurator
from .mirror import ConfigMirror

logger = get_service_logger("config.service")


class ConfigWatchService:
    """
    Config watch service.

    Endpoints:
        GET  /health - status, uptime, watcher and mirror stats
        POST /sync   - sync service.source_path into the namespace
    """

    def __init__(self, config: AppConfig, configurator: Configurator | None = None):
        self.config = config
        self.configurator = configurator
        self.mirror = ConfigMirror(config.service.mirror_path)

        self._start_time = datetime.now(timezone.utc)
        self._running = False
        self._shutdown_event = asyncio.Event()

        self._health_app: web.Application | None = None
        self._health_runner: web.AppRunner | None = None

    async def start(self) -> None:
        """Start mirroring and the health server"""
        logger.info("Starting Config Watch Service")

        try:
            self.mirror.load_cache()
        except ConfigError as e:
            logger.warning(f"Ignoring unreadable mirror cache: {e}")

        if self.configurator is None:
            self.configurator = await Configurator.from_config(self.config)

        watcher = await self.configurator.listen(self.mirror)
        await self.mirror.prune(watcher.last_known)

        await self._start_health_server()
        self._running = True

        logger.info(
            f"Config Watch Service started (namespace: {self.configurator.namespace})",
            extra={"namespace": self.configurator.namespace},
        )

    async def run(self) -> None:
        """Start, then block until a shutdown signal"""
        try:
            await self.start()
            self._setup_signal_handlers()
            await self._shutdown_event.wait()
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the watcher, health server and client"""
        if not self._running and self.configurator is None:
            return

        logger.info("Stopping Config Watch Service")
        self._running = False

        await self._stop_health_server()

        if self.configurator is not None:
            await self.configurator.close()

        logger.info("Config Watch Service stopped")

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown signal handlers"""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                signal.signal(sig, lambda s, f: self._handle_shutdown())

    def _handle_shutdown(self) -> None:
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_post("/sync", self._sync_handler)
        return app

    async def _start_health_server(self) -> None:
        """Start the health check HTTP server"""
        self._health_app = self.build_app()
        self._health_runner = web.AppRunner(self._health_app)
        await self._health_runner.setup()

        settings = self.config.service
        site = web.TCPSite(self._health_runner, settings.health_host, settings.health_port)
        await site.start()

        logger.info(f"Health server started on {settings.health_host}:{settings.health_port}")

    async def _stop_health_server(self) -> None:
        if self._health_runner:
            await self._health_runner.cleanup()
            self._health_runner = None

    async def _health_handler(self, request: web.Request) -> web.Response:
        uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        watcher = self.configurator.watcher if self.configurator else None
        healthy = self._running and watcher is not None and watcher.is_running

        return web.json_response(
            {
                "status": "healthy" if healthy else "unhealthy",
                "service": "config-watch",
                "uptime": int(uptime),
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "namespace": self.configurator.namespace if self.configurator else None,
                "watcher": watcher.stats() if watcher else None,
                "mirror": self.mirror.get_stats(),
            },
            status=200 if healthy else 503,
        )

    async def _sync_handler(self, request: web.Request) -> web.Response:
        source_path = self.config.service.source_path
        if not source_path:
            return web.json_response(
                {"success": False, "error": "service.source_path not configured"},
                status=400,
            )
        if self.configurator is None:
            return web.json_response({"success": False, "error": "not started"}, status=503)

        try:
            diff = await self.configurator.sync(source_path)
        except KvMirrorError as e:
            logger.error(f"Sync request failed: {e}")
            return web.json_response({"success": False, "error": str(e)}, status=502)

        return web.json_response({
            "success": True,
            "put_count": len(diff.puts),
            "delete_count": len(diff.deletes),
        })
