"""
kvmirror command line

Usage:
    kvmirror watch [--config FILE]
    kvmirror sync PATH [--config FILE]
    kvmirror get KEY [--default VALUE]
    kvmirror dump
"""

import argparse
import asyncio
import json
import os
import sys

from .common.config import AppConfig, load_app_config
from .common.exceptions import ConfigError, KvMirrorError
from .common.logging_setup import get_service_logger, set_log_level
from .services.config.configurator import Configurator

logger = get_service_logger("main")


async def _cmd_watch(config: AppConfig, args: argparse.Namespace) -> int:
    # aiohttp is only needed by the long-running service
    from .services.config.service import ConfigWatchService

    service = ConfigWatchService(config)
    await service.run()
    return 0


async def _cmd_sync(config: AppConfig, args: argparse.Namespace) -> int:
    configurator = await Configurator.from_config(config)
    try:
        diff = await configurator.sync(args.path)
    finally:
        await configurator.close()
    print(json.dumps(diff.to_dict(), indent=2, sort_keys=True))
    return 0


async def _cmd_get(config: AppConfig, args: argparse.Namespace) -> int:
    configurator = await Configurator.from_config(config)
    try:
        value = await configurator.get(args.key, args.default)
    finally:
        await configurator.close()
    print(value)
    return 0


async def _cmd_dump(config: AppConfig, args: argparse.Namespace) -> int:
    configurator = await Configurator.from_config(config)
    try:
        snapshot = await configurator.all()
    finally:
        await configurator.close()
    print(json.dumps(dict(snapshot), indent=2, sort_keys=True))
    return 0


COMMANDS = {
    "watch": _cmd_watch,
    "sync": _cmd_sync,
    "get": _cmd_get,
    "dump": _cmd_dump,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kvmirror",
        description="Mirror and sync a key/value config namespace",
    )
    parser.add_argument(
        "--config", "-c",
        type=str,
        default=None,
        help="Path to configuration file (default: built-in defaults)"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (debug) logging"
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("watch", help="Run the config watch service")

    sync = sub.add_parser("sync", help="Sync a local config file or directory into the namespace")
    sync.add_argument("path", help="YAML/JSON file or directory of them")

    get = sub.add_parser("get", help="Read one key")
    get.add_argument("key", help="Fully-qualified key")
    get.add_argument("--default", default="", help="Printed when the key is absent")

    sub.add_parser("dump", help="Print the namespace snapshot as JSON")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    if args.verbose:
        # Loggers created later (lazily imported services) read the env
        os.environ["KVMIRROR_LOG_LEVEL"] = "DEBUG"
        set_log_level("DEBUG")

    try:
        config = load_app_config(args.config)
    except ConfigError as e:
        logger.error(str(e))
        return 1

    try:
        return asyncio.run(COMMANDS[args.command](config, args))
    except KvMirrorError as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        print("\nStopped by user")
        return 0


if __name__ == "__main__":
    sys.exit(main())
