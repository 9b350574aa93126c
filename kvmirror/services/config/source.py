"""
Local Config Source

Loads key/value pairs from a YAML or JSON file, or from every such
file in a directory. Nested mappings are flattened with "." between
levels; values are stringified so they can be stored remotely.
"""

import json
from pathlib import Path
from typing import Any

import yaml

from ...common.exceptions import ConfigError
from ...common.logging_setup import get_service_logger

logger = get_service_logger("config.source")

SUPPORTED_SUFFIXES = (".yaml", ".yml", ".json")


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return json.dumps(value, sort_keys=True, default=str)


def flatten(data: dict[str, Any], prefix: str = "") -> dict[str, str]:
    """Flatten nested mappings into dotted keys with string values."""
    flat: dict[str, str] = {}
    for key, value in data.items():
        full_key = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict) and value:
            flat.update(flatten(value, full_key))
        else:
            flat[full_key] = _stringify(value)
    return flat


def _load_file(path: Path) -> dict[str, str]:
    suffix = path.suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        raise ConfigError(f"Unsupported config file type: {path.name}", path=str(path))

    try:
        with open(path, "r", encoding="utf-8") as f:
            if suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Error parsing {path.name}: {e}", path=str(path)) from e
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}", path=str(path)) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path.name} must contain a mapping", path=str(path))

    return flatten(data)


def load_all(path: str | Path) -> dict[str, str]:
    """
    Load every key/value pair from a file or directory.

    Args:
        path: A .yaml/.yml/.json file, or a directory of them

    Returns:
        Mapping of local key to string value

    Raises:
        ConfigError: path missing, unsupported, or unparsable
    """
    path = Path(path)

    if path.is_file():
        return _load_file(path)

    if path.is_dir():
        merged: dict[str, str] = {}
        files = sorted(
            p for p in path.iterdir()
            if p.is_file() and p.suffix.lower() in SUPPORTED_SUFFIXES
        )
        for file_path in files:
            # Later files override earlier ones
            merged.update(_load_file(file_path))
        logger.debug(
            f"Loaded {len(merged)} keys from {len(files)} files in {path}",
            extra={"path": str(path), "file_count": len(files)},
        )
        return merged

    raise ConfigError(f"Config source not found: {path}", path=str(path))
