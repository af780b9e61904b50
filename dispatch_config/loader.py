"""
Configuration Loader (``dispatch_config.loader``).

Responsibility
--------------
Loads a YAML configuration document and parses it into the frozen
``dispatch_config.schema`` dataclasses.  The single public entry point
for runtime config is ``dispatch_config.get_active_config()``.

Invariants enforced
-------------------
* Parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; no silent defaults for required fields (``config_id``,
  ``database.url``, a QR secret).
* The QR secret may be given indirectly through ``qr.secret_env``; the
  named environment variable is read here and nowhere else.
* ``compute_checksum`` is deterministic over the source document, so the
  same YAML always yields the same checksum.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Out-of-range values / no QR secret  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from dispatch_config.schema import (
    DatabaseSettings,
    DispatchSettings,
    InventorySettings,
    LoggingSettings,
    QRSettings,
    RetrySettings,
    SideEffectSettings,
    TaskSettings,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _positive(value: Any, name: str, *, allow_zero: bool = False) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number, got {value!r}")
    if value < 0 or (value == 0 and not allow_zero):
        raise ValueError(f"{name} must be {'>= 0' if allow_zero else '> 0'}, got {value!r}")
    return value


def parse_database(data: Mapping[str, Any]) -> DatabaseSettings:
    return DatabaseSettings(
        url=data["url"],
        echo=bool(data.get("echo", False)),
        pool_size=_positive(data.get("pool_size", 10), "database.pool_size"),
        max_overflow=_positive(data.get("max_overflow", 10), "database.max_overflow", allow_zero=True),
        pool_timeout=_positive(data.get("pool_timeout", 30), "database.pool_timeout"),
        sqlite_busy_timeout=float(
            _positive(data.get("sqlite_busy_timeout", 30.0), "database.sqlite_busy_timeout")
        ),
    )


def parse_retry(data: Mapping[str, Any]) -> RetrySettings:
    max_attempts = data.get("max_attempts", 3)
    if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1:
        raise ValueError(f"retry.max_attempts must be an integer >= 1, got {max_attempts!r}")
    return RetrySettings(
        max_attempts=max_attempts,
        base_delay=float(_positive(data.get("base_delay", 0.05), "retry.base_delay", allow_zero=True)),
        backoff_factor=float(_positive(data.get("backoff_factor", 2.0), "retry.backoff_factor")),
        max_delay=float(_positive(data.get("max_delay", 1.0), "retry.max_delay", allow_zero=True)),
    )


def parse_qr(data: Mapping[str, Any], environ: Mapping[str, str] | None = None) -> QRSettings:
    """
    Parse QR settings, resolving ``secret_env`` against ``environ``.

    The environment variable wins over an inline ``secret`` so that
    deployments can override the development value without editing YAML.
    """
    environ = os.environ if environ is None else environ
    secret_env = data.get("secret_env")
    secret = environ.get(secret_env) if secret_env else None
    if not secret:
        secret = data.get("secret")
    if not secret:
        source = f"environment variable {secret_env!r} or " if secret_env else ""
        raise ValueError(f"No QR secret configured: set {source}qr.secret")
    return QRSettings(
        secret=str(secret),
        secret_env=secret_env,
        require_verification=bool(data.get("require_verification", False)),
    )


def parse_inventory(data: Mapping[str, Any]) -> InventorySettings:
    return InventorySettings(
        default_reorder_point=int(
            _positive(data.get("default_reorder_point", 0), "inventory.default_reorder_point", allow_zero=True)
        ),
    )


def parse_tasks(data: Mapping[str, Any]) -> TaskSettings:
    return TaskSettings(
        bulk_chunk_size=int(_positive(data.get("bulk_chunk_size", 50), "tasks.bulk_chunk_size")),
    )


def parse_side_effects(data: Mapping[str, Any]) -> SideEffectSettings:
    return SideEffectSettings(
        max_workers=int(_positive(data.get("max_workers", 4), "side_effects.max_workers")),
        synchronous=bool(data.get("synchronous", False)),
    )


def parse_logging(data: Mapping[str, Any]) -> LoggingSettings:
    level = str(data.get("level", "INFO")).upper()
    if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        raise ValueError(f"logging.level must be a standard level name, got {level!r}")
    return LoggingSettings(level=level)


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def parse_settings(
    data: Mapping[str, Any],
    environ: Mapping[str, str] | None = None,
) -> DispatchSettings:
    """Parse a whole configuration document."""
    return DispatchSettings(
        config_id=data["config_id"],
        version=int(data.get("version", 1)),
        checksum=compute_checksum(dict(data)),
        database=parse_database(data["database"]),
        qr=parse_qr(data["qr"], environ),
        retry=parse_retry(data.get("retry") or {}),
        inventory=parse_inventory(data.get("inventory") or {}),
        tasks=parse_tasks(data.get("tasks") or {}),
        side_effects=parse_side_effects(data.get("side_effects") or {}),
        logging=parse_logging(data.get("logging") or {}),
    )


def load_settings(path: Path, environ: Mapping[str, str] | None = None) -> DispatchSettings:
    return parse_settings(load_yaml_file(path), environ)
