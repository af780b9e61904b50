"""
dispatch_config -- single public entrypoint for dispatch configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads configuration
    files or environment variables directly.

Architecture position:
    Configuration.  Sits beside ``dispatch_kernel`` and below
    ``dispatch_services``.  The kernel never imports from this package;
    the orchestrator hands it the plain values it needs (QR secret, retry
    bounds, chunk sizes).

Failure modes:
    - ``FileNotFoundError`` -- configuration file missing.
    - ``KeyError`` / ``ValueError`` -- missing or invalid settings.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``DISPATCH_CONFIG_TRACE`` log entry with the config id, version and
    checksum.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path

from dispatch_config.loader import load_settings
from dispatch_config.schema import DispatchSettings

_logger = logging.getLogger("dispatch_kernel.config")

_DEFAULT_CONFIG = Path(__file__).parent / "sets" / "default.yaml"


def get_active_config(
    config_path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> DispatchSettings:
    """
    The ONLY public configuration entrypoint.

    Args:
        config_path: YAML file to load.  Defaults to dispatch_config/sets/default.yaml.
        environ: Environment used to resolve ``qr.secret_env``.  Defaults
            to ``os.environ``.

    Raises:
        FileNotFoundError: If the file does not exist.
        KeyError / ValueError: If the document is incomplete or invalid.
    """
    path = Path(config_path) if config_path is not None else _DEFAULT_CONFIG
    settings = load_settings(path, environ)

    _logger.info(
        "DISPATCH_CONFIG_TRACE",
        extra={
            "trace_type": "DISPATCH_CONFIG_TRACE",
            "config_set_id": settings.config_id,
            "config_set_version": settings.version,
            "checksum": settings.checksum,
            "config_path": str(path),
            "qr_secret_env": settings.qr.secret_env,
        },
    )
    return settings


__all__ = ["DispatchSettings", "get_active_config"]
