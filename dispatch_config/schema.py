"""
DispatchSettings schema.

Frozen dataclasses that YAML configuration is parsed into by the loader.
Every runtime component receives one of these (or a sub-section of one);
nothing reads YAML or the environment on its own.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class DatabaseSettings:
    """Engine parameters passed to ``dispatch_kernel.db.engine.build_engine``."""

    url: str
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 10
    pool_timeout: int = 30
    sqlite_busy_timeout: float = 30.0


@dataclass(frozen=True)
class RetrySettings:
    """
    Bounded retry for optimistic-version conflicts.

    Delay before attempt n (n >= 2) is
    min(base_delay * backoff_factor ** (n - 2), max_delay) seconds.
    """

    max_attempts: int = 3
    base_delay: float = 0.05
    backoff_factor: float = 2.0
    max_delay: float = 1.0

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before ``attempt`` (1-based); zero before the first."""
        if attempt <= 1:
            return 0.0
        return min(self.base_delay * self.backoff_factor ** (attempt - 2), self.max_delay)


@dataclass(frozen=True)
class QRSettings:
    """
    QR token signing.

    ``secret`` is already resolved by the loader (possibly from the
    environment variable named by ``secret_env``).
    """

    secret: str = field(repr=False)
    secret_env: str | None = None
    require_verification: bool = False

    @property
    def secret_bytes(self) -> bytes:
        return self.secret.encode("utf-8")


@dataclass(frozen=True)
class InventorySettings:
    default_reorder_point: int = 0


@dataclass(frozen=True)
class TaskSettings:
    bulk_chunk_size: int = 50


@dataclass(frozen=True)
class SideEffectSettings:
    """Post-commit side-effect dispatcher (event publication, photo upload)."""

    max_workers: int = 4
    synchronous: bool = False


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"


@dataclass(frozen=True)
class DispatchSettings:
    """
    Complete runtime configuration.

    Attributes:
        config_id: Identifier of the configuration set (e.g. "default").
        version: Configuration version number.
        checksum: SHA-256 of the canonical source document.
    """

    config_id: str
    version: int
    checksum: str
    database: DatabaseSettings
    qr: QRSettings
    retry: RetrySettings = field(default_factory=RetrySettings)
    inventory: InventorySettings = field(default_factory=InventorySettings)
    tasks: TaskSettings = field(default_factory=TaskSettings)
    side_effects: SideEffectSettings = field(default_factory=SideEffectSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
