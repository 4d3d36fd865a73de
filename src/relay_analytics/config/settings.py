"""Configuration management for the relay analytics client.

This module provides configuration dataclasses for the client, the durable
queue and logging, with environment variable overrides.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional, Union

from loguru import logger

from ..core.errors import QueueInitializationError
from ..core.utils import parse_duration_ms

DEFAULT_QUEUE_NAME = "relayEventsQueue"
DEFAULT_QUEUE_PREFIX = "relay"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _env_bool(name: str) -> Optional[bool]:
    value = os.getenv(name)
    if value is None:
        return None
    if value.strip().lower() in _TRUE_VALUES:
        return True
    if value.strip().lower() in _FALSE_VALUES:
        return False
    logger.warning(f"Invalid boolean for {name}: {value}")
    return None


@dataclass
class ClientConfig:
    """Configuration for batching and delivery."""

    # Batching
    flush_at: Optional[int] = 20  # Messages per batch and size trigger
    flush_interval_seconds: float = 20.0  # Periodic flush, 0 disables the timer
    max_internal_queue_size: int = 20000  # Buffer ceiling, extra messages are dropped

    # Delivery
    timeout: Union[int, float, str, None] = None  # Milliseconds, or a duration such as "10s"
    max_retries: int = 3  # Direct-mode re-attempts of retryable failures

    # Disable switch, immutable once the client is built
    enable: bool = True

    def __post_init__(self):
        """Apply environment variable overrides."""
        self._apply_env_overrides()
        self.flush_at = max(self.flush_at, 1) if self.flush_at is not None else 20

    def _apply_env_overrides(self):
        """Apply configuration overrides from environment variables."""
        if flush_at := os.getenv("RELAY_FLUSH_AT"):
            try:
                self.flush_at = int(flush_at)
            except ValueError:
                logger.warning(f"Invalid flush at: {flush_at}")

        if flush_interval := os.getenv("RELAY_FLUSH_INTERVAL"):
            try:
                self.flush_interval_seconds = float(flush_interval)
            except ValueError:
                logger.warning(f"Invalid flush interval: {flush_interval}")

        if max_queue_size := os.getenv("RELAY_MAX_QUEUE_SIZE"):
            try:
                self.max_internal_queue_size = int(max_queue_size)
            except ValueError:
                logger.warning(f"Invalid max queue size: {max_queue_size}")

        if max_retries := os.getenv("RELAY_MAX_RETRIES"):
            try:
                self.max_retries = int(max_retries)
            except ValueError:
                logger.warning(f"Invalid max retries: {max_retries}")

        if timeout := os.getenv("RELAY_TIMEOUT"):
            self.timeout = timeout

        enable = _env_bool("RELAY_ENABLE")
        if enable is not None:
            self.enable = enable

    @property
    def timeout_ms(self) -> Optional[float]:
        """Request timeout in milliseconds, None when disabled."""
        return parse_duration_ms(self.timeout)

    def validate(self) -> tuple[bool, list[str]]:
        """Validate the configuration.

        Returns:
            Tuple of (is_valid, error_messages)
        """
        errors = []

        if self.flush_interval_seconds < 0:
            errors.append("Flush interval must not be negative")

        if self.max_internal_queue_size <= 0:
            errors.append("Max internal queue size must be positive")

        if self.max_retries < 0:
            errors.append("Max retries must not be negative")

        try:
            self.timeout_ms
        except ValueError as e:
            errors.append(str(e))

        return len(errors) == 0, errors


@dataclass
class StoreOptions:
    """Connection parameters for the durable job store."""

    db_path: Optional[Path] = None  # SQLite database file
    timeout_seconds: float = 5.0  # Wait on a locked database
    enable_wal_mode: bool = True


@dataclass
class JobOptions:
    """Per-job options for the durable queue."""

    max_attempts: int = 10


@dataclass
class PersistenceQueueConfig:
    """Configuration for the durable queue."""

    queue_name: str = DEFAULT_QUEUE_NAME
    prefix: str = DEFAULT_QUEUE_PREFIX
    store_opts: Optional[StoreOptions] = None
    job_opts: JobOptions = field(default_factory=JobOptions)

    def __post_init__(self):
        """Apply environment variable overrides."""
        if db_path := os.getenv("RELAY_QUEUE_DB_PATH"):
            if self.store_opts is None:
                self.store_opts = StoreOptions(db_path=Path(db_path))
            else:
                self.store_opts = replace(self.store_opts, db_path=Path(db_path))

        if max_attempts := os.getenv("RELAY_QUEUE_MAX_ATTEMPTS"):
            try:
                self.job_opts = replace(self.job_opts, max_attempts=int(max_attempts))
            except ValueError:
                logger.warning(f"Invalid max attempts: {max_attempts}")

    @property
    def queue_key(self) -> str:
        return f"{self.prefix or DEFAULT_QUEUE_PREFIX}:{self.queue_name or DEFAULT_QUEUE_NAME}"

    def get_store_config(self):
        """Get configuration for the job store.

        Raises:
            QueueInitializationError: If the store connection parameters are missing
        """
        # Import here to avoid circular imports
        from ..durable.job_store import StoreConfig

        if self.store_opts is None or not self.store_opts.db_path:
            raise QueueInitializationError("Store connection parameters not present. Cannot make a persistent queue")

        return StoreConfig(
            db_path=Path(self.store_opts.db_path),
            queue_key=self.queue_key,
            timeout_seconds=self.store_opts.timeout_seconds,
            enable_wal_mode=self.store_opts.enable_wal_mode,
        )


@dataclass
class LoggingConfig:
    """Configuration for the loguru sinks."""

    log_level: str = "INFO"
    log_to_console: bool = True
    log_to_file: bool = False
    log_file_path: Path = field(default_factory=lambda: Path.cwd() / "logs" / "relay_analytics.log")
    log_rotation: str = "10 MB"
    log_retention: str = "7 days"
    console_format: str = "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
    file_format: str = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"

    def __post_init__(self):
        """Apply environment variable overrides."""
        if log_level := os.getenv("RELAY_LOG_LEVEL"):
            self.log_level = log_level.upper()

        if log_file := os.getenv("RELAY_LOG_FILE"):
            self.log_file_path = Path(log_file)
            self.log_to_file = True

        log_to_console = _env_bool("RELAY_LOG_TO_CONSOLE")
        if log_to_console is not None:
            self.log_to_console = log_to_console
