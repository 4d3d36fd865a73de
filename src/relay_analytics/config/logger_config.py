"""Logger configuration for the analytics client."""

from typing import Optional

from loguru import logger

from .settings import LoggingConfig


def setup_logging(config: Optional[LoggingConfig] = None) -> None:
    """Configure loguru logger for console and file output.

    Sets up structured logging with:
    - Console output with colored output
    - File output with rotation and retention based on settings
    - Configurable log level and formats from settings
    """
    config = config or LoggingConfig()

    # Remove default loguru handler
    logger.remove()

    if config.log_to_console:
        logger.add(
            sink=lambda msg: print(msg, end=""),
            format=config.console_format,
            level=config.log_level,
            colorize=True,
        )

    if config.log_to_file:
        config.log_file_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            sink=str(config.log_file_path),
            format=config.file_format,
            level=config.log_level,
            rotation=config.log_rotation,
            retention=config.log_retention,
            compression="gz",  # Compress rotated logs
            enqueue=True,  # Thread-safe logging
        )

        logger.info(f"File logging enabled: {config.log_file_path}")
        logger.info(f"Log level: {config.log_level}")
