"""Configuration module for the relay analytics client."""

from .logger_config import setup_logging
from .settings import ClientConfig, JobOptions, LoggingConfig, PersistenceQueueConfig, StoreOptions

__all__ = ["ClientConfig", "JobOptions", "LoggingConfig", "PersistenceQueueConfig", "StoreOptions", "setup_logging"]
