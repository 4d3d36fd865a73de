"""Client orchestration module for coordinating the analytics delivery flow."""

from .analytics_client import Analytics, create_default_client

__all__ = ["Analytics", "create_default_client"]
