"""HTTP transport module for delivering batches to the ingestion API."""

from .http_sender import Dispatcher, SenderConfig
from .retry import backoff_delay, exponential_delay, is_network_error, is_retryable

__all__ = ["Dispatcher", "SenderConfig", "backoff_delay", "exponential_delay", "is_network_error", "is_retryable"]
