"""HTTP dispatcher for transmitting batches to the ingestion endpoint.

This module builds the ingestion request for a batch, performs delivery
attempts over HTTP and resolves the completion callbacks of the batch's
messages with the outcome.
"""

from __future__ import annotations

import base64
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional
from urllib.error import HTTPError
from urllib.request import Request, urlopen

from loguru import logger

from ..core.errors import DeliveryError, TerminalDeliveryError, TransientDeliveryError
from ..core.events import Batch, DispatchRequest, resolve_callbacks
from ..core.normalizer import LIBRARY_NAME, LIBRARY_VERSION
from ..core.utils import is_browser_hosted, to_json
from .retry import exponential_delay, is_retryable, response_status

Opener = Callable[..., Any]


def to_delivery_error(error: BaseException, retryable: bool) -> DeliveryError:
    """Classify a raw delivery failure as transient or terminal."""
    status = response_status(error)
    if isinstance(error, HTTPError):
        message = str(error.reason)
    else:
        message = str(error) or type(error).__name__

    if retryable:
        return TransientDeliveryError(message, status_code=status)
    return TerminalDeliveryError(message, status_code=status)


@dataclass
class SenderConfig:
    """Configuration for the dispatcher."""

    host: str = ""  # Data plane URL the batches are posted to
    write_key: str = ""  # Basic-auth username

    # HTTP settings
    timeout_ms: Optional[float] = None  # Per-request timeout, None for no timeout
    max_retries: int = 3  # Re-attempts of a retryable failure in direct mode

    # Client identification
    library_name: str = LIBRARY_NAME
    library_version: str = LIBRARY_VERSION

    def __post_init__(self):
        self.host = self.host.rstrip("/")


class Dispatcher:
    """Delivers batches to the ingestion API."""

    def __init__(
        self,
        config: SenderConfig,
        opener: Optional[Opener] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the dispatcher.

        Args:
            config: Dispatcher configuration
            opener: Callable performing the HTTP request, ``urlopen`` by default
            sleep: Used to wait between direct-mode retries
        """
        self.config = config
        self._opener = opener or urlopen
        self._sleep = sleep

        # Statistics, shared by the flush and durable worker threads
        self._stats_lock = threading.Lock()
        self._total_batches_sent = 0
        self._total_batches_failed = 0
        self._total_events_sent = 0
        self._total_attempts = 0
        self._last_successful_send: Optional[datetime] = None
        self._last_error: Optional[str] = None

    def build_request(self, batch: Batch) -> DispatchRequest:
        """Build the ingestion request for a batch."""
        headers = {"Content-Type": "application/json"}
        # Browsers refuse to let scripts set the user agent.
        if not is_browser_hosted():
            headers["User-Agent"] = f"{self.config.library_name}/{self.config.library_version}"

        return DispatchRequest(
            url=self.config.host,
            write_key=self.config.write_key,
            body=batch.to_payload(),
            headers=headers,
            timeout_ms=self.config.timeout_ms,
        )

    def dispatch(self, batch: Batch) -> Optional[DeliveryError]:
        """Deliver a batch and resolve its callbacks with the outcome.

        Args:
            batch: Batch to deliver

        Returns:
            The delivery error handed to the callbacks, None on success
        """
        error = self.deliver(self.build_request(batch))
        resolve_callbacks(batch.callbacks, error)
        return error

    def deliver(self, request: DispatchRequest) -> Optional[DeliveryError]:
        """Send a request, retrying retryable failures with exponential delay.

        Args:
            request: Request to send

        Returns:
            None on success, otherwise the classified delivery error
        """
        retry_number = 0

        while True:
            error = self.attempt(request)
            if error is None:
                return None

            retryable = is_retryable(error)
            if not retryable or retry_number >= self.config.max_retries:
                delivery_error = to_delivery_error(error, retryable)
                logger.error(f"Failed to send batch of {request.message_count()} events: {delivery_error}")
                return delivery_error

            retry_number += 1
            delay = exponential_delay(retry_number)
            logger.warning(f"Send attempt {retry_number} failed: {error}. Retrying in {delay:.2f}s...")
            self._sleep(delay)

    def attempt(self, request: DispatchRequest) -> Optional[BaseException]:
        """Perform one physical send.

        Returns:
            None on success, otherwise the raw failure
        """
        request.refresh_sent_at()
        with self._stats_lock:
            self._total_attempts += 1
        start_time = time.time()

        try:
            self._send_request(request)
        except Exception as e:
            with self._stats_lock:
                self._total_batches_failed += 1
                self._last_error = str(e)
            return e

        with self._stats_lock:
            self._total_batches_sent += 1
            self._total_events_sent += request.message_count()
            self._last_successful_send = datetime.now()
            self._last_error = None
        logger.info(f"Successfully sent batch with {request.message_count()} events in {time.time() - start_time:.2f}s")
        return None

    def get_stats(self) -> Dict[str, Any]:
        """Get dispatcher statistics."""
        with self._stats_lock:
            return {
                "total_batches_sent": self._total_batches_sent,
                "total_batches_failed": self._total_batches_failed,
                "total_events_sent": self._total_events_sent,
                "total_attempts": self._total_attempts,
                "success_rate": self._total_batches_sent / max(1, self._total_attempts),
                "last_successful_send": self._last_successful_send.isoformat() if self._last_successful_send else None,
                "last_error": self._last_error,
            }

    def _send_request(self, request: DispatchRequest) -> None:
        credentials = base64.b64encode(f"{request.write_key}:".encode("utf-8")).decode("ascii")
        req = Request(
            request.url,
            data=to_json(request.body).encode("utf-8"),
            headers={**request.headers, "Authorization": f"Basic {credentials}"},
            method=request.method,
        )

        kwargs = {}
        if request.timeout_ms:
            kwargs["timeout"] = request.timeout_ms / 1000.0

        with self._opener(req, **kwargs) as response:
            status = getattr(response, "status", 200)
            if not 200 <= status < 300:
                raise DeliveryError(str(getattr(response, "reason", "") or f"HTTP {status}"), status_code=status)
            logger.debug(f"Successful response: {status}")
