"""Retry classification and backoff math for batch delivery."""

from __future__ import annotations

import errno
import random
import socket
import ssl
from http.client import HTTPException
from typing import Optional
from urllib.error import HTTPError, URLError

from ..core.errors import DeliveryError

MAX_BACKOFF_SECONDS = 30.0

# Network failures that retrying cannot fix
_TERMINAL_ERRNOS = {errno.ENETUNREACH}


def response_status(error: BaseException) -> Optional[int]:
    """HTTP status carried by a failed attempt, or None when no response arrived."""
    if isinstance(error, HTTPError):
        return error.code
    if isinstance(error, DeliveryError):
        return error.status_code
    return None


def is_network_error(error: BaseException) -> bool:
    """True for connection-level failures where no response was received.

    Timeouts are not network errors: the request may have reached the server.
    DNS resolution, unreachable network and TLS failures are not retried either.
    """
    if isinstance(error, (HTTPError, DeliveryError)):
        return False
    if isinstance(error, URLError):
        reason = error.reason
        if isinstance(reason, BaseException):
            return is_network_error(reason)
        return True
    if isinstance(error, (TimeoutError, socket.timeout)):
        return False
    if isinstance(error, (socket.gaierror, ssl.SSLError)):
        return False
    if isinstance(error, OSError) and error.errno in _TERMINAL_ERRNOS:
        return False
    return isinstance(error, (ConnectionError, HTTPException, OSError))


def is_retryable(error: BaseException) -> bool:
    """Decide whether a failed delivery attempt should be retried.

    Rules, in order: network failures are retried; failures without a response
    that are not network failures are terminal; 5xx and 429 are retried;
    everything else is terminal.
    """
    if is_network_error(error):
        return True

    status = response_status(error)
    if status is None:
        return False

    if 500 <= status <= 599:
        return True

    if status == 429:
        return True

    return False


def backoff_delay(attempts: int) -> float:
    """Delay in seconds before a durable job's next attempt: ``min(30, 2**attempts)``."""
    return float(min(MAX_BACKOFF_SECONDS, 2**attempts))


def exponential_delay(retry_number: int) -> float:
    """Delay in seconds between direct-mode retries: 2^n * 100ms plus up to 20% jitter."""
    delay = (2**retry_number) * 0.1
    return delay + random.uniform(0, delay * 0.2)
