"""Shared fixtures: fake HTTP opener, loguru capture and temporary job stores."""

import json
import threading
import time
from pathlib import Path

import pytest
from loguru import logger

from relay_analytics.durable import SQLiteJobStore, StoreConfig


class FakeResponse:
    """Stand-in for the response object returned by ``urlopen``."""

    def __init__(self, status=200, reason="OK"):
        self.status = status
        self.reason = reason

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return False


class FakeOpener:
    """Records requests and replays scripted outcomes.

    Each outcome is a status code or an exception to raise; once the script is
    exhausted every request gets ``default``.
    """

    def __init__(self, outcomes=None, default=200):
        self.outcomes = list(outcomes or [])
        self.default = default
        self.requests = []
        self.timeouts = []
        self._lock = threading.Lock()

    def __call__(self, request, timeout=None):
        with self._lock:
            self.requests.append(request)
            self.timeouts.append(timeout)
            outcome = self.outcomes.pop(0) if self.outcomes else self.default

        if isinstance(outcome, BaseException):
            raise outcome
        return FakeResponse(outcome)

    @property
    def bodies(self):
        with self._lock:
            return [json.loads(request.data.decode("utf-8")) for request in self.requests]

    @property
    def call_count(self):
        with self._lock:
            return len(self.requests)

    def wait_for(self, count, timeout=5.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self.call_count >= count:
                return True
            time.sleep(0.01)
        return self.call_count >= count


def wait_until(predicate, timeout=5.0):
    """Poll ``predicate`` until it holds or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep RELAY_* variables of the host environment out of the tests."""
    for name in (
        "RELAY_FLUSH_AT",
        "RELAY_FLUSH_INTERVAL",
        "RELAY_MAX_QUEUE_SIZE",
        "RELAY_TIMEOUT",
        "RELAY_MAX_RETRIES",
        "RELAY_ENABLE",
        "RELAY_LOG_LEVEL",
        "RELAY_LOG_FILE",
        "RELAY_LOG_TO_CONSOLE",
        "RELAY_QUEUE_DB_PATH",
        "RELAY_QUEUE_MAX_ATTEMPTS",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def log_records():
    """Capture loguru records emitted during the test."""
    records = []
    handler_id = logger.add(lambda message: records.append(message.record), level="DEBUG")
    yield records
    logger.remove(handler_id)


@pytest.fixture
def opener():
    return FakeOpener()


@pytest.fixture
def db_path(tmp_path) -> Path:
    return tmp_path / "jobs" / "relay_jobs.db"


@pytest.fixture
def job_store(db_path):
    store = SQLiteJobStore(StoreConfig(db_path=db_path, queue_key="relay:testQueue"))
    yield store
    store.close()


def has_log(records, level, text):
    return any(record["level"].name == level and text in record["message"] for record in records)
