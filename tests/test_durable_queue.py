"""Tests for the durable queue adapter."""

import sqlite3
import threading

import pytest
from pydantic import ValidationError as PydanticValidationError

from conftest import FakeOpener, has_log, wait_until
from relay_analytics.config import JobOptions
from relay_analytics.core import Batch, DeliveryError, JobAbandonedError, QueueInvariantViolation, QueueItem, TerminalDeliveryError
from relay_analytics.durable import DurableQueueAdapter, JobData, JobState, SQLiteJobStore, StoreConfig
from relay_analytics.sender import Dispatcher, SenderConfig


def make_batch(name, callbacks=()):
    items = [QueueItem(message={"type": "track", "event": name, "userId": "user-1"}, callback=callback) for callback in callbacks or [lambda error: None]]
    return Batch.cut(items)


def make_adapter(job_store, opener, max_attempts=10, delay_fn=lambda attempts: 0):
    dispatcher = Dispatcher(SenderConfig(host="https://hosted.example.com/v1/batch", write_key="write-key"), opener=opener)
    return DurableQueueAdapter(job_store, dispatcher, JobOptions(max_attempts=max_attempts), delay_fn=delay_fn, poll_interval=0.05)


def job_data(name, attempts=0):
    return JobData(
        description=f"python-{name}",
        request={"url": "https://hosted.example.com/v1/batch", "write_key": "write-key", "body": {"batch": [{"event": name}], "sentAt": "x"}},
        attempts=attempts,
    ).model_dump()


def sent_events(opener):
    return [body["batch"][0]["event"] for body in opener.bodies]


def test_enqueued_batch_is_persisted_as_job(job_store):
    adapter = make_adapter(job_store, FakeOpener())

    job = adapter.enqueue_batch(make_batch("a"))

    data = JobData.model_validate(job.data)
    assert data.attempts == 0
    assert data.description.startswith("python-")
    assert data.request["body"]["batch"][0]["event"] == "a"
    assert job_store.counts()["waiting"] == 1
    assert adapter.get_stats()["pending_callbacks"] == 1


def test_successful_job_resolves_callbacks(job_store):
    opener = FakeOpener()
    adapter = make_adapter(job_store, opener)
    results = []
    adapter.enqueue_batch(make_batch("a", [results.append, results.append]))

    assert adapter.process_next() == JobState.DONE

    assert results == [None, None]
    assert opener.call_count == 1
    assert opener.requests[0].get_header("Authorization").startswith("Basic ")
    assert job_store.counts()["completed"] == 1
    assert adapter.process_next() is None


def test_retryable_failure_requeues_at_front(job_store):
    opener = FakeOpener([503])
    adapter = make_adapter(job_store, opener)
    results = []
    adapter.enqueue_batch(make_batch("a", [results.append]))
    adapter.enqueue_batch(make_batch("b"))

    assert adapter.process_next() == JobState.REQUEUED
    assert results == [], "Callbacks wait for the final outcome"

    counts = job_store.counts()
    assert counts["waiting"] == 2
    assert counts["completed"] == 1

    assert adapter.process_next() == JobState.DONE
    assert sent_events(opener) == ["a", "a"], "Retried job must be served before later jobs"
    assert results == [None]

    assert adapter.process_next() == JobState.DONE
    assert sent_events(opener) == ["a", "a", "b"]


def test_requeued_job_counts_attempts(job_store):
    adapter = make_adapter(job_store, FakeOpener([500, 500]))
    adapter.enqueue_batch(make_batch("a"))

    adapter.process_next()
    adapter.process_next()

    job = job_store.next_job()
    assert JobData.model_validate(job.data).attempts == 2


def test_backoff_uses_attempt_count(job_store):
    delays = []
    adapter = make_adapter(job_store, FakeOpener([500]), delay_fn=lambda attempts: delays.append(attempts) or 0)
    adapter.enqueue_batch(make_batch("a"))

    adapter.process_next()
    adapter.process_next()

    assert delays == [0, 1]


def test_terminal_failure_dead_letters_job(job_store):
    opener = FakeOpener([400])
    adapter = make_adapter(job_store, opener)
    results = []
    adapter.enqueue_batch(make_batch("a", [results.append]))

    assert adapter.process_next() == JobState.DONE

    assert isinstance(results[0], TerminalDeliveryError)
    assert results[0].status_code == 400
    assert job_store.counts()["failed"] == 1
    assert adapter.process_next() is None


def test_job_at_max_attempts_is_not_redelivered(job_store):
    opener = FakeOpener(default=503)
    adapter = make_adapter(job_store, opener, max_attempts=2)
    results = []
    adapter.enqueue_batch(make_batch("a", [results.append]))

    states = [adapter.process_next() for _ in range(3)]

    assert states == [JobState.REQUEUED, JobState.REQUEUED, JobState.FAILED]
    assert opener.call_count == 2
    assert len(results) == 1 and isinstance(results[0], JobAbandonedError)
    assert job_store.get_failed()[0].result.endswith("skipping further retries...")
    assert adapter.process_next() is None


def test_stored_job_beyond_ceiling_fails_without_sending(job_store):
    opener = FakeOpener()
    adapter = make_adapter(job_store, opener, max_attempts=3)
    job_store.add(job_data("old", attempts=3))

    assert adapter.process_next() == JobState.FAILED
    assert opener.call_count == 0


def test_unreadable_job_is_failed(job_store, log_records):
    adapter = make_adapter(job_store, FakeOpener())
    job_store.add({"description": "python-x", "request": {"url": "u"}, "code": "eval(1)"})

    assert adapter.process_next() == JobState.FAILED
    assert job_store.counts()["failed"] == 1
    assert has_log(log_records, "ERROR", "unreadable job")


def test_job_data_is_strict():
    with pytest.raises(PydanticValidationError):
        JobData.model_validate({**job_data("a"), "callback": "lambda: None"})

    with pytest.raises(PydanticValidationError):
        JobData.model_validate({**job_data("a"), "attempts": -1})


def test_job_states_are_processing_outcomes():
    assert [state.value for state in JobState] == ["pending", "done", "requeued", "failed"]


def test_recovery_without_active_jobs(job_store):
    job_store.add(job_data("a"))
    adapter = make_adapter(job_store, FakeOpener())

    adapter.recover()

    assert job_store.counts()["waiting"] == 1


def test_recovery_resets_single_active_job(job_store):
    job_store.add(job_data("stale", attempts=4))
    job_store.next_job()
    job_store.add(job_data("later"))
    opener = FakeOpener()
    adapter = make_adapter(job_store, opener)

    adapter.recover()

    assert job_store.get_active() == []
    assert adapter.process_next() == JobState.DONE
    assert sent_events(opener) == ["stale"], "Recovered job must be processed first"

    adapter.process_next()
    assert sent_events(opener) == ["stale", "later"]


def test_recovered_job_attempts_reset(job_store):
    job_store.add(job_data("stale", attempts=4))
    job_store.next_job()
    adapter = make_adapter(job_store, FakeOpener())

    adapter.recover()

    assert JobData.model_validate(job_store.next_job().data).attempts == 0


def test_recovery_with_multiple_active_jobs_fails(job_store):
    job_store.add(job_data("a"))
    job_store.add(job_data("b"))
    job_store.next_job()
    job_store.next_job()
    adapter = make_adapter(job_store, FakeOpener())

    with pytest.raises(QueueInvariantViolation):
        adapter.setup()

    assert not adapter.running, "No worker may start after a failed recovery"
    assert len(job_store.get_active()) == 2


def test_worker_delivers_jobs(job_store):
    opener = FakeOpener()
    adapter = make_adapter(job_store, opener)
    done = threading.Event()
    adapter.setup()

    try:
        adapter.enqueue_batch(make_batch("a", [lambda error: done.set()]))
        assert done.wait(5), "Worker did not deliver the job"
        assert adapter.running
    finally:
        adapter.close()

    assert not adapter.running
    assert sent_events(opener) == ["a"]


def test_close_interrupts_backoff_and_leaves_job_active(db_path):
    store = SQLiteJobStore(StoreConfig(db_path=db_path))
    opener = FakeOpener()
    adapter = make_adapter(store, opener, delay_fn=lambda attempts: 60)
    adapter.setup()
    adapter.enqueue_batch(make_batch("a"))

    assert wait_until(lambda: store.counts()["active"] == 1)
    adapter.close(timeout=5)

    assert not adapter.running
    assert opener.call_count == 0

    reopened = SQLiteJobStore(StoreConfig(db_path=db_path))
    assert len(reopened.get_active()) == 1, "Interrupted job is recovered on next start"


class RejectingStore(SQLiteJobStore):
    def add(self, data, lifo=False):
        raise OSError("disk full")


def test_store_failure_resolves_callbacks(db_path):
    adapter = make_adapter(RejectingStore(StoreConfig(db_path=db_path)), FakeOpener())
    results = []

    with pytest.raises(DeliveryError):
        adapter.enqueue_batch(make_batch("a", [results.append]))

    assert len(results) == 1 and isinstance(results[0], DeliveryError)
    assert "disk full" in str(results[0])
    assert adapter.get_stats()["pending_callbacks"] == 0


class LockedRequeueStore(SQLiteJobStore):
    def add(self, data, lifo=False):
        if lifo:
            raise sqlite3.OperationalError("database is locked")
        return super().add(data, lifo)


def test_requeue_failure_fails_job_and_resolves_callbacks(db_path, log_records):
    store = LockedRequeueStore(StoreConfig(db_path=db_path))
    adapter = make_adapter(store, FakeOpener([503]))
    results = []
    adapter.enqueue_batch(make_batch("a", [results.append]))

    assert adapter.process_next() == JobState.FAILED

    assert len(results) == 1 and isinstance(results[0], DeliveryError)
    assert "database is locked" in str(results[0])
    counts = store.counts()
    assert counts["active"] == 0, "Job must not stay active when it cannot be requeued"
    assert counts["failed"] == 1
    assert adapter.get_stats()["total_jobs_failed"] == 1
    assert has_log(log_records, "ERROR", "Failed to requeue job")


class UnwritableOutcomeStore(SQLiteJobStore):
    def complete(self, job_id, result=None):
        raise sqlite3.OperationalError("disk I/O error")


def test_unrecordable_outcome_removes_active_job(db_path, log_records):
    store = UnwritableOutcomeStore(StoreConfig(db_path=db_path))
    adapter = make_adapter(store, FakeOpener())
    results = []
    adapter.enqueue_batch(make_batch("a", [results.append]))

    assert adapter.process_next() == JobState.DONE

    assert results == [None]
    assert store.get_active() == []
    assert adapter.process_next() is None
    assert has_log(log_records, "ERROR", "Failed to record outcome of job")
