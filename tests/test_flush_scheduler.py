"""Tests for the flush scheduler."""

import threading

from conftest import wait_until
from relay_analytics.batcher import FlushScheduler, FlushState, SchedulerConfig
from relay_analytics.core import QueueItem
from relay_analytics.queuer import InternalBuffer, QueueConfig


class RecordingHandler:
    def __init__(self, gate=None, error=None, raises=False):
        self.batches = []
        self.gate = gate
        self.error = error
        self.raises = raises

    def __call__(self, batch):
        if self.gate is not None:
            self.gate.wait(5)
        self.batches.append(batch)
        if self.raises:
            raise self.error
        return self.error

    @property
    def sizes(self):
        return [batch.size() for batch in self.batches]


def make_scheduler(handler, flush_at=3, interval=0.0, enable=True, max_size=100):
    buffer = InternalBuffer(QueueConfig(max_size=max_size))
    scheduler = FlushScheduler(buffer, handler, SchedulerConfig(flush_at=flush_at, flush_interval_seconds=interval, enable=enable))
    return buffer, scheduler


def submit(buffer, scheduler, n):
    buffer.enqueue(QueueItem(message={"type": "track", "event": f"event-{n}"}))
    scheduler.notify_enqueued()


def test_first_enqueue_flushes_immediately():
    handler = RecordingHandler()
    buffer, scheduler = make_scheduler(handler, flush_at=10)

    submit(buffer, scheduler, 0)

    assert scheduler.wait(5)
    assert handler.sizes == [1], "Cold start should flush the very first message"
    assert scheduler.get_stats()["timer_armed"] is False


def test_flush_at_triggers_one_full_batch_after_cold_start():
    handler = RecordingHandler()
    buffer, scheduler = make_scheduler(handler, flush_at=3)

    submit(buffer, scheduler, 0)
    assert scheduler.wait(5)

    for n in range(1, 4):
        submit(buffer, scheduler, n)
    assert scheduler.wait(5)

    assert handler.sizes == [1, 3]
    assert [message["event"] for message in handler.batches[1].messages] == ["event-1", "event-2", "event-3"]
    assert buffer.is_empty()


def test_batch_messages_are_stamped_with_sent_at():
    handler = RecordingHandler()
    buffer, scheduler = make_scheduler(handler)

    submit(buffer, scheduler, 0)
    assert scheduler.wait(5)

    batch = handler.batches[0]
    assert batch.messages[0]["sentAt"].endswith("Z")
    assert batch.to_payload()["batch"] == list(batch.messages)


def test_flush_while_running_is_noop():
    gate = threading.Event()
    handler = RecordingHandler(gate=gate)
    buffer, scheduler = make_scheduler(handler)
    buffer.enqueue(QueueItem(message={"event": "a"}))
    skipped = []

    assert scheduler.flush() is True
    assert scheduler.state == FlushState.RUNNING
    assert scheduler.flush(lambda error, batch: skipped.append(batch)) is False

    gate.set()
    assert scheduler.wait(5)
    assert scheduler.state == FlushState.IDLE
    assert skipped == [], "A rejected flush must not call its callback"
    assert scheduler.get_stats()["total_skipped"] == 1


def test_flush_callback_receives_batch():
    handler = RecordingHandler()
    buffer, scheduler = make_scheduler(handler)
    buffer.enqueue(QueueItem(message={"event": "a"}))
    results = []

    scheduler.flush(lambda error, batch: results.append((error, batch)))
    assert scheduler.wait(5)

    assert len(results) == 1
    error, batch = results[0]
    assert error is None
    assert batch.size() == 1


def test_handler_error_reaches_callback_and_state_resets():
    handler = RecordingHandler(error=RuntimeError("boom"), raises=True)
    buffer, scheduler = make_scheduler(handler)
    buffer.enqueue(QueueItem(message={"event": "a"}))
    results = []

    scheduler.flush(lambda error, batch: results.append(error))
    assert scheduler.wait(5)

    assert isinstance(results[0], RuntimeError)
    assert scheduler.state == FlushState.IDLE
    assert scheduler.flush() is True, "Scheduler must accept new cycles after a failure"


def test_returned_delivery_error_reaches_callback():
    error = ValueError("rejected")
    buffer, scheduler = make_scheduler(RecordingHandler(error=error))
    buffer.enqueue(QueueItem(message={"event": "a"}))
    results = []

    scheduler.flush(lambda err, batch: results.append(err))
    assert scheduler.wait(5)

    assert results == [error]


def test_empty_or_disabled_flush_resets_state():
    handler = RecordingHandler()
    _, scheduler = make_scheduler(handler)
    results = []

    assert scheduler.flush(lambda error, batch: results.append((error, batch))) is True
    assert scheduler.state == FlushState.IDLE
    assert results == [(None, None)]

    buffer, disabled = make_scheduler(handler, enable=False)
    buffer.enqueue(QueueItem(message={"event": "a"}))
    assert disabled.flush() is True
    assert disabled.state == FlushState.IDLE
    assert handler.batches == []


def test_timer_flushes_pending_messages():
    handler = RecordingHandler()
    buffer, scheduler = make_scheduler(handler, flush_at=10, interval=0.05)

    submit(buffer, scheduler, 0)
    assert scheduler.wait(5)
    submit(buffer, scheduler, 1)

    assert wait_until(lambda: handler.sizes == [1, 1]), f"Timer did not flush, batches: {handler.sizes}"
    scheduler.close()


def test_timer_rearmed_while_items_remain():
    handler = RecordingHandler()
    buffer, scheduler = make_scheduler(handler, flush_at=2, interval=0.05)
    for n in range(5):
        buffer.enqueue(QueueItem(message={"event": f"event-{n}"}))

    scheduler.flush()

    assert wait_until(lambda: sum(handler.sizes) == 5), f"Remaining items were not flushed: {handler.sizes}"
    assert handler.sizes == [2, 2, 1]
    scheduler.close()


def test_close_cancels_timer():
    handler = RecordingHandler()
    buffer, scheduler = make_scheduler(handler, flush_at=10, interval=30)

    submit(buffer, scheduler, 0)
    assert scheduler.wait(5)
    submit(buffer, scheduler, 1)
    assert scheduler.get_stats()["timer_armed"] is True

    scheduler.close()
    assert scheduler.get_stats()["timer_armed"] is False

    submit(buffer, scheduler, 2)
    assert scheduler.get_stats()["timer_armed"] is False, "Closed scheduler must not arm the timer"
