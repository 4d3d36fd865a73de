"""Durable queue adapter persisting batches as jobs until they are delivered.

When activated, every batch cut by the flush scheduler becomes a job in the
job store instead of being sent directly. A single worker drains the jobs,
retrying transient failures with capped exponential backoff. Retried jobs are
re-inserted at the front of the queue, so a retried batch can overtake batches
that were queued while it was waiting: quick retry is preferred over strict
FIFO order.

Completion callbacks cannot be persisted. They are kept in memory, keyed by
the job description, and follow the job across requeues. Jobs recovered after
a restart have no callbacks left to notify.
"""

from __future__ import annotations

import hashlib
import json
import threading
import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from ..config.settings import JobOptions
from ..core.errors import DeliveryError, JobAbandonedError, QueueInvariantViolation
from ..core.events import Batch, Callback, DispatchRequest, resolve_callbacks
from ..core.utils import to_json
from ..sender import Dispatcher, backoff_delay, is_retryable
from ..sender.http_sender import to_delivery_error
from .job_store import JobStore, StoredJob


class JobData(BaseModel):
    """Structured payload persisted for each job."""

    model_config = ConfigDict(extra="forbid")

    description: str = Field(..., min_length=1, description="Unique job description")
    request: Dict[str, Any] = Field(..., description="Serialized dispatch request")
    attempts: int = Field(default=0, ge=0, description="Delivery attempts made so far")

    @field_validator("request")
    @classmethod
    def check_request(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        missing = {"url", "write_key", "body"} - set(v)
        if missing:
            raise ValueError(f"request is missing {', '.join(sorted(missing))}")
        return v


class JobState(str, Enum):
    """Outcome of processing one job."""

    PENDING = "pending"
    DONE = "done"
    REQUEUED = "requeued"
    FAILED = "failed"


class DurableQueueAdapter:
    """Persists batches as jobs and delivers them with a single worker."""

    def __init__(
        self,
        store: JobStore,
        dispatcher: Dispatcher,
        job_opts: Optional[JobOptions] = None,
        delay_fn: Callable[[int], float] = backoff_delay,
        poll_interval: float = 1.0,
    ):
        """Initialize the adapter.

        Args:
            store: Job store holding the persisted jobs
            dispatcher: Dispatcher performing delivery attempts
            job_opts: Job options (attempt ceiling)
            delay_fn: Backoff in seconds before the attempt following ``attempts`` failures
            poll_interval: How long the idle worker waits before checking the store again
        """
        self.store = store
        self.dispatcher = dispatcher
        self.job_opts = job_opts or JobOptions()
        self._delay_fn = delay_fn
        self.poll_interval = poll_interval

        self._callbacks: Dict[str, List[Callback]] = {}
        self._lock = threading.RLock()
        self._shutdown = threading.Event()
        self._wakeup = threading.Event()
        self._worker: Optional[threading.Thread] = None

        # Statistics
        self._total_jobs_added = 0
        self._total_jobs_done = 0
        self._total_jobs_requeued = 0
        self._total_jobs_failed = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def setup(self) -> None:
        """Recover the job left active by a previous process, then start the worker.

        Raises:
            QueueInvariantViolation: If more than one job is active
        """
        self.recover()
        self.start()

    def recover(self) -> None:
        """Move a stale active job back to the front of the queue.

        At most one job is ever active because the worker processes one job at
        a time. Recovering it ahead of everything else keeps it from being
        overtaken by jobs queued after it.

        Raises:
            QueueInvariantViolation: If more than one job is active
        """
        active = self.store.get_active()
        logger.info(f"Found {len(active)} active jobs while starting up queue")

        if not active:
            return

        if len(active) > 1:
            raise QueueInvariantViolation("queue has more than 1 active job, move them to failed and try again")

        job = active[0]
        try:
            data = JobData.model_validate(job.data)
        except PydanticValidationError as e:
            self.store.fail(job.id, f"invalid job data: {e}")
            logger.error(f"Moved unreadable active job {job.id} to failed: {e}")
            return

        self.store.remove(job.id)
        recovered = self.store.add(data.model_copy(update={"attempts": 0}).model_dump(), lifo=True)
        logger.info(f"Re-queued active job {data.description} as job {recovered.id} at the front of the queue")

    def start(self) -> None:
        """Start the worker thread."""
        with self._lock:
            if self.running:
                logger.warning("Durable queue worker is already running")
                return

            self._shutdown.clear()
            self._worker = threading.Thread(target=self._worker_loop, daemon=True, name="relay-durable-worker")
            self._worker.start()
            logger.info("Started durable queue worker")

    def enqueue_batch(self, batch: Batch) -> StoredJob:
        """Persist a batch as a new job at the back of the queue.

        Args:
            batch: Batch whose delivery the job takes over

        Returns:
            The stored job

        Raises:
            DeliveryError: If the store rejects the job; the batch's callbacks
                have already been resolved with it
        """
        request = self.dispatcher.build_request(batch)
        request_data = json.loads(to_json(request.to_dict()))
        description = f"python-{hashlib.md5(to_json(request_data).encode('utf-8')).hexdigest()}-{uuid.uuid4()}"
        data = JobData(description=description, request=request_data)

        with self._lock:
            self._callbacks[description] = list(batch.callbacks)

        try:
            job = self.store.add(data.model_dump())
        except Exception as e:
            error = DeliveryError(f"Failed to push batch to the durable queue: {e}")
            logger.error(f"{error}, {batch.size()} events affected")
            self._resolve(description, error)
            raise error from e

        self._total_jobs_added += 1
        self._wakeup.set()
        logger.debug(f"Queued job {job.id} ({description}) with {batch.size()} events")
        return job

    def process_next(self) -> Optional[JobState]:
        """Process the first waiting job, if any."""
        job = self.store.next_job()
        if job is None:
            return None
        return self.process(job)

    def process(self, job: StoredJob) -> JobState:
        """Run one active job through a delivery attempt.

        Args:
            job: Job already marked active in the store

        Returns:
            Resulting state of the job
        """
        try:
            data = JobData.model_validate(job.data)
        except PydanticValidationError as e:
            self._finish(job.id, f"invalid job data: {e}", failed=True)
            self._total_jobs_failed += 1
            logger.error(f"Moved unreadable job {job.id} to failed: {e}")
            return JobState.FAILED

        if data.attempts >= self.job_opts.max_attempts:
            reason = f"job : {data.description} pushed to failed queue after attempts {data.attempts} skipping further retries..."
            self._finish(job.id, reason, failed=True)
            self._total_jobs_failed += 1
            logger.error(reason)
            self._resolve(data.description, JobAbandonedError(reason))
            return JobState.FAILED

        delay = self._delay_fn(data.attempts)
        if delay > 0 and self._shutdown.wait(delay):
            # Stays active; the next startup recovers it.
            logger.info(f"Shutdown during backoff, job : {data.description} stays active")
            return JobState.PENDING

        logger.debug(f"Attempting job : {data.description} (attempt {data.attempts})")
        error = self.dispatcher.attempt(DispatchRequest.from_dict(data.request))

        if error is None:
            self._resolve(data.description, None)
            self._finish(job.id, "completed")
            self._total_jobs_done += 1
            logger.info(f"job : {data.description} completed")
            return JobState.DONE

        if is_retryable(error):
            try:
                self.store.add(data.model_copy(update={"attempts": data.attempts + 1}).model_dump(), lifo=True)
            except Exception as e:
                requeue_error = DeliveryError(f"Failed to requeue job : {data.description}: {e}")
                logger.error(str(requeue_error))
                self._resolve(data.description, requeue_error)
                self._finish(job.id, str(requeue_error), failed=True)
                self._total_jobs_failed += 1
                return JobState.FAILED

            result = f"job : {data.description} failed for attempt {data.attempts} {error}"
            self._finish(job.id, result)
            self._total_jobs_requeued += 1
            logger.warning(result)
            return JobState.REQUEUED

        delivery_error = to_delivery_error(error, retryable=False)
        self._resolve(data.description, delivery_error)
        self._finish(job.id, str(delivery_error), failed=True)
        self._total_jobs_failed += 1
        logger.error(f"job : {data.description} failed: {delivery_error}")
        return JobState.DONE

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the worker and close the store."""
        self._shutdown.set()
        self._wakeup.set()

        if self._worker is not None and self._worker is not threading.current_thread():
            self._worker.join(timeout)
            if self._worker.is_alive():
                logger.warning("Durable queue worker did not stop gracefully")

        self.store.close()
        logger.info(f"Closed durable queue. Stats - Added: {self._total_jobs_added}, Done: {self._total_jobs_done}, Requeued: {self._total_jobs_requeued}, Failed: {self._total_jobs_failed}")

    def get_stats(self) -> Dict[str, Any]:
        """Get durable queue statistics."""
        with self._lock:
            pending_callbacks = sum(len(callbacks) for callbacks in self._callbacks.values())

        return {
            "running": self.running,
            "jobs": self.store.counts(),
            "pending_callbacks": pending_callbacks,
            "total_jobs_added": self._total_jobs_added,
            "total_jobs_done": self._total_jobs_done,
            "total_jobs_requeued": self._total_jobs_requeued,
            "total_jobs_failed": self._total_jobs_failed,
            "max_attempts": self.job_opts.max_attempts,
        }

    def _finish(self, job_id: int, result: str, failed: bool = False) -> bool:
        """Record the outcome of an active job, deleting it if the store cannot."""
        try:
            if failed:
                return self.store.fail(job_id, result)
            return self.store.complete(job_id, result)
        except Exception as e:
            logger.error(f"Failed to record outcome of job {job_id}: {e}")

        try:
            return self.store.remove(job_id)
        except Exception as e:
            logger.error(f"Failed to remove job {job_id}, it stays active until the next startup: {e}")
            return False

    def _resolve(self, description: str, error: Optional[BaseException]) -> None:
        with self._lock:
            callbacks = self._callbacks.pop(description, [])
        resolve_callbacks(callbacks, error)

    def _worker_loop(self) -> None:
        logger.debug("Started durable queue worker loop")

        while not self._shutdown.is_set():
            self._wakeup.clear()
            try:
                state = self.process_next()
            except Exception as e:
                logger.error(f"Error in durable queue worker: {e}")
                self._shutdown.wait(self.poll_interval)
                continue

            if state is None:
                self._wakeup.wait(self.poll_interval)

        logger.debug("Durable queue worker loop finished")
