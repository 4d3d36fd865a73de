"""Durable delivery module persisting batches as jobs until they are delivered."""

from .job_store import JobStatus, JobStore, SQLiteJobStore, StoreConfig, StoredJob
from .persistent_queue import DurableQueueAdapter, JobData, JobState

__all__ = ["DurableQueueAdapter", "JobData", "JobState", "JobStatus", "JobStore", "SQLiteJobStore", "StoreConfig", "StoredJob"]
