"""Batch scheduling module cutting the buffer into batches."""

from .flush_scheduler import BatchHandler, FlushCallback, FlushScheduler, FlushState, SchedulerConfig

__all__ = ["FlushScheduler", "FlushState", "SchedulerConfig", "BatchHandler", "FlushCallback"]
