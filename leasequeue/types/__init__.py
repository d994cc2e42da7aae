"""
Type definitions for the queue.
"""

from leasequeue.types.job import (
    AlertSink,
    ExhaustedJob,
    ExhaustedListener,
    Expectation,
    FailureOutcome,
    JobHandler,
    JobRef,
)

__all__ = [
    "AlertSink",
    "ExhaustedJob",
    "ExhaustedListener",
    "Expectation",
    "FailureOutcome",
    "JobHandler",
    "JobRef",
]
