"""
Job-related type definitions shared by the store, lease manager and workers.
"""

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from leasequeue.constants import JobStatus


@dataclass(frozen=True)
class JobRef:
    """
    A claimed job, as handed to a worker.

    ``attempts`` doubles as the lease's fencing token: finalizing calls
    pass it back so a worker whose lease was re-claimed cannot finalize
    someone else's attempt.
    """

    id: int
    queue_name: str
    payload: bytes
    attempts: int
    max_attempts: int
    lease_expires_at: datetime

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last permitted attempt."""
        return self.attempts >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining attempts after this one."""
        return max(0, self.max_attempts - self.attempts)

    def json(self) -> Any:
        """Decode a JSON payload."""
        return json.loads(self.payload)


@dataclass(frozen=True)
class Expectation:
    """
    Precondition for a conditional update.

    Attributes:
        statuses: The row must currently be in one of these statuses.
        attempts: If set, the row's attempt counter must equal this value.
        lease_expired_before: If set, a PROCESSING row only matches when its
            lease expired before this instant. Other statuses are unaffected.
    """

    statuses: frozenset[JobStatus]
    attempts: int | None = None
    lease_expired_before: datetime | None = None

    @classmethod
    def of(
        cls,
        *statuses: JobStatus,
        attempts: int | None = None,
        lease_expired_before: datetime | None = None,
    ) -> "Expectation":
        return cls(frozenset(statuses), attempts, lease_expired_before)


@dataclass(frozen=True)
class ExhaustedJob:
    """A job moved to FAILED because its final lease expired unreported."""

    id: int
    queue_name: str
    attempts: int
    last_error: str


class FailureOutcome(StrEnum):
    """Result of reporting a failed attempt."""

    REQUEUED = "requeued"
    FAILED = "failed"
    CONFLICT = "conflict"


@runtime_checkable
class AlertSink(Protocol):
    """Receives a notification when a job fails terminally."""

    def notify(self, severity: str, message: str) -> Awaitable[None] | None:
        ...


# Handlers may be coroutine functions or plain callables
JobHandler = Callable[[JobRef], Awaitable[Any] | Any]

# Called for every job that fails terminally through lease expiry
ExhaustedListener = Callable[[ExhaustedJob], Awaitable[None] | None]
