"""
Job handler registry and invocation.

Job handlers must be idempotent - they may be executed more than once for
the same job when a lease expires before the job is finalized. ``JobRef.id``
is stable across deliveries and can be used for deduplication.
"""

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

from leasequeue.types.job import JobHandler, JobRef

logger = logging.getLogger(__name__)


class HandlerTimeoutError(TimeoutError):
    """A handler ran past its execution timeout."""

    def __init__(self, timeout: float):
        super().__init__(f"handler timed out after {timeout}s")
        self.timeout = timeout


class HandlerRegistry:
    """Maps queue names to the handler that processes their jobs."""

    def __init__(self) -> None:
        self._handlers: dict[str, JobHandler] = {}

    def register(self, queue_name: str) -> Callable[[JobHandler], JobHandler]:
        """
        Decorator to register a handler for a queue.

        Example:
            @registry.register("emails")
            async def send_email(job: JobRef) -> None:
                ...
        """
        def decorator(handler: JobHandler) -> JobHandler:
            self._handlers[queue_name] = handler
            logger.info(f"Registered handler for queue: {queue_name}")
            return handler
        return decorator

    def get(self, queue_name: str) -> JobHandler | None:
        return self._handlers.get(queue_name)

    def queues(self) -> list[str]:
        return list(self._handlers.keys())


# Default registry used by register_handler/get_handler
default_registry = HandlerRegistry()


def register_handler(queue_name: str) -> Callable[[JobHandler], JobHandler]:
    """Register a handler for a queue in the default registry."""
    return default_registry.register(queue_name)


def get_handler(queue_name: str) -> JobHandler | None:
    """Get the handler registered for a queue, or None."""
    return default_registry.get(queue_name)


def list_handlers() -> list[str]:
    """List queue names with a registered handler."""
    return default_registry.queues()


def _is_async_callable(handler: Any) -> bool:
    return inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(
        getattr(handler, "__call__", None)
    )


async def _call(handler: JobHandler, job: JobRef) -> Any:
    if _is_async_callable(handler):
        return await handler(job)
    # Blocking handlers run in a thread so they do not stall the other workers
    result = await asyncio.to_thread(handler, job)
    if inspect.isawaitable(result):
        result = await result
    return result


async def invoke_handler(
    handler: JobHandler,
    job: JobRef,
    timeout: float | None = None,
) -> Any:
    """
    Run a handler for a claimed job.

    Args:
        handler: Coroutine function or plain callable taking the JobRef.
        job: The claimed job.
        timeout: Optional execution timeout in seconds. A thread running a
            blocking handler cannot be interrupted and keeps running after
            the timeout; only the wait is abandoned.

    Returns:
        Whatever the handler returned.

    Raises:
        HandlerTimeoutError: If the handler exceeded ``timeout``.
        Exception: Anything the handler raised.
    """
    if timeout is None:
        return await _call(handler, job)
    scope = asyncio.timeout(timeout)
    try:
        async with scope:
            return await _call(handler, job)
    except TimeoutError as e:
        # A TimeoutError raised by the handler itself is a handler error
        if not scope.expired():
            raise
        raise HandlerTimeoutError(timeout) from e
