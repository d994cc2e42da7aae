"""
Worker module.
Contains the worker pool and the handler registry.
"""

from leasequeue.worker.handlers import (
    HandlerRegistry,
    HandlerTimeoutError,
    get_handler,
    invoke_handler,
    list_handlers,
    register_handler,
)
from leasequeue.worker.pool import WorkerPool

__all__ = [
    "HandlerRegistry",
    "HandlerTimeoutError",
    "WorkerPool",
    "get_handler",
    "invoke_handler",
    "list_handlers",
    "register_handler",
]
