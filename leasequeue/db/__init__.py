"""
Database module.
Contains database connection, models, and the job repository.
"""

from leasequeue.db.connection import (
    create_engine,
    create_schema,
    create_session_factory,
    drop_schema,
    get_test_engine,
)
from leasequeue.db.models import Base, Job
from leasequeue.db.repository import JobRepository

__all__ = [
    "create_engine",
    "create_schema",
    "create_session_factory",
    "drop_schema",
    "get_test_engine",
    "Base",
    "Job",
    "JobRepository",
]
