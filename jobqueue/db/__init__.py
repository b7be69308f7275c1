"""
Database module.
Contains database connection, models, and repository implementations.
"""

from jobqueue.db.connection import (
    AsyncSessionLocal,
    close_db,
    create_session_factory,
    get_engine,
    get_session_context,
    init_db,
    provision_schema,
    verify_schema,
)
from jobqueue.db.models import Base, FailedJobRecord, JobRecord, WorkerRecord

__all__ = [
    "get_session_context",
    "get_engine",
    "create_session_factory",
    "init_db",
    "close_db",
    "provision_schema",
    "verify_schema",
    "AsyncSessionLocal",
    "JobRecord",
    "FailedJobRecord",
    "WorkerRecord",
    "Base",
]
