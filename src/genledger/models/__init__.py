"""SQLModel entities.

All table models are imported here to ensure they're registered with SQLModel
metadata for Alembic autogenerate support.
"""

from genledger.models.history import (
    Attempt,
    AttemptStatus,
    HistoryLimits,
    ImageEntry,
    ImageEntryRecord,
    ProgressEvent,
)
from genledger.models.job import GenerationJob, InvalidStateTransition, JobStatus, RetryRecord

__all__ = [
    "Attempt",
    "AttemptStatus",
    "HistoryLimits",
    "ImageEntry",
    "ImageEntryRecord",
    "ProgressEvent",
    "GenerationJob",
    "InvalidStateTransition",
    "JobStatus",
    "RetryRecord",
]
