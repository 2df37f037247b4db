from __future__ import annotations

from .models import TERMINAL_STATUSES, Job, JobStatus, is_terminal
from .store import (
    FileJobStore,
    InvalidTransitionError,
    JobNotFoundError,
    JobStoreError,
)

__all__ = [
    "FileJobStore",
    "InvalidTransitionError",
    "Job",
    "JobNotFoundError",
    "JobStatus",
    "JobStoreError",
    "TERMINAL_STATUSES",
    "is_terminal",
]
