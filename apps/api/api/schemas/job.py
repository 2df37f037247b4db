from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel

from services.job_store import Job


JobStatus = Literal[
    "queued",
    "running",
    "completed",
    "failed",
    "cancelled",
]


class JobOut(BaseModel):
    id: str
    user_id: str
    original_command: str
    parsed_intent: Dict[str, Any]
    job_type: str
    status: JobStatus
    output: List[str]
    error_message: Optional[str] = None

    external_job_id: Optional[str] = None
    executor: Optional[str] = None
    run_url: Optional[str] = None

    retry_count: int = 0
    max_retries: int = 3
    retry_of: Optional[str] = None

    created_at: str
    updated_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobOut":
        return cls(**job.to_dict())


class JobListOut(BaseModel):
    jobs: List[JobOut]
