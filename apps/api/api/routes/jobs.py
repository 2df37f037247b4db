from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from api.schemas.job import JobListOut, JobOut, JobStatus
from services.job_runner.runtime import get_orchestrator
from services.job_store import JobNotFoundError

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("", response_model=JobListOut)
def list_jobs(
    user_id: str = Query(..., min_length=1),
    status: Optional[JobStatus] = None,
    limit: int = Query(default=50, ge=1, le=500),
) -> JobListOut:
    jobs = get_orchestrator().store.list_jobs(user_id, status=status, limit=limit)
    return JobListOut(jobs=[JobOut.from_job(j) for j in jobs])


@router.get("/{job_id}", response_model=JobOut)
def get_job(job_id: str) -> JobOut:
    try:
        job = get_orchestrator().store.get_job(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="job not found") from exc
    return JobOut.from_job(job)
