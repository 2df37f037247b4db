from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class JobPaths:
    job_dir: Path
    record_path: Path


def state_dir() -> Path:
    raw = (os.getenv("STATE_DIR", "/state") or "/state").strip()
    return Path(raw)


def jobs_root(root: Path | None = None) -> Path:
    return (root or state_dir()) / "jobs"


def job_paths(job_id: str, root: Path | None = None) -> JobPaths:
    job_dir = jobs_root(root) / job_id
    return JobPaths(job_dir=job_dir, record_path=job_dir / "job.json")
