from __future__ import annotations

import logging
import shutil
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .models import Job, can_transition, is_terminal
from .paths import job_paths, jobs_root
from .util import atomic_write_json, load_json, safe_mkdir, utc_iso

LOGGER = logging.getLogger(__name__)

_UPDATABLE_FIELDS = {"error_message", "external_job_id", "executor", "run_url"}


class JobStoreError(RuntimeError):
    pass


class JobNotFoundError(JobStoreError):
    pass


class InvalidTransitionError(JobStoreError):
    pass


class FileJobStore:
    """
    Filesystem-backed job store.

    Layout:
      ${STATE_DIR}/jobs/<job_id>/
        job.json        (the full job record)

    Rules:
      - status only moves forward (queued -> running -> terminal)
      - started_at is stamped when a job leaves queued
      - completed_at is stamped when a job becomes terminal
      - output is append-only
    """

    def __init__(
        self, root: Path | None = None, *, default_max_retries: int = 3
    ) -> None:
        self._root = root
        self._default_max_retries = default_max_retries
        # Serializes read-modify-write cycles on job.json files.
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        return jobs_root(self._root)

    def ping(self) -> bool:
        try:
            safe_mkdir(self.root)
        except OSError:
            return False
        return self.root.is_dir()

    def create_job(
        self,
        user_id: str,
        original_command: str,
        parsed_intent: Mapping[str, Any],
        job_type: str,
        *,
        max_retries: Optional[int] = None,
        retry_of: Optional[str] = None,
        retry_count: int = 0,
    ) -> Job:
        job_id = uuid.uuid4().hex
        p = job_paths(job_id, self._root)
        now = utc_iso()
        job = Job(
            id=job_id,
            user_id=user_id,
            original_command=original_command,
            parsed_intent=dict(parsed_intent),
            job_type=job_type,
            status="queued",
            retry_count=retry_count,
            max_retries=(
                self._default_max_retries if max_retries is None else max_retries
            ),
            retry_of=retry_of,
            created_at=now,
            updated_at=now,
        )

        try:
            safe_mkdir(p.job_dir)
            atomic_write_json(p.record_path, job.to_dict())
        except OSError as exc:
            # No half-written job directories.
            shutil.rmtree(p.job_dir, ignore_errors=True)
            raise JobStoreError(f"failed to create job: {exc}") from exc

        LOGGER.info("job %s created (%s) for user %s", job_id, job_type, user_id)
        return job

    def get_job(self, job_id: str) -> Job:
        rid = (job_id or "").strip()
        if not rid or "/" in rid or rid.startswith("."):
            raise JobNotFoundError("job not found")

        p = job_paths(rid, self._root)
        if not p.record_path.is_file():
            raise JobNotFoundError("job not found")
        return self._load(p.record_path)

    def update_job_status(
        self,
        job_id: str,
        status: str,
        *,
        output: Iterable[str] | None = None,
        **fields: Any,
    ) -> Job:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise JobStoreError(f"unsupported job fields: {sorted(unknown)}")

        with self._lock:
            job = self.get_job(job_id)
            previous = job.status
            if status != previous:
                if not can_transition(job.status, status):
                    raise InvalidTransitionError(
                        f"job {job.id}: {job.status} -> {status} is not allowed"
                    )
            elif is_terminal(job.status):
                raise InvalidTransitionError(f"job {job.id} is already {job.status}")

            now = utc_iso()
            if status != "queued" and job.started_at is None:
                job.started_at = now
            if is_terminal(status) and job.completed_at is None:
                job.completed_at = now

            job.status = status  # type: ignore[assignment]
            for key, value in fields.items():
                setattr(job, key, value)
            if output:
                job.output.extend(str(line) for line in output)
            job.updated_at = now
            self._write(job)

        if status != previous:
            LOGGER.info("job %s: %s -> %s", job.id, previous, status)
        return job

    def append_output(self, job_id: str, *lines: str) -> Job:
        with self._lock:
            job = self.get_job(job_id)
            job.output.extend(str(line) for line in lines)
            job.updated_at = utc_iso()
            self._write(job)
        return job

    def list_jobs(
        self,
        user_id: str,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> List[Job]:
        root = self.root
        if not root.is_dir():
            return []

        out: List[Job] = []
        for job_dir in root.iterdir():
            record = job_dir / "job.json"
            if not record.is_file():
                continue
            try:
                job = self._load(record)
            except JobStoreError as exc:
                LOGGER.warning("skipping unreadable job record %s: %s", record, exc)
                continue
            if job.user_id != user_id:
                continue
            if status and job.status != status:
                continue
            out.append(job)

        out.sort(key=lambda j: j.created_at, reverse=True)
        return out[: max(0, limit)]

    def _load(self, path: Path) -> Job:
        try:
            return Job.from_dict(load_json(path))
        except (KeyError, ValueError) as exc:
            raise JobStoreError(f"corrupt job record {path}: {exc}") from exc

    def _write(self, job: Job) -> None:
        p = job_paths(job.id, self._root)
        data: Dict[str, Any] = job.to_dict()
        try:
            atomic_write_json(p.record_path, data)
        except OSError as exc:
            raise JobStoreError(f"failed to write job {job.id}: {exc}") from exc
