from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

from services.executors.base import ExecutionHandle
from services.job_store.models import STATUS_ORDER, is_terminal

# Placeholder held by a session between the busy check and job creation.
PENDING = "pending"


class ExecutionArena:
    """
    In-memory bookkeeping for jobs this process is tracking.

    Owned by one orchestrator and only touched from its event loop, so no
    locking is needed: there is no await between a check and the matching
    registration.

      busy      session_id -> job_id (or PENDING)  one in-flight command per session
      tasks     job_id -> asyncio.Task             one tracking chain per job
      owners    job_id -> session_id               who gets the job's events
      handles   job_id -> ExecutionHandle
      statuses  job_id -> last status sent to the client
    """

    def __init__(self) -> None:
        self._busy: Dict[str, str] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._owners: Dict[str, str] = {}
        self._handles: Dict[str, ExecutionHandle] = {}
        self._statuses: Dict[str, str] = {}

    # --- session busy lock -------------------------------------------------

    def acquire(self, session_id: str) -> bool:
        if session_id in self._busy:
            return False
        self._busy[session_id] = PENDING
        return True

    def bind(self, session_id: str, job_id: str) -> None:
        self._busy[session_id] = job_id

    def release(self, session_id: str, job_id: Optional[str] = None) -> None:
        """Release the lock, but only if it still belongs to job_id (or is pending)."""
        current = self._busy.get(session_id)
        if current is not None and current in {PENDING, job_id}:
            self._busy.pop(session_id, None)

    def active_job(self, session_id: str) -> Optional[str]:
        current = self._busy.get(session_id)
        if current is None or current == PENDING:
            return None
        return current

    def is_busy(self, session_id: str) -> bool:
        return session_id in self._busy

    def clear_session(self, session_id: str) -> None:
        self._busy.pop(session_id, None)

    # --- tracking tasks ----------------------------------------------------

    def has_task(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    def register_task(self, job_id: str, task: asyncio.Task) -> bool:
        if self.has_task(job_id):
            return False
        self._tasks[job_id] = task
        return True

    def drop_task(self, job_id: str, task: Optional[asyncio.Task] = None) -> None:
        if task is not None and self._tasks.get(job_id) is not task:
            return
        self._tasks.pop(job_id, None)

    def task(self, job_id: str) -> Optional[asyncio.Task]:
        return self._tasks.get(job_id)

    def tasks(self) -> List[asyncio.Task]:
        return list(self._tasks.values())

    # --- ownership ---------------------------------------------------------

    def own(self, job_id: str, session_id: str) -> None:
        self._owners[job_id] = session_id

    def owner(self, job_id: str) -> Optional[str]:
        return self._owners.get(job_id)

    def jobs_for(self, session_id: str) -> List[str]:
        return [jid for jid, sid in self._owners.items() if sid == session_id]

    def disown(self, job_id: str) -> None:
        self._owners.pop(job_id, None)
        self._statuses.pop(job_id, None)

    # --- handles -----------------------------------------------------------

    def set_handle(self, job_id: str, handle: ExecutionHandle) -> None:
        self._handles[job_id] = handle

    def handle(self, job_id: str) -> Optional[ExecutionHandle]:
        return self._handles.get(job_id)

    def drop_handle(self, job_id: str) -> None:
        self._handles.pop(job_id, None)

    # --- client status ordering --------------------------------------------

    def advance_status(self, job_id: str, status: str) -> bool:
        """
        Record status as sent to the client if it moves the job forward.

        Returns False for anything that would repeat or regress, including
        any status after a terminal one.
        """
        last = self._statuses.get(job_id)
        if last is not None:
            if is_terminal(last):
                return False
            if STATUS_ORDER.get(status, -1) <= STATUS_ORDER.get(last, -1):
                return False
        self._statuses[job_id] = status
        return True

    def last_status(self, job_id: str) -> Optional[str]:
        return self._statuses.get(job_id)
