from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from services.job_store.models import Job, is_terminal


@dataclass
class ExecutionHandle:
    job_id: str
    kind: str
    external_id: Optional[str] = None
    acknowledged: bool = False
    run_url: Optional[str] = None
    output: List[str] = field(default_factory=list)
    # Executor-private poll state.
    state: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PollResult:
    status: str
    output: tuple[str, ...] = ()
    error: Optional[str] = None
    external_id: Optional[str] = None
    run_url: Optional[str] = None


class Executor(ABC):
    """
    Strategy that performs (or pretends to perform) the work behind a job.

    Executors only return data. All job store writes and client
    notifications belong to the orchestrator.
    """

    kind: str = "base"

    @abstractmethod
    async def start(self, job: Job) -> ExecutionHandle:
        raise NotImplementedError

    @abstractmethod
    async def poll(self, handle: ExecutionHandle) -> PollResult:
        raise NotImplementedError

    async def settle(self, handle: ExecutionHandle) -> None:
        """
        Finish setting up an accepted job, e.g. locate the remote run.

        Runs after start() and outside its submission timeout. Must not fail
        the job: problems are reported as lines in handle.output.
        """
        return None

    def is_terminal(self, status: str) -> bool:
        return is_terminal(status)

    async def resume(self, job: Job) -> Optional[ExecutionHandle]:
        """Re-attach to a job started by an earlier process, if possible."""
        return None

    async def aclose(self) -> None:
        return None
