from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from services.job_runner.clock import Clock, SystemClock
from services.job_store.models import Job

from .base import ExecutionHandle, Executor, PollResult
from .github import GitHubActionsClient, GitHubActionsError, RunNotFoundError

LOGGER = logging.getLogger(__name__)

_PENDING_RUN_STATUSES = {"queued", "in_progress", "waiting", "requested", "pending"}


def map_run_status(status: Optional[str], conclusion: Optional[str]) -> str:
    """
    Map a workflow run (status, conclusion) onto a job status.

      queued / in_progress (and other pending states) -> running
      completed + success                             -> completed
      completed + cancelled                           -> cancelled
      completed + anything else (incl. None)          -> failed
      unrecognized status                             -> queued
    """
    if status in _PENDING_RUN_STATUSES:
        return "running"
    if status == "completed":
        if conclusion == "success":
            return "completed"
        if conclusion == "cancelled":
            return "cancelled"
        return "failed"
    return "queued"


def build_inputs(job: Job) -> Dict[str, str]:
    intent = job.parsed_intent
    replicas = intent.get("replicas")
    return {
        "job_id": job.id,
        "action": str(intent.get("action") or job.job_type),
        "service": str(intent.get("service") or ""),
        "environment": str(intent.get("environment") or ""),
        "replicas": "" if replicas is None else str(replicas),
        "user_id": job.user_id,
        "original_command": job.original_command,
    }


class WorkflowExecutor(Executor):
    """
    Runs jobs as GitHub Actions workflow_dispatch runs.

    The workflow is expected to set its run-name from the job id and action
    (see run_name_template) so the run created by a dispatch can be found.
    Failing to find it is not fatal: the job stays running and every poll
    tries discovery once more.
    """

    kind = "workflow"

    def __init__(
        self,
        client: GitHubActionsClient,
        *,
        workflow: str,
        ref: str = "main",
        run_name_template: str = "DCH {job_id} - {action}",
        discovery_attempts: int = 12,
        discovery_delay: float = 1.5,
        discovery_timeout: float = 60.0,
        clock: Clock | None = None,
    ) -> None:
        self._client = client
        self._workflow = workflow
        self._ref = ref
        self._run_name_template = run_name_template
        self._discovery_attempts = discovery_attempts
        self._discovery_delay = discovery_delay
        self._discovery_timeout = discovery_timeout
        self._clock = clock or SystemClock()

    def run_name(self, job: Job) -> str:
        inputs = build_inputs(job)
        return self._run_name_template.format(**inputs)

    async def start(self, job: Job) -> ExecutionHandle:
        await self._client.dispatch(self._workflow, build_inputs(job), self._ref)
        LOGGER.info("job %s dispatched to workflow %s@%s", job.id, self._workflow, self._ref)

        handle = ExecutionHandle(
            job_id=job.id,
            kind=self.kind,
            acknowledged=True,
            state={"run_name": self.run_name(job)},
        )
        handle.output.append(f"Dispatched workflow {self._workflow} on {self._ref}")
        return handle

    async def settle(self, handle: ExecutionHandle) -> None:
        """Look for the dispatched run; on failure later polls keep looking."""
        try:
            reason = await asyncio.wait_for(
                self._discover(handle), timeout=self._discovery_timeout
            )
        except asyncio.TimeoutError:
            reason = f"no run after {self._discovery_timeout:g}s"
        if reason is None:
            return
        LOGGER.warning("job %s: run discovery failed: %s", handle.job_id, reason)
        handle.output.append(f"Run discovery failed ({reason}); still looking")

    async def _discover(self, handle: ExecutionHandle) -> Optional[str]:
        name = handle.state["run_name"]
        last_error: Optional[str] = None
        for attempt in range(1, self._discovery_attempts + 1):
            try:
                run = await self._client.find_run_by_name(
                    self._workflow, name, max_attempts=1, sleep=self._clock.sleep
                )
            except RunNotFoundError:
                pass
            except GitHubActionsError as exc:
                # Transient; counts against the same attempt budget.
                last_error = str(exc)
                LOGGER.info("job %s: run lookup %d failed: %s", handle.job_id, attempt, exc)
            else:
                self._attach(handle, run)
                return None
            if attempt < self._discovery_attempts:
                await self._clock.sleep(self._discovery_delay)
        return last_error or f"run {name!r} not found after {self._discovery_attempts} attempt(s)"

    async def poll(self, handle: ExecutionHandle) -> PollResult:
        if handle.external_id is None:
            try:
                run = await self._client.find_run_by_name(
                    self._workflow,
                    handle.state["run_name"],
                    max_attempts=1,
                    sleep=self._clock.sleep,
                )
            except RunNotFoundError:
                return PollResult(status="running")
            self._attach(handle, run)

        run = await self._client.get_run(handle.external_id)
        status = map_run_status(run.get("status"), run.get("conclusion"))
        run_url = run.get("html_url") or handle.run_url

        if status in {"completed", "failed", "cancelled"}:
            conclusion = run.get("conclusion") or "none"
            output = (f"Workflow run {handle.external_id} finished: {conclusion}",)
            error = None
            if status == "failed":
                error = f"Workflow run {handle.external_id} concluded with {conclusion}"
            return PollResult(
                status=status,
                output=output,
                error=error,
                external_id=handle.external_id,
                run_url=run_url,
            )
        return PollResult(status=status, external_id=handle.external_id, run_url=run_url)

    async def resume(self, job: Job) -> Optional[ExecutionHandle]:
        handle = ExecutionHandle(
            job_id=job.id,
            kind=self.kind,
            acknowledged=True,
            run_url=job.run_url,
            state={"run_name": self.run_name(job)},
        )
        if job.external_job_id:
            handle.external_id = job.external_job_id
        return handle

    async def aclose(self) -> None:
        await self._client.aclose()

    def _attach(self, handle: ExecutionHandle, run: Dict[str, Any]) -> None:
        handle.external_id = str(run.get("id"))
        handle.run_url = run.get("html_url")
        if handle.run_url:
            handle.output.append(f"Tracking workflow run {handle.external_id}: {handle.run_url}")
