from __future__ import annotations

import logging
import random

from services.job_runner.clock import Clock, SystemClock
from services.job_runner.config import HubSettings

from .base import ExecutionHandle, Executor, PollResult
from .github import GitHubActionsClient, GitHubActionsError, RunNotFoundError
from .simulated import SimulatedExecutor
from .workflow import WorkflowExecutor, map_run_status

LOGGER = logging.getLogger(__name__)

__all__ = [
    "ExecutionHandle",
    "Executor",
    "GitHubActionsClient",
    "GitHubActionsError",
    "PollResult",
    "RunNotFoundError",
    "SimulatedExecutor",
    "WorkflowExecutor",
    "map_run_status",
    "select_executor",
]


def _workflow_executor(settings: HubSettings, clock: Clock) -> WorkflowExecutor:
    client = GitHubActionsClient(
        token=settings.github_token or "",
        owner=settings.github_owner,
        repo=settings.github_repo,
        api_url=settings.github_api_url,
        submit_timeout=settings.submit_timeout_seconds,
        read_timeout=settings.status_timeout_seconds,
    )
    return WorkflowExecutor(
        client,
        workflow=settings.github_workflow,
        ref=settings.github_ref,
        run_name_template=settings.run_name_template,
        clock=clock,
    )


def select_executor(
    settings: HubSettings,
    *,
    clock: Clock | None = None,
    rng: random.Random | None = None,
) -> Executor:
    """
    Pick the executor once, at orchestrator construction.

    EXECUTOR_BACKEND=simulated|workflow forces a backend. With "auto" the
    workflow executor is used only when remote execution is enabled and the
    GitHub token, owner and repo are all configured.
    """
    clock = clock or SystemClock()
    backend = settings.executor_backend

    if backend == "workflow":
        if not settings.remote_credentials_present:
            LOGGER.warning(
                "EXECUTOR_BACKEND=workflow but GitHub token/owner/repo are incomplete"
            )
        LOGGER.info("executor: workflow (%s/%s)", settings.github_owner, settings.github_repo)
        return _workflow_executor(settings, clock)

    if backend not in {"auto", "simulated"}:
        LOGGER.warning("unknown EXECUTOR_BACKEND=%r; using auto selection", backend)

    if backend != "simulated" and settings.remote_execution_enabled:
        if settings.remote_credentials_present:
            LOGGER.info(
                "executor: workflow (%s/%s)", settings.github_owner, settings.github_repo
            )
            return _workflow_executor(settings, clock)
        LOGGER.warning(
            "remote execution requested but GitHub credentials are missing; "
            "falling back to the simulated executor"
        )

    LOGGER.info("executor: simulated")
    return SimulatedExecutor(clock=clock, rng=rng)
