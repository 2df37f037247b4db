from __future__ import annotations

import random
from typing import List, Tuple

from services.intent.models import Action, ParsedIntent
from services.job_runner.clock import Clock, SystemClock
from services.job_store.models import Job

from .base import ExecutionHandle, Executor, PollResult

FAILURE_MESSAGES: Tuple[str, ...] = (
    "Connection timeout while reaching the cluster API server",
    "Insufficient resources: 0/3 nodes are available for scheduling",
    "Image pull failed: manifest unknown",
    "Health check failed: readiness probe returned HTTP 503",
    "Permission denied: service account lacks the required role",
    "Deployment exceeded its progress deadline",
)


def _success_output(intent: ParsedIntent, rng: random.Random) -> List[str]:
    service = intent.service or "service"
    env = intent.environment or "production"

    if intent.action is Action.DEPLOY:
        version = f"v1.{rng.randint(0, 20)}.{rng.randint(0, 9)}"
        return [
            f"Building {service} image {version}",
            f"Pushing {service}:{version} to registry",
            f"Rolling out {service} to {env}",
            f"Deployment of {service} to {env} completed successfully",
        ]
    if intent.action is Action.ROLLBACK:
        return [
            f"Locating previous revision of {service}",
            f"Rolling back {service} in {env}",
            f"Rollback of {service} completed; previous revision is live",
        ]
    if intent.action is Action.SCALE:
        replicas = intent.replicas if intent.replicas is not None else 1
        return [
            f"Scaling {service} to {replicas} replicas",
            f"{replicas}/{replicas} replicas of {service} are ready",
        ]
    if intent.action is Action.RESTART:
        return [
            f"Restarting pods for {service} in {env}",
            f"All pods for {service} restarted and healthy",
        ]
    if intent.action is Action.LOGS:
        tail = int(intent.parameters.get("tail") or 5)
        levels = ("INFO", "INFO", "INFO", "WARN", "DEBUG")
        lines = [f"Fetching last {tail} log lines for {service}"]
        for i in range(min(tail, 20)):
            lines.append(f"[{levels[i % len(levels)]}] {service}: request handled ({rng.randint(5, 250)}ms)")
        return lines
    if intent.action is Action.STATUS:
        ready = rng.randint(1, 5)
        return [
            f"{service} ({env}): {ready}/{ready} pods running",
            f"{service} health endpoint: OK",
        ]
    return [f"Nothing to do for {intent.action.value}"]


class SimulatedExecutor(Executor):
    """
    Fake executor for demos and tests.

    At start it fixes the whole timeline: a running transition 2-3s later, a
    terminal transition 6-10s after that, and success with ~90% probability.
    Polls simply report where the clock is on that timeline.
    """

    kind = "simulated"

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        rng: random.Random | None = None,
        start_delay: Tuple[float, float] = (2.0, 3.0),
        run_duration: Tuple[float, float] = (6.0, 10.0),
        success_rate: float = 0.9,
    ) -> None:
        self._clock = clock or SystemClock()
        self._rng = rng or random.Random()
        self._start_delay = start_delay
        self._run_duration = run_duration
        self._success_rate = success_rate

    async def start(self, job: Job) -> ExecutionHandle:
        now = self._clock.now()
        running_at = now + self._rng.uniform(*self._start_delay)
        finished_at = running_at + self._rng.uniform(*self._run_duration)
        succeeded = self._rng.random() < self._success_rate

        intent = ParsedIntent.from_dict(job.parsed_intent)
        if succeeded:
            output = _success_output(intent, self._rng)
            error = None
        else:
            output = []
            error = self._rng.choice(FAILURE_MESSAGES)

        return ExecutionHandle(
            job_id=job.id,
            kind=self.kind,
            state={
                "running_at": running_at,
                "finished_at": finished_at,
                "succeeded": succeeded,
                "output": output,
                "error": error,
            },
        )

    async def poll(self, handle: ExecutionHandle) -> PollResult:
        now = self._clock.now()
        state = handle.state
        if now < state["running_at"]:
            return PollResult(status="queued")
        if now < state["finished_at"]:
            return PollResult(status="running")
        if state["succeeded"]:
            return PollResult(status="completed", output=tuple(state["output"]))
        return PollResult(status="failed", error=state["error"])
