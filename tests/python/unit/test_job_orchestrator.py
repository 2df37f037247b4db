import asyncio
import json
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import patch

import httpx

from services.executors import GitHubActionsClient, WorkflowExecutor
from services.executors.base import ExecutionHandle, Executor, PollResult
from services.intent import IntentParser, SlotOverrides
from services.job_runner.clock import Clock
from services.job_runner.orchestrator import (
    CommandSubmission,
    JobOrchestrator,
    RetryNotAllowedError,
)
from services.job_runner.poller import PollPolicy, StatusPoller
from services.job_store import FileJobStore, JobStoreError

TOKEN = "ghp_" + "y" * 30


class FakeClock(Clock):
    def __init__(self) -> None:
        self.t = 0.0

    def now(self) -> float:
        return self.t

    async def sleep(self, seconds: float) -> None:
        self.t += max(0.0, seconds)
        await asyncio.sleep(0)


class ScriptedExecutor(Executor):
    kind = "scripted"

    def __init__(
        self,
        results=(),
        *,
        acknowledged: bool = False,
        start_error: Exception | None = None,
        resumable: bool = False,
    ) -> None:
        self.results = list(results)
        self.acknowledged = acknowledged
        self.start_error = start_error
        self.resumable = resumable
        self.started = []
        self._last = PollResult(status="running")

    async def start(self, job):
        self.started.append(job.id)
        if self.start_error is not None:
            raise self.start_error
        return ExecutionHandle(
            job_id=job.id,
            kind=self.kind,
            external_id="ext-1",
            acknowledged=self.acknowledged,
            output=["started"],
        )

    async def poll(self, handle):
        if self.results:
            self._last = self.results.pop(0)
        if isinstance(self._last, Exception):
            raise self._last
        return self._last

    async def resume(self, job):
        if not self.resumable:
            return None
        return ExecutionHandle(
            job_id=job.id, kind=self.kind, external_id=job.external_job_id, acknowledged=True
        )


class BlockingExecutor(ScriptedExecutor):
    async def poll(self, handle):
        await asyncio.Event().wait()


class TestJobOrchestrator(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)

    def _orchestrator(self, executor: Executor, *, max_attempts: int = 5) -> JobOrchestrator:
        policy = PollPolicy(initial_delay=0.0, interval=1.0, jitter=0.0, max_attempts=max_attempts)
        return JobOrchestrator(
            FileJobStore(Path(self._tmp.name)),
            IntentParser(),
            executor,
            poller=StatusPoller(policy, clock=FakeClock()),
            secrets=[TOKEN],
        )

    async def _drain(self, orch: JobOrchestrator) -> None:
        tasks = orch.arena.tasks()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _statuses(self, orch: JobOrchestrator, sid: str, job_id: str):
        return [
            e.payload["status"]
            for e in orch.events.history(sid)
            if e.event == "statusUpdated" and e.job_id == job_id
        ]

    async def test_job_runs_to_completion(self) -> None:
        executor = ScriptedExecutor(
            [
                PollResult(status="queued"),
                PollResult(status="running"),
                PollResult(status="running"),
                PollResult(status="completed", output=("done",)),
            ]
        )
        orch = self._orchestrator(executor)
        sid = orch.events.open_session()

        outcome = await orch.submit(CommandSubmission("deploy api to prod", "u1", session_id=sid))

        self.assertTrue(outcome.created)
        job = outcome.job
        self.assertEqual(job.status, "queued")
        self.assertEqual(job.job_type, "deploy")
        self.assertEqual(orch.arena.active_job(sid), job.id)

        await self._drain(orch)

        stored = orch.store.get_job(job.id)
        self.assertEqual(stored.status, "completed")
        self.assertEqual(stored.output, ["started", "done"])
        self.assertEqual(stored.executor, "scripted")
        self.assertEqual(stored.external_job_id, "ext-1")
        self.assertIsNotNone(stored.completed_at)
        self.assertEqual(self._statuses(orch, sid, job.id), ["queued", "running", "completed"])
        self.assertFalse(orch.arena.is_busy(sid))
        self.assertFalse(orch.arena.has_task(job.id))

    async def test_terminal_while_queued_passes_through_running(self) -> None:
        executor = ScriptedExecutor([PollResult(status="failed", error="image pull failed")])
        orch = self._orchestrator(executor)
        sid = orch.events.open_session()

        outcome = await orch.submit(CommandSubmission("restart api", "u1", session_id=sid))
        await self._drain(orch)

        stored = orch.store.get_job(outcome.job.id)
        self.assertEqual(stored.status, "failed")
        self.assertEqual(stored.error_message, "image pull failed")
        self.assertEqual(self._statuses(orch, sid, stored.id), ["queued", "running", "failed"])

    async def test_acknowledged_start_marks_running(self) -> None:
        executor = ScriptedExecutor(
            [PollResult(status="completed")], acknowledged=True
        )
        orch = self._orchestrator(executor)
        sid = orch.events.open_session()

        outcome = await orch.submit(CommandSubmission("status of api", "u1", session_id=sid))
        await self._drain(orch)

        self.assertEqual(
            self._statuses(orch, sid, outcome.job.id), ["queued", "running", "completed"]
        )

    async def test_busy_session_rejects_second_command(self) -> None:
        orch = self._orchestrator(ScriptedExecutor([PollResult(status="completed")]))
        sid = orch.events.open_session()

        first = await orch.submit(CommandSubmission("deploy api to prod", "u1", session_id=sid))
        second = await orch.submit(CommandSubmission("restart web", "u1", session_id=sid))

        self.assertEqual(second.kind, "busy")
        self.assertEqual(second.active_job_id, first.job.id)
        self.assertIsNone(second.intent)
        self.assertEqual(len(orch.store.list_jobs("u1")), 1)

        await self._drain(orch)
        third = await orch.submit(CommandSubmission("restart web", "u1", session_id=sid))
        self.assertTrue(third.created)
        await self._drain(orch)

    async def test_no_session_means_no_lock(self) -> None:
        orch = self._orchestrator(ScriptedExecutor([PollResult(status="completed")]))

        first = await orch.submit(CommandSubmission("deploy api to prod", "u1"))
        second = await orch.submit(CommandSubmission("deploy web to prod", "u1"))

        self.assertTrue(first.created)
        self.assertTrue(second.created)
        await self._drain(orch)

    async def test_missing_slot_releases_lock(self) -> None:
        executor = ScriptedExecutor()
        orch = self._orchestrator(executor)
        sid = orch.events.open_session()

        outcome = await orch.submit(CommandSubmission("deploy api", "u1", session_id=sid))

        self.assertEqual(outcome.kind, "missing_slot")
        self.assertEqual(outcome.missing, ("environment",))
        self.assertIn("production", outcome.choices["environment"])
        self.assertFalse(orch.arena.is_busy(sid))
        self.assertEqual(orch.store.list_jobs("u1"), [])
        self.assertEqual(executor.started, [])

    async def test_slot_overrides_complete_the_command(self) -> None:
        orch = self._orchestrator(ScriptedExecutor([PollResult(status="completed")]))

        outcome = await orch.submit(
            CommandSubmission(
                "deploy api",
                "u1",
                overrides=SlotOverrides(environment="staging"),
            )
        )

        self.assertTrue(outcome.created)
        self.assertEqual(outcome.job.parsed_intent["environment"], "staging")
        await self._drain(orch)

    async def test_unknown_action_creates_nothing(self) -> None:
        orch = self._orchestrator(ScriptedExecutor())
        sid = orch.events.open_session()

        outcome = await orch.submit(CommandSubmission("make me a sandwich", "u1", session_id=sid))

        self.assertEqual(outcome.kind, "unknown_action")
        self.assertEqual(orch.store.list_jobs("u1"), [])
        self.assertFalse(orch.arena.is_busy(sid))

    async def test_store_failure_is_raised_and_releases_lock(self) -> None:
        orch = self._orchestrator(ScriptedExecutor())
        sid = orch.events.open_session()

        with patch.object(orch.store, "create_job", side_effect=JobStoreError("disk full")):
            with self.assertRaises(JobStoreError):
                await orch.submit(CommandSubmission("restart api", "u1", session_id=sid))

        self.assertFalse(orch.arena.is_busy(sid))

    async def test_start_failure_fails_job_with_masked_message(self) -> None:
        executor = ScriptedExecutor(start_error=RuntimeError(f"401 for token {TOKEN}"))
        orch = self._orchestrator(executor)
        sid = orch.events.open_session()

        outcome = await orch.submit(CommandSubmission("rollback api", "u1", session_id=sid))
        await self._drain(orch)

        stored = orch.store.get_job(outcome.job.id)
        self.assertEqual(stored.status, "failed")
        self.assertIn("failed to start job", stored.error_message)
        self.assertNotIn(TOKEN, stored.error_message)
        self.assertEqual(self._statuses(orch, sid, stored.id), ["queued", "running", "failed"])
        self.assertIsNotNone(stored.started_at)
        self.assertFalse(orch.arena.is_busy(sid))

    async def test_polling_exhaustion_forces_failure(self) -> None:
        executor = ScriptedExecutor([PollResult(status="running"), RuntimeError("502 bad gateway")])
        orch = self._orchestrator(executor, max_attempts=3)
        sid = orch.events.open_session()

        outcome = await orch.submit(CommandSubmission("logs api", "u1", session_id=sid))
        await self._drain(orch)

        stored = orch.store.get_job(outcome.job.id)
        self.assertEqual(stored.status, "failed")
        self.assertTrue(
            stored.error_message.startswith("status polling gave up after 3 attempts")
        )
        self.assertIn("502 bad gateway", stored.error_message)

        events = [e.event for e in orch.events.history(sid)]
        self.assertEqual(events[-2:], ["pollingFailed", "statusUpdated"])
        self.assertEqual(self._statuses(orch, sid, stored.id), ["queued", "running", "failed"])

    async def test_dispose_session_cancels_tracking(self) -> None:
        orch = self._orchestrator(BlockingExecutor(acknowledged=True))
        sid = orch.events.open_session()

        outcome = await orch.submit(CommandSubmission("deploy api to prod", "u1", session_id=sid))
        for _ in range(10):
            await asyncio.sleep(0)
        self.assertTrue(orch.arena.has_task(outcome.job.id))

        await orch.dispose_session(sid)

        self.assertFalse(orch.arena.has_task(outcome.job.id))
        self.assertFalse(orch.arena.is_busy(sid))
        self.assertFalse(orch.events.has_session(sid))
        # Remote work is left alone.
        self.assertEqual(orch.store.get_job(outcome.job.id).status, "running")

    async def test_refresh_resumes_untracked_job(self) -> None:
        executor = ScriptedExecutor([PollResult(status="completed")], resumable=True)
        orch = self._orchestrator(executor)
        sid = orch.events.open_session()
        job = orch.store.create_job("u1", "deploy api to prod", {"action": "deploy"}, "deploy")
        orch.store.update_job_status(job.id, "running", external_job_id="run-9")

        snapshot = await orch.refresh(job.id, session_id=sid)

        self.assertEqual(snapshot.status, "running")
        history = orch.events.history(sid)
        self.assertEqual(history[0].event, "responseAdded")
        self.assertEqual(history[0].payload["type"], "job_snapshot")
        self.assertTrue(orch.arena.has_task(job.id))

        # A second refresh must not start another poll chain.
        await orch.refresh(job.id, session_id=sid)
        self.assertEqual(len(orch.arena.tasks()), 1)

        await self._drain(orch)
        self.assertEqual(orch.store.get_job(job.id).status, "completed")
        self.assertEqual(executor.started, [])

    async def test_refresh_of_terminal_job_only_reports(self) -> None:
        orch = self._orchestrator(ScriptedExecutor(resumable=True))
        sid = orch.events.open_session()
        job = orch.store.create_job("u1", "deploy api to prod", {"action": "deploy"}, "deploy")
        orch.store.update_job_status(job.id, "running")
        orch.store.update_job_status(job.id, "failed", error_message="x")

        await orch.refresh(job.id, session_id=sid)

        self.assertEqual(orch.arena.tasks(), [])

    async def test_retry_creates_linked_job(self) -> None:
        orch = self._orchestrator(ScriptedExecutor([PollResult(status="completed")]))
        failed = orch.store.create_job(
            "u1",
            "deploy api to prod",
            {"action": "deploy", "service": "api", "environment": "production"},
            "deploy",
        )
        orch.store.update_job_status(failed.id, "running")
        orch.store.update_job_status(failed.id, "failed", error_message="boom")

        outcome = await orch.retry(failed.id)
        await self._drain(orch)

        self.assertTrue(outcome.created)
        self.assertEqual(outcome.job.retry_of, failed.id)
        self.assertEqual(outcome.job.retry_count, 1)
        self.assertEqual(orch.store.get_job(outcome.job.id).status, "completed")

    async def test_retry_rules(self) -> None:
        orch = self._orchestrator(ScriptedExecutor())
        done = orch.store.create_job("u1", "restart api", {"action": "restart"}, "restart")
        orch.store.update_job_status(done.id, "running")
        orch.store.update_job_status(done.id, "completed")

        with self.assertRaises(RetryNotAllowedError):
            await orch.retry(done.id)

        spent = orch.store.create_job(
            "u1", "restart api", {"action": "restart"}, "restart", max_retries=1, retry_count=1
        )
        orch.store.update_job_status(spent.id, "running")
        orch.store.update_job_status(spent.id, "cancelled")
        with self.assertRaises(RetryNotAllowedError):
            await orch.retry(spent.id)

    async def test_aclose_cancels_everything(self) -> None:
        orch = self._orchestrator(BlockingExecutor(acknowledged=True))
        await orch.submit(CommandSubmission("deploy api to prod", "u1"))
        for _ in range(10):
            await asyncio.sleep(0)

        await orch.aclose()

        self.assertTrue(all(t.done() for t in orch.arena.tasks()))

    async def test_finished_jobs_are_forgotten(self) -> None:
        orch = self._orchestrator(ScriptedExecutor([PollResult(status="completed")]))
        sid = orch.events.open_session()

        outcome = await orch.submit(CommandSubmission("restart api", "u1", session_id=sid))
        await self._drain(orch)

        self.assertIsNone(orch.arena.owner(outcome.job.id))
        self.assertIsNone(orch.arena.last_status(outcome.job.id))
        self.assertEqual(orch.arena.jobs_for(sid), [])

        # A snapshot of a finished job does not re-register it.
        await orch.refresh(outcome.job.id, session_id=sid)
        self.assertIsNone(orch.arena.owner(outcome.job.id))


class SlowRunsGitHub:
    """Accepts dispatches at once; run listing is slow and empty for a while."""

    def __init__(self, *, empty_listings: int, delay: float) -> None:
        self.run_name = None
        self.empty_listings = empty_listings
        self.delay = delay
        self.dispatched = 0
        self.listed = 0

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/dispatches"):
            self.dispatched += 1
            self.run_name = "DCH {job_id} - {action}".format(**json.loads(request.content)["inputs"])
            return httpx.Response(204)
        if path.endswith("/runs"):
            self.listed += 1
            await asyncio.sleep(self.delay)
            if self.listed <= self.empty_listings:
                return httpx.Response(200, json={"workflow_runs": []})
            return httpx.Response(200, json={"workflow_runs": [{"id": 31, "name": self.run_name}]})
        if path.endswith("/actions/runs/31"):
            return httpx.Response(200, json={"id": 31, "status": "completed", "conclusion": "success"})
        return httpx.Response(404)


class TestWorkflowJobs(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)

    async def test_slow_run_discovery_does_not_fail_dispatched_job(self) -> None:
        github = SlowRunsGitHub(empty_listings=3, delay=0.05)
        client = GitHubActionsClient(
            token=TOKEN,
            owner="acme",
            repo="ops",
            client=httpx.AsyncClient(
                base_url="https://api.github.test", transport=httpx.MockTransport(github)
            ),
        )
        clock = FakeClock()
        executor = WorkflowExecutor(
            client, workflow="ops.yml", clock=clock, discovery_attempts=3, discovery_delay=0.1
        )
        policy = PollPolicy(initial_delay=0.0, interval=1.0, jitter=0.0, max_attempts=5)
        orch = JobOrchestrator(
            FileJobStore(Path(self._tmp.name)),
            IntentParser(),
            executor,
            poller=StatusPoller(policy, clock=clock),
            # Shorter than the whole discovery, longer than the dispatch.
            submit_timeout=0.1,
            secrets=[TOKEN],
        )
        sid = orch.events.open_session()

        outcome = await orch.submit(CommandSubmission("deploy api to prod", "u1", session_id=sid))
        tasks = orch.arena.tasks()
        await asyncio.gather(*tasks, return_exceptions=True)

        stored = orch.store.get_job(outcome.job.id)
        self.assertEqual(github.dispatched, 1)
        self.assertEqual(stored.status, "completed")
        self.assertIsNone(stored.error_message)
        self.assertEqual(stored.external_job_id, "31")
        self.assertTrue(any("Run discovery failed" in line for line in stored.output))
        self.assertEqual(
            [
                e.payload["status"]
                for e in orch.events.history(sid)
                if e.event == "statusUpdated"
            ],
            ["queued", "running", "completed"],
        )
        await orch.aclose()
