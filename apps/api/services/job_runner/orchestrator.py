from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Dict, List, Optional, Sequence, Tuple

from services.executors.base import ExecutionHandle, Executor, PollResult
from services.intent import IntentParser, ParsedIntent, SlotOverrides, apply_overrides, validate
from services.intent.slots import SUPPORTED_COMMANDS, slot_choices
from services.job_store import FileJobStore, Job, JobStoreError
from services.job_store.models import JOB_STATUSES

from .arena import ExecutionArena
from .events import (
    EVENT_POLLING_FAILED,
    EVENT_RESPONSE_ADDED,
    EVENT_STATUS_UPDATED,
    EventHub,
)
from .poller import PollOutcome, StatusPoller
from .secrets import dedupe, mask_secrets

LOGGER = logging.getLogger(__name__)

OUTCOME_CREATED = "created"
OUTCOME_MISSING_SLOT = "missing_slot"
OUTCOME_UNKNOWN_ACTION = "unknown_action"
OUTCOME_BUSY = "busy"


class RetryNotAllowedError(RuntimeError):
    pass


@dataclass(frozen=True)
class CommandSubmission:
    command: str
    user_id: str
    session_id: Optional[str] = None
    # None means "use the configured default".
    use_classifier: Optional[bool] = None
    confidence_threshold: Optional[float] = None
    overrides: Optional[SlotOverrides] = None


@dataclass(frozen=True)
class SubmissionOutcome:
    kind: str
    intent: Optional[ParsedIntent] = None
    job: Optional[Job] = None
    missing: Tuple[str, ...] = ()
    choices: Dict[str, List[str]] = field(default_factory=dict)
    active_job_id: Optional[str] = None

    @property
    def created(self) -> bool:
        return self.kind == OUTCOME_CREATED


class JobOrchestrator:
    """
    Turns commands into tracked jobs.

    submit() parses, validates and persists synchronously, then hands the job
    to a background task that starts it on the executor and polls it to a
    terminal state. Every store write and every statusUpdated event for a job
    happens here; executors only report.
    """

    def __init__(
        self,
        store: FileJobStore,
        parser: IntentParser,
        executor: Executor,
        *,
        events: EventHub | None = None,
        poller: StatusPoller | None = None,
        submit_timeout: float = 30.0,
        nlu_enabled: bool = True,
        confidence_threshold: Optional[float] = None,
        secrets: Sequence[str] = (),
    ) -> None:
        self._store = store
        self._parser = parser
        self._executor = executor
        self._events = events or EventHub()
        self._poller = poller or StatusPoller()
        self._submit_timeout = submit_timeout
        self._nlu_enabled = nlu_enabled
        self._confidence_threshold = confidence_threshold
        self._secrets = dedupe(secrets)
        self._arena = ExecutionArena()

    @property
    def store(self) -> FileJobStore:
        return self._store

    @property
    def parser(self) -> IntentParser:
        return self._parser

    @property
    def executor(self) -> Executor:
        return self._executor

    @property
    def events(self) -> EventHub:
        return self._events

    @property
    def arena(self) -> ExecutionArena:
        return self._arena

    def supported_commands(self) -> List[str]:
        return list(SUPPORTED_COMMANDS)

    # --- submission --------------------------------------------------------

    async def submit(self, submission: CommandSubmission) -> SubmissionOutcome:
        sid = submission.session_id
        if sid is not None and not self._arena.acquire(sid):
            active = self._arena.active_job(sid)
            LOGGER.info("session %s busy with job %s; command rejected", sid, active)
            return SubmissionOutcome(kind=OUTCOME_BUSY, active_job_id=active)

        bound = False
        try:
            use_classifier = (
                self._nlu_enabled
                if submission.use_classifier is None
                else submission.use_classifier
            )
            threshold = (
                self._confidence_threshold
                if submission.confidence_threshold is None
                else submission.confidence_threshold
            )
            intent = await self._parser.parse(
                submission.command,
                use_classifier=use_classifier,
                confidence_threshold=threshold,
            )
            intent = apply_overrides(intent, submission.overrides)

            check = validate(intent)
            if not check.ok:
                if "action" in check.missing:
                    return SubmissionOutcome(kind=OUTCOME_UNKNOWN_ACTION, intent=intent)
                return SubmissionOutcome(
                    kind=OUTCOME_MISSING_SLOT,
                    intent=intent,
                    missing=check.missing,
                    choices=slot_choices(check.missing, self._parser.catalog),
                )

            job = self._store.create_job(
                submission.user_id,
                submission.command,
                intent.to_dict(),
                intent.action.value,
            )
            self._track(job, sid)
            bound = True
        finally:
            if sid is not None and not bound:
                self._arena.release(sid)

        return SubmissionOutcome(kind=OUTCOME_CREATED, intent=intent, job=job)

    async def retry(self, job_id: str, *, session_id: Optional[str] = None) -> SubmissionOutcome:
        """
        Start a new job from a failed or cancelled one's stored intent.

        Raises RetryNotAllowedError when the job is not retryable and
        JobNotFoundError when it does not exist.
        """
        original = self._store.get_job(job_id)
        if original.status not in {"failed", "cancelled"}:
            raise RetryNotAllowedError(
                f"job {job_id} is {original.status}; only failed or cancelled jobs can be retried"
            )
        if original.retry_count >= original.max_retries:
            raise RetryNotAllowedError(
                f"job {job_id} already retried {original.retry_count} of {original.max_retries} times"
            )

        if session_id is not None and not self._arena.acquire(session_id):
            return SubmissionOutcome(
                kind=OUTCOME_BUSY, active_job_id=self._arena.active_job(session_id)
            )

        bound = False
        try:
            job = self._store.create_job(
                original.user_id,
                original.original_command,
                original.parsed_intent,
                original.job_type,
                max_retries=original.max_retries,
                retry_of=original.id,
                retry_count=original.retry_count + 1,
            )
            self._track(job, session_id)
            bound = True
        finally:
            if session_id is not None and not bound:
                self._arena.release(session_id)

        LOGGER.info("job %s retries %s (attempt %d)", job.id, original.id, job.retry_count)
        return SubmissionOutcome(
            kind=OUTCOME_CREATED,
            intent=ParsedIntent.from_dict(job.parsed_intent),
            job=job,
        )

    def _track(self, job: Job, session_id: Optional[str]) -> None:
        if session_id is not None:
            self._arena.bind(session_id, job.id)
            self._arena.own(job.id, session_id)
        self._emit_status(job)
        self._spawn(job.id, session_id)

    def _spawn(
        self,
        job_id: str,
        session_id: Optional[str],
        handle: Optional[ExecutionHandle] = None,
    ) -> bool:
        if self._arena.has_task(job_id):
            return False
        task = asyncio.create_task(
            self._run_job(job_id, session_id, handle), name=f"job-{job_id}"
        )
        self._arena.register_task(job_id, task)
        return True

    # --- refresh / dispose -------------------------------------------------

    async def refresh(self, job_id: str, *, session_id: Optional[str] = None) -> Job:
        """
        Return the stored job and send a snapshot to the session.

        A non-terminal job nobody is polling (e.g. after a restart) is
        re-attached through executor.resume() and tracked again.
        """
        job = self._store.get_job(job_id)
        if session_id is not None:
            self._events.publish(
                session_id,
                EVENT_RESPONSE_ADDED,
                {"type": "job_snapshot", "job": job.to_dict()},
                job_id=job.id,
            )

        if job.is_terminal or self._arena.has_task(job_id):
            return job

        handle = await self._executor.resume(job)
        if handle is None:
            LOGGER.info("job %s is %s but %s executor cannot resume it", job.id, job.status, self._executor.kind)
            return job
        if session_id is not None and self._arena.owner(job_id) is None:
            self._arena.own(job_id, session_id)
        if self._spawn(job.id, self._arena.owner(job_id), handle):
            LOGGER.info("job %s: tracking resumed", job.id)
        return job

    async def dispose_session(self, session_id: str) -> None:
        """
        Stop tracking the session's jobs and close its event channel.

        Remote work keeps running; a later refresh can pick the jobs up again.
        """
        tasks = []
        for job_id in self._arena.jobs_for(session_id):
            task = self._arena.task(job_id)
            if task is not None and not task.done():
                task.cancel()
                tasks.append(task)
            self._arena.disown(job_id)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._arena.clear_session(session_id)
        self._events.close_session(session_id)
        LOGGER.info("session %s disposed (%d tracking task(s) cancelled)", session_id, len(tasks))

    async def aclose(self) -> None:
        tasks = [t for t in self._arena.tasks() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for sid in self._events.sessions():
            self._events.close_session(sid)
        await self._executor.aclose()
        await self._parser.aclose()

    # --- job task ----------------------------------------------------------

    async def _run_job(
        self,
        job_id: str,
        session_id: Optional[str],
        handle: Optional[ExecutionHandle],
    ) -> None:
        try:
            if handle is None:
                handle = await self._start(job_id)
                if handle is None:
                    return
                await self._settle(job_id, handle)
            self._arena.set_handle(job_id, handle)

            outcome = await self._poller.run(
                partial(self._executor.poll, handle),
                lambda result: self._executor.is_terminal(result.status),
                partial(self._apply, job_id),
                label=job_id,
            )
            if outcome.exhausted:
                self._give_up(job_id, outcome)
        except asyncio.CancelledError:
            LOGGER.info("job %s: tracking cancelled", job_id)
            raise
        except Exception as exc:
            LOGGER.exception("job %s: unexpected failure while tracking", job_id)
            try:
                self._fail(job_id, f"internal error: {exc}")
            except JobStoreError:
                LOGGER.exception("job %s: could not record failure", job_id)
        finally:
            self._arena.drop_handle(job_id)
            self._arena.drop_task(job_id, asyncio.current_task())
            self._arena.disown(job_id)
            if session_id is not None:
                self._arena.release(session_id, job_id)

    async def _start(self, job_id: str) -> Optional[ExecutionHandle]:
        job = self._store.get_job(job_id)
        try:
            handle = await asyncio.wait_for(
                self._executor.start(job), timeout=self._submit_timeout
            )
        except asyncio.TimeoutError:
            self._fail(
                job_id,
                f"{self._executor.kind} executor did not accept the job within {self._submit_timeout:g}s",
            )
            return None
        except Exception as exc:
            self._fail(job_id, f"failed to start job: {exc}")
            return None

        fields: Dict[str, Any] = {"executor": self._executor.kind}
        if handle.external_id:
            fields["external_job_id"] = handle.external_id
        if handle.run_url:
            fields["run_url"] = handle.run_url
        status = "running" if handle.acknowledged else "queued"
        job = self._store.update_job_status(
            job_id, status, output=[self._mask(line) for line in handle.output], **fields
        )
        self._emit_status(job)
        return handle

    async def _settle(self, job_id: str, handle: ExecutionHandle) -> None:
        """Let the executor finish setup, then record what it found."""
        seen = len(handle.output)
        known = (handle.external_id, handle.run_url)
        await self._executor.settle(handle)

        fields: Dict[str, Any] = {}
        if handle.external_id and handle.external_id != known[0]:
            fields["external_job_id"] = handle.external_id
        if handle.run_url and handle.run_url != known[1]:
            fields["run_url"] = handle.run_url
        output = [self._mask(line) for line in handle.output[seen:]]
        if not fields and not output:
            return
        job = self._store.get_job(job_id)
        if not job.is_terminal:
            self._store.update_job_status(job_id, job.status, output=output, **fields)

    async def _apply(self, job_id: str, result: PollResult) -> None:
        """Advance the stored job from one poll result; never moves it backwards."""
        job = self._store.get_job(job_id)
        if job.is_terminal:
            return

        fields: Dict[str, Any] = {}
        if result.external_id and result.external_id != job.external_job_id:
            fields["external_job_id"] = result.external_id
        if result.run_url and result.run_url != job.run_url:
            fields["run_url"] = result.run_url
        output = [self._mask(line) for line in result.output]
        status = result.status

        if status not in JOB_STATUSES or status == "queued":
            if fields:
                self._store.update_job_status(job_id, job.status, **fields)
            return

        if status == "running":
            if job.status == "queued":
                job = self._store.update_job_status(job_id, "running", output=output, **fields)
                self._emit_status(job)
            elif fields or output:
                self._store.update_job_status(job_id, "running", output=output, **fields)
            return

        job = self._leave_queue(job)
        if status == "failed" or result.error:
            fields["error_message"] = self._mask(result.error or "job failed")
        job = self._store.update_job_status(job_id, status, output=output, **fields)
        self._emit_status(job)

    def _give_up(self, job_id: str, outcome: PollOutcome[PollResult]) -> None:
        job = self._store.get_job(job_id)
        if job.is_terminal:
            return

        message = f"status polling gave up after {outcome.attempts} attempts"
        if outcome.last_error:
            message = f"{message}: {outcome.last_error}"
        message = self._mask(message)

        job = self._leave_queue(job)
        owner = self._arena.owner(job_id)
        if owner is not None:
            self._events.publish(
                owner,
                EVENT_POLLING_FAILED,
                {"attempts": outcome.attempts, "message": message},
                job_id=job_id,
            )
        job = self._store.update_job_status(job_id, "failed", error_message=message)
        self._emit_status(job)

    def _fail(self, job_id: str, message: str) -> None:
        job = self._store.get_job(job_id)
        if job.is_terminal:
            return
        masked = self._mask(message)
        LOGGER.warning("job %s failed: %s", job_id, masked)
        job = self._leave_queue(job)
        job = self._store.update_job_status(
            job_id, "failed", error_message=masked, executor=self._executor.kind
        )
        self._emit_status(job)

    def _leave_queue(self, job: Job) -> Job:
        """Terminal states are only reached from running, so step through it first."""
        if job.status != "queued":
            return job
        job = self._store.update_job_status(job.id, "running")
        self._emit_status(job)
        return job

    def _emit_status(self, job: Job) -> None:
        owner = self._arena.owner(job.id)
        if owner is None or not self._arena.advance_status(job.id, job.status):
            return
        self._events.publish(
            owner,
            EVENT_STATUS_UPDATED,
            {
                "status": job.status,
                "output": list(job.output),
                "error_message": job.error_message,
            },
            job_id=job.id,
        )

    def _mask(self, text: str) -> str:
        return mask_secrets(text, self._secrets)
