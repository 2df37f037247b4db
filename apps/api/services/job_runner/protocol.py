from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from services.intent import SlotOverrides
from services.job_store import JobNotFoundError, JobStoreError

from .clock import Clock, SystemClock
from .events import (
    EVENT_BUSY_REJECTED,
    EVENT_LOADING_CHANGED,
    EVENT_RESPONSE_ADDED,
    EVENT_TYPING_STARTED,
)
from .orchestrator import (
    OUTCOME_BUSY,
    OUTCOME_CREATED,
    OUTCOME_MISSING_SLOT,
    CommandSubmission,
    JobOrchestrator,
    RetryNotAllowedError,
    SubmissionOutcome,
)

LOGGER = logging.getLogger(__name__)


class SessionNotFoundError(KeyError):
    pass


def outcome_response(outcome: SubmissionOutcome, supported: list[str]) -> Dict[str, Any]:
    """responseAdded payload for a non-busy submission outcome."""
    intent = outcome.intent.to_dict() if outcome.intent is not None else None
    if outcome.kind == OUTCOME_CREATED and outcome.job is not None:
        return {
            "type": "job_created",
            "job_id": outcome.job.id,
            "parsed_intent": intent,
            "status": outcome.job.status,
            "created_at": outcome.job.created_at,
        }
    if outcome.kind == OUTCOME_MISSING_SLOT:
        return {
            "type": "missing_slot",
            "missing": list(outcome.missing),
            "choices": outcome.choices,
            "parsed_intent": intent,
        }
    return {
        "type": "unknown_action",
        "message": "Could not tell what you want to do.",
        "parsed_intent": intent,
        "supported": supported,
    }


class SessionManager:
    """
    Chat-session side of the orchestrator.

    Translates client messages (sendCommand, refreshJob, retryJob) into
    orchestrator calls and reports the results as session events.

    Sessions idle for idle_timeout seconds (no messages, no open event
    stream, no command in flight) are disposed by expire_idle().
    """

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        *,
        idle_timeout: Optional[float] = None,
        clock: Clock | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._idle_timeout = idle_timeout
        self._clock = clock or SystemClock()
        self._users: Dict[str, str] = {}
        self._seen: Dict[str, float] = {}

    @property
    def orchestrator(self) -> JobOrchestrator:
        return self._orchestrator

    def open_session(self, user_id: str) -> str:
        sid = self._orchestrator.events.open_session()
        self._users[sid] = user_id
        self._seen[sid] = self._clock.now()
        LOGGER.info("session %s opened for user %s", sid, user_id)
        return sid

    def has_session(self, session_id: str) -> bool:
        return session_id in self._users

    def user_of(self, session_id: str) -> str:
        try:
            return self._users[session_id]
        except KeyError:
            raise SessionNotFoundError(session_id) from None

    def touch(self, session_id: str) -> None:
        if session_id in self._users:
            self._seen[session_id] = self._clock.now()

    async def dispose(self, session_id: str) -> None:
        self.user_of(session_id)
        await self._orchestrator.dispose_session(session_id)
        self._users.pop(session_id, None)
        self._seen.pop(session_id, None)

    async def expire_idle(self) -> List[str]:
        if self._idle_timeout is None:
            return []
        now = self._clock.now()
        arena = self._orchestrator.arena
        events = self._orchestrator.events
        expired = [
            sid
            for sid, seen in self._seen.items()
            if now - seen >= self._idle_timeout
            and not arena.is_busy(sid)
            and not events.has_subscribers(sid)
        ]
        for sid in expired:
            LOGGER.info("session %s idle for %.0fs; disposing", sid, now - self._seen[sid])
            await self.dispose(sid)
        return expired

    async def send_command(
        self,
        session_id: str,
        text: str,
        *,
        enable_nlu: Optional[bool] = None,
        confidence_threshold: Optional[float] = None,
        overrides: Optional[SlotOverrides] = None,
    ) -> Optional[SubmissionOutcome]:
        user_id = self.user_of(session_id)
        self.touch(session_id)
        events = self._orchestrator.events

        if self._orchestrator.arena.is_busy(session_id):
            active = self._orchestrator.arena.active_job(session_id)
            events.publish(session_id, EVENT_BUSY_REJECTED, {"active_job_id": active})
            return SubmissionOutcome(kind=OUTCOME_BUSY, active_job_id=active)

        events.publish(session_id, EVENT_TYPING_STARTED)
        events.publish(session_id, EVENT_LOADING_CHANGED, {"loading": True})
        try:
            outcome = await self._orchestrator.submit(
                CommandSubmission(
                    command=text,
                    user_id=user_id,
                    session_id=session_id,
                    use_classifier=enable_nlu,
                    confidence_threshold=confidence_threshold,
                    overrides=overrides,
                )
            )
        except JobStoreError as exc:
            LOGGER.error("session %s: could not create job: %s", session_id, exc)
            self._error(session_id, f"Could not create job: {exc}")
            return None
        else:
            self._report(session_id, outcome)
        finally:
            events.publish(session_id, EVENT_LOADING_CHANGED, {"loading": False})

        return outcome

    async def refresh_job(self, session_id: str, job_id: str) -> None:
        self.user_of(session_id)
        self.touch(session_id)
        try:
            await self._orchestrator.refresh(job_id, session_id=session_id)
        except JobNotFoundError:
            self._error(session_id, f"Job {job_id} not found", job_id)

    async def retry_job(self, session_id: str, job_id: str) -> Optional[SubmissionOutcome]:
        self.user_of(session_id)
        self.touch(session_id)
        try:
            outcome = await self._orchestrator.retry(job_id, session_id=session_id)
        except JobNotFoundError:
            self._error(session_id, f"Job {job_id} not found", job_id)
            return None
        except RetryNotAllowedError as exc:
            self._error(session_id, str(exc), job_id)
            return None
        except JobStoreError as exc:
            LOGGER.error("session %s: could not create retry job: %s", session_id, exc)
            self._error(session_id, f"Could not create job: {exc}", job_id)
            return None

        self._report(session_id, outcome)
        return outcome

    def _report(self, session_id: str, outcome: SubmissionOutcome) -> None:
        events = self._orchestrator.events
        if outcome.kind == OUTCOME_BUSY:
            events.publish(session_id, EVENT_BUSY_REJECTED, {"active_job_id": outcome.active_job_id})
            return
        job_id = outcome.job.id if outcome.job is not None else None
        events.publish(
            session_id,
            EVENT_RESPONSE_ADDED,
            outcome_response(outcome, self._orchestrator.supported_commands()),
            job_id=job_id,
        )

    def _error(self, session_id: str, message: str, job_id: Optional[str] = None) -> None:
        self._orchestrator.events.publish(
            session_id,
            EVENT_RESPONSE_ADDED,
            {"type": "error", "message": message},
            job_id=job_id,
        )
