from __future__ import annotations

from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse

from api.schemas.command import CommandCreateOut, CommandRequest, SupportedCommandsOut
from services.intent.models import KNOWN_ACTIONS
from services.job_runner.orchestrator import (
    OUTCOME_BUSY,
    OUTCOME_MISSING_SLOT,
    OUTCOME_UNKNOWN_ACTION,
    CommandSubmission,
)
from services.job_runner.protocol import outcome_response
from services.job_runner.runtime import get_orchestrator, get_sessions
from services.job_store import JobStoreError

router = APIRouter(prefix="/commands", tags=["commands"])


def _error(status_code: int, body: dict) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body)


@router.post("", status_code=201, response_model=CommandCreateOut)
async def submit_command(req: CommandRequest):
    """
    Parse a natural-language command and start a job for it.

    Responses:
      - 201 job created (execution continues in the background)
      - 422 MISSING_SLOT: resubmit with slotOverrides
      - 400 UNKNOWN_ACTION: no supported action recognized
      - 409 BUSY: the session already has a command in flight
      - 500 JOB_STORE_ERROR
    """
    orchestrator = get_orchestrator()
    if req.session_id is not None and not get_sessions().has_session(req.session_id):
        raise HTTPException(status_code=404, detail="session not found")

    try:
        outcome = await orchestrator.submit(
            CommandSubmission(
                command=req.command,
                user_id=req.user_id,
                session_id=req.session_id,
                use_classifier=req.enable_nlu,
                confidence_threshold=req.confidence_threshold,
                overrides=req.overrides(),
            )
        )
    except JobStoreError as exc:
        return _error(500, {"code": "JOB_STORE_ERROR", "message": str(exc)})

    if outcome.kind == OUTCOME_BUSY:
        return _error(
            409,
            {
                "code": "BUSY",
                "message": "a command is already running in this session",
                "active_job_id": outcome.active_job_id,
            },
        )

    body = outcome_response(outcome, orchestrator.supported_commands())
    if outcome.kind == OUTCOME_MISSING_SLOT:
        body.pop("type")
        return _error(422, {"code": "MISSING_SLOT", **body})
    if outcome.kind == OUTCOME_UNKNOWN_ACTION:
        body.pop("type")
        return _error(400, {"code": "UNKNOWN_ACTION", **body})

    assert outcome.job is not None
    return CommandCreateOut(
        job_id=outcome.job.id,
        parsed_intent=outcome.job.parsed_intent,
        status=outcome.job.status,
        created_at=outcome.job.created_at,
    )


@router.get("/supported", response_model=SupportedCommandsOut)
def supported_commands() -> SupportedCommandsOut:
    return SupportedCommandsOut(
        commands=get_orchestrator().supported_commands(),
        actions=[a.value for a in KNOWN_ACTIONS],
    )
