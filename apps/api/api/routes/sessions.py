from __future__ import annotations

import asyncio
import json

from fastapi import APIRouter, Body, HTTPException, Request
from fastapi.responses import StreamingResponse

from api.schemas.session import (
    ClientMessage,
    MessageAcceptedOut,
    RefreshJobMessage,
    RetryJobMessage,
    SessionCreateOut,
    SessionCreateRequest,
)
from services.job_runner.events import ClientEvent
from services.job_runner.protocol import SessionNotFoundError
from services.job_runner.runtime import get_sessions

router = APIRouter(prefix="/sessions", tags=["sessions"])

_KEEP_ALIVE_SECONDS = 10.0


def _sse_event(event: str, data: str) -> str:
    lines = data.splitlines() if data else [""]
    payload = [f"event: {event}"]
    payload.extend(f"data: {line}" for line in lines)
    return "\n".join(payload) + "\n\n"


def _sse_client_event(item: ClientEvent) -> str:
    return f"id: {item.seq}\n" + _sse_event(
        item.event, json.dumps(item.to_dict(), ensure_ascii=False)
    )


def _require_session(session_id: str) -> None:
    if not get_sessions().has_session(session_id):
        raise HTTPException(status_code=404, detail="session not found")


@router.post("", status_code=201, response_model=SessionCreateOut)
async def create_session(req: SessionCreateRequest) -> SessionCreateOut:
    sessions = get_sessions()
    await sessions.expire_idle()
    return SessionCreateOut(session_id=sessions.open_session(req.user_id))


@router.post("/{session_id}/messages", status_code=202, response_model=MessageAcceptedOut)
async def post_message(
    session_id: str, message: ClientMessage = Body(...)
) -> MessageAcceptedOut:
    """
    Handle one client message. Results arrive on the session's event stream.
    """
    _require_session(session_id)
    sessions = get_sessions()

    try:
        if isinstance(message, RefreshJobMessage):
            await sessions.refresh_job(session_id, message.job_id)
            return MessageAcceptedOut(job_id=message.job_id)

        if isinstance(message, RetryJobMessage):
            outcome = await sessions.retry_job(session_id, message.job_id)
        else:
            outcome = await sessions.send_command(
                session_id,
                message.text,
                enable_nlu=message.enable_nlu,
                confidence_threshold=message.confidence_threshold,
                overrides=message.overrides(),
            )
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail="session not found") from exc

    if outcome is None:
        return MessageAcceptedOut(outcome="error")
    return MessageAcceptedOut(
        outcome=outcome.kind,
        job_id=outcome.job.id if outcome.job is not None else outcome.active_job_id,
    )


@router.get("/{session_id}/events")
async def stream_events(session_id: str, request: Request) -> StreamingResponse:
    """
    Stream session events via Server-Sent Events (SSE).

    Each SSE event is named after the client event (statusUpdated,
    responseAdded, ...) and carries the JSON envelope. Recent events are
    replayed first; Last-Event-ID skips those already seen.
    """
    _require_session(session_id)
    hub = get_sessions().orchestrator.events
    queue, buffered = hub.subscribe(session_id)

    try:
        last_seen = int(request.headers.get("last-event-id") or 0)
    except ValueError:
        last_seen = 0

    async def event_stream():
        try:
            for item in buffered:
                if item.seq > last_seen:
                    yield _sse_client_event(item)

            while True:
                if await request.is_disconnected():
                    break
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=_KEEP_ALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                if item is None:
                    # Session disposed.
                    yield _sse_event("sessionClosed", json.dumps({"session_id": session_id}))
                    break
                if item.seq > last_seen:
                    yield _sse_client_event(item)
        finally:
            hub.unsubscribe(session_id, queue)
            get_sessions().touch(session_id)

    headers = {
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
    }
    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers=headers,
    )


@router.delete("/{session_id}", status_code=204)
async def dispose_session(session_id: str) -> None:
    try:
        await get_sessions().dispose(session_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail="session not found") from exc
