from __future__ import annotations

import asyncio
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Tuple

from services.job_store.util import utc_iso

EVENT_TYPING_STARTED = "typingStarted"
EVENT_RESPONSE_ADDED = "responseAdded"
EVENT_STATUS_UPDATED = "statusUpdated"
EVENT_LOADING_CHANGED = "loadingStateChanged"
EVENT_BUSY_REJECTED = "busyRejected"
EVENT_POLLING_FAILED = "pollingFailed"

EVENT_NAMES = (
    EVENT_TYPING_STARTED,
    EVENT_RESPONSE_ADDED,
    EVENT_STATUS_UPDATED,
    EVENT_LOADING_CHANGED,
    EVENT_BUSY_REJECTED,
    EVENT_POLLING_FAILED,
)


class UnknownSessionError(KeyError):
    pass


@dataclass(frozen=True)
class ClientEvent:
    event: str
    session_id: str
    seq: int
    payload: Dict[str, Any] = field(default_factory=dict)
    job_id: Optional[str] = None
    timestamp: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "event": self.event,
            "session_id": self.session_id,
            "seq": self.seq,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }
        if self.job_id is not None:
            data["job_id"] = self.job_id
        return data


class _Channel:
    def __init__(self, buffer_size: int) -> None:
        self.seq = 0
        self.buffer: Deque[ClientEvent] = deque(maxlen=buffer_size)
        self.subscribers: List[asyncio.Queue] = []


class EventHub:
    """
    Per-session event channels.

    Every published event gets the next sequence number of its session and
    lands in a bounded replay buffer, so a reconnecting stream can catch up.
    Slow subscribers lose events instead of blocking publishers. Closing a
    session wakes its subscribers with a None sentinel.

    Must only be used from the event loop that owns the orchestrator.
    """

    def __init__(self, *, buffer_size: int = 200, queue_size: int = 1000) -> None:
        self._buffer_size = buffer_size
        self._queue_size = queue_size
        self._channels: Dict[str, _Channel] = {}

    def open_session(self, session_id: Optional[str] = None) -> str:
        sid = session_id or uuid.uuid4().hex
        self._channels.setdefault(sid, _Channel(self._buffer_size))
        return sid

    def has_session(self, session_id: str) -> bool:
        return session_id in self._channels

    def sessions(self) -> List[str]:
        return list(self._channels)

    def publish(
        self,
        session_id: str,
        event: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        job_id: Optional[str] = None,
    ) -> Optional[ClientEvent]:
        channel = self._channels.get(session_id)
        if channel is None:
            # Session already disposed; nobody is listening.
            return None

        channel.seq += 1
        item = ClientEvent(
            event=event,
            session_id=session_id,
            seq=channel.seq,
            payload=dict(payload or {}),
            job_id=job_id,
            timestamp=utc_iso(),
        )
        channel.buffer.append(item)
        for q in list(channel.subscribers):
            try:
                q.put_nowait(item)
            except asyncio.QueueFull:
                continue
        return item

    def subscribe(self, session_id: str) -> Tuple[asyncio.Queue, List[ClientEvent]]:
        channel = self._channels.get(session_id)
        if channel is None:
            raise UnknownSessionError(session_id)
        q: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        channel.subscribers.append(q)
        return q, list(channel.buffer)

    def unsubscribe(self, session_id: str, q: asyncio.Queue) -> None:
        channel = self._channels.get(session_id)
        if channel is None:
            return
        channel.subscribers = [s for s in channel.subscribers if s is not q]

    def has_subscribers(self, session_id: str) -> bool:
        channel = self._channels.get(session_id)
        return channel is not None and bool(channel.subscribers)

    def history(self, session_id: str) -> List[ClientEvent]:
        channel = self._channels.get(session_id)
        return list(channel.buffer) if channel is not None else []

    def close_session(self, session_id: str) -> None:
        channel = self._channels.pop(session_id, None)
        if channel is None:
            return
        for q in channel.subscribers:
            try:
                q.put_nowait(None)
            except asyncio.QueueFull:
                # Drain one slot so the sentinel always gets through.
                q.get_nowait()
                q.put_nowait(None)
