from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, FrozenSet, List, Literal, Mapping, Optional


JobStatus = Literal[
    "queued",
    "running",
    "completed",
    "failed",
    "cancelled",
]

JOB_STATUSES: FrozenSet[str] = frozenset(
    {"queued", "running", "completed", "failed", "cancelled"}
)
TERMINAL_STATUSES: FrozenSet[str] = frozenset({"completed", "failed", "cancelled"})

# Lifecycle rank used to keep status updates moving forward only.
STATUS_ORDER: Dict[str, int] = {
    "queued": 0,
    "running": 1,
    "completed": 2,
    "failed": 2,
    "cancelled": 2,
}

_ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "queued": frozenset({"running"}),
    "running": frozenset({"completed", "failed", "cancelled"}),
    "completed": frozenset(),
    "failed": frozenset(),
    "cancelled": frozenset(),
}


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: str, target: str) -> bool:
    return target in _ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass
class Job:
    id: str
    user_id: str
    original_command: str
    parsed_intent: Dict[str, Any]
    job_type: str
    status: JobStatus = "queued"
    output: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
    external_job_id: Optional[str] = None
    executor: Optional[str] = None
    run_url: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    retry_of: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Job":
        status = str(data.get("status") or "queued")
        if status not in JOB_STATUSES:
            raise ValueError(f"unknown job status: {status}")
        return cls(
            id=str(data["id"]),
            user_id=str(data.get("user_id") or ""),
            original_command=str(data.get("original_command") or ""),
            parsed_intent=dict(data.get("parsed_intent") or {}),
            job_type=str(data.get("job_type") or ""),
            status=status,  # type: ignore[arg-type]
            output=[str(x) for x in (data.get("output") or [])],
            error_message=data.get("error_message"),
            external_job_id=data.get("external_job_id"),
            executor=data.get("executor"),
            run_url=data.get("run_url"),
            retry_count=int(data.get("retry_count") or 0),
            max_retries=int(data.get("max_retries") or 0),
            retry_of=data.get("retry_of"),
            created_at=str(data.get("created_at") or ""),
            updated_at=str(data.get("updated_at") or ""),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
        )
