from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .orchestrator import CommandSubmission, JobOrchestrator, SubmissionOutcome
    from .protocol import SessionManager

__all__ = ["CommandSubmission", "JobOrchestrator", "SessionManager", "SubmissionOutcome"]


def __getattr__(name: str):
    if name in {"CommandSubmission", "JobOrchestrator", "SubmissionOutcome"}:
        from . import orchestrator

        return getattr(orchestrator, name)
    if name == "SessionManager":
        from .protocol import SessionManager

        return SessionManager
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
