from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from services.intent import SlotOverrides


class SlotOverridesIn(BaseModel):
    """Explicit slot values chosen by the user after a MISSING_SLOT answer."""

    service: Optional[str] = Field(default=None, min_length=1)
    environment: Optional[str] = Field(default=None, min_length=1)
    replicas: Optional[int] = Field(default=None, ge=0, le=100)

    def to_domain(self) -> SlotOverrides:
        return SlotOverrides(
            service=self.service,
            environment=self.environment,
            replicas=self.replicas,
        )


class CommandOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    enable_nlu: Optional[bool] = Field(default=None, alias="enableNLU")
    confidence_threshold: Optional[float] = Field(
        default=None, ge=0.0, le=1.0, alias="confidenceThreshold"
    )
    slot_overrides: Optional[SlotOverridesIn] = Field(default=None, alias="slotOverrides")

    def overrides(self) -> Optional[SlotOverrides]:
        return self.slot_overrides.to_domain() if self.slot_overrides else None


class CommandRequest(CommandOptions):
    command: str = Field(..., min_length=1, max_length=2000)
    user_id: str = Field(..., min_length=1, max_length=200)
    session_id: Optional[str] = Field(
        default=None,
        description="Chat session; commands in one session run one at a time",
    )


class CommandCreateOut(BaseModel):
    job_id: str
    parsed_intent: Dict[str, Any]
    status: str
    created_at: str


class SupportedCommandsOut(BaseModel):
    commands: List[str]
    actions: List[str]
