from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .command import CommandOptions


class SessionCreateRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=200)


class SessionCreateOut(BaseModel):
    session_id: str


class SendCommandMessage(CommandOptions):
    type: Literal["sendCommand"]
    text: str = Field(..., min_length=1, max_length=2000)


class RefreshJobMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["refreshJob"]
    job_id: str = Field(..., min_length=1, alias="jobId")


class RetryJobMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["retryJob"]
    job_id: str = Field(..., min_length=1, alias="jobId")


ClientMessage = Annotated[
    Union[SendCommandMessage, RefreshJobMessage, RetryJobMessage],
    Field(discriminator="type"),
]


class MessageAcceptedOut(BaseModel):
    accepted: bool = True
    outcome: Optional[str] = None
    job_id: Optional[str] = None
