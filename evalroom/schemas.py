"""Pydantic request/response schemas for the Evalroom API."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

RoundName = Literal["screening", "pitching"]
CommunicationType = Literal["selected", "rejected", "under-review", "top-100-feedback"]
ContentKindName = Literal["custom_email", "vc_feedback"]


class CalendarEventIn(BaseModel):
    """One parsed calendar event as delivered by the calendar sync."""
    uid: str
    method: str = "REQUEST"
    sequence: int = 0
    summary: str = ""
    description: str = ""
    location: str = ""
    start: datetime
    end: datetime | None = None
    organizer: str | None = None
    attendees: list[str] = []

    @field_validator("uid")
    @classmethod
    def uid_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Calendar UID must not be empty")
        return v

    @field_validator("method")
    @classmethod
    def upper_method(cls, v: str) -> str:
        return (v or "REQUEST").strip().upper()


class OperationResult(BaseModel):
    success: bool
    message: str = ""
    code: str = "ok"
    retryable: bool = False
    data: Any = None


class MatchRequest(BaseModel):
    startup_id: int
    juror_id: int
    round_name: RoundName = "pitching"


class AssignmentCreate(BaseModel):
    startup_id: int
    juror_id: int
    round_name: RoundName = "pitching"


class AssignmentSchedule(BaseModel):
    scheduled_date: datetime
    meeting_link: str | None = None
    notes: str | None = None
    expected_version: int | None = None


class ContentRef(BaseModel):
    startup_id: int
    round_name: RoundName
    communication_type: CommunicationType | None = None
    expected_version: int | None = None


class DraftUpdate(ContentRef):
    subject: str | None = None
    body: str


class ApproveRequest(ContentRef):
    approver_id: str


class BatchRequest(BaseModel):
    kind: ContentKindName
    round_name: RoundName
    communication_type: CommunicationType | None = None
    startup_ids: list[int] = Field(default_factory=list)


class BatchApproveConfirm(BatchRequest):
    approver_id: str
    token: str
    confirmed: bool = False


class DeliveryEventIn(BaseModel):
    message_id: str
    status: Literal["sent", "delivered", "opened", "clicked", "bounced", "failed"]
