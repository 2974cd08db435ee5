from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from examhub.core.clock import naive_utc
from examhub.models import DynamicStatus, ExamAction, ExamStatus


class ExamRecord(BaseModel):
    """Snapshot of a persisted exam as read from the record store."""

    id: int
    school_id: int
    class_id: int | None = None
    title: str
    status: ExamStatus
    start_time: datetime
    end_time: datetime
    manual_control: bool = False
    is_live: bool = False
    is_completed: bool = False
    rejection_reason: str | None = None
    students_attempted: int = 0
    approver_id: str | None = None
    approved_at: datetime | None = None
    published_at: datetime | None = None
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True
        frozen = True


class ExamCreate(BaseModel):
    """Schema for creating a draft exam."""

    title: str = Field(..., min_length=1, max_length=255)
    class_id: int | None = None
    start_time: datetime
    end_time: datetime

    @field_validator("start_time", "end_time")
    @classmethod
    def to_naive_utc(cls, v: datetime) -> datetime:
        return naive_utc(v)

    @model_validator(mode="after")
    def check_window(self) -> "ExamCreate":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class ExamResponse(ExamRecord):
    """Exam with its freshly resolved dynamic status and legal actions."""

    dynamic_status: DynamicStatus
    available_actions: list[ExamAction]


class ExamListResponse(BaseModel):
    """Schema for paginated exam list response."""

    items: list[ExamResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class ExamAvailabilityResponse(BaseModel):
    """Student-facing entry check."""

    exam_id: int
    dynamic_status: DynamicStatus
    can_start: bool
    is_expired: bool
    time_remaining_seconds: int
    checked_at: datetime


class ActionRequest(BaseModel):
    """Operator request to perform one action on an exam."""

    action: ExamAction
    reason: str | None = None
    confirmed: bool = False
    request_id: str | None = Field(None, max_length=64)
    expected_version: int | None = None


class ConfirmedRequest(BaseModel):
    """Body for the named action shortcuts."""

    confirmed: bool = False
    request_id: str | None = Field(None, max_length=64)
    expected_version: int | None = None


class ApproveRequest(ConfirmedRequest):
    publish_now: bool = False


class RejectRequest(ConfirmedRequest):
    reason: str | None = None


class BulkActionRequest(BaseModel):
    """Same action applied independently to several exams."""

    exam_ids: list[int] = Field(..., min_length=1, max_length=100)
    action: ExamAction
    reason: str | None = None
    confirmed: bool = False


class ActionResultResponse(BaseModel):
    """Outcome of one action."""

    exam_id: int
    action: ExamAction
    success: bool
    message: str
    error: str | None = None
    field: str | None = None
    conflicts: list[dict[str, Any]] | None = None
    exam: ExamResponse | None = None


class BulkActionResponse(BaseModel):
    results: list[ActionResultResponse]
    succeeded: int
    failed: int


class TransitionRecord(BaseModel):
    """One applied transition from the audit trail."""

    id: int
    exam_id: int
    school_id: int | None = None
    action: ExamAction
    from_status: ExamStatus
    to_status: ExamStatus | None
    performed_by: str
    request_id: str | None
    details: dict[str, Any] | None
    timestamp: datetime

    class Config:
        from_attributes = True


class Operator(BaseModel):
    """Identity of the user requesting a transition, as established by the auth layer."""

    user_id: str = Field(..., min_length=1, max_length=64)
    school_id: int | None = None  # None = not tenant-scoped (system jobs)
