"""Dynamic status resolution.

The persisted ``status`` only says how far an exam got through the approval
workflow. Whether students may sit it right now depends on manual control and
on the schedule, so the effective stage is computed on every read and never
stored.
"""
from dataclasses import dataclass
from datetime import datetime

from examhub.models import PRE_APPROVAL_STATUSES, DynamicStatus
from examhub.schemas.exam import ExamRecord


@dataclass(frozen=True)
class ExamAvailability:
    dynamic_status: DynamicStatus
    can_start: bool
    is_expired: bool
    time_remaining_seconds: int


def resolve_dynamic_status(exam: ExamRecord, now: datetime) -> DynamicStatus:
    """
    Compute the effective stage of an exam at ``now``.

    Rules, first match wins:
    1. Pre-approval stages (draft, pending, rejected, cancelled) are returned as is.
    2. Under manual control: completed, else active if live, else approved.
    3. Otherwise the schedule decides; both window boundaries are inclusive.
    """
    if exam.status in PRE_APPROVAL_STATUSES:
        return DynamicStatus(exam.status.value)

    if exam.manual_control:
        if exam.is_completed:
            return DynamicStatus.COMPLETED
        if exam.is_live:
            return DynamicStatus.ACTIVE
        return DynamicStatus.APPROVED

    if now < exam.start_time:
        return DynamicStatus.SCHEDULED
    if now <= exam.end_time:
        return DynamicStatus.ACTIVE
    return DynamicStatus.COMPLETED


def resolve_availability(exam: ExamRecord, now: datetime) -> ExamAvailability:
    """Resolve the student-facing view of an exam at ``now``."""
    dynamic_status = resolve_dynamic_status(exam, now)

    if dynamic_status == DynamicStatus.ACTIVE:
        remaining = exam.end_time - now
    elif dynamic_status == DynamicStatus.SCHEDULED:
        remaining = exam.start_time - now
    else:
        remaining = None

    seconds = max(0, int(remaining.total_seconds())) if remaining is not None else 0

    return ExamAvailability(
        dynamic_status=dynamic_status,
        can_start=dynamic_status == DynamicStatus.ACTIVE,
        is_expired=dynamic_status == DynamicStatus.COMPLETED,
        time_remaining_seconds=seconds,
    )


def can_start_attempt(exam: ExamRecord, now: datetime) -> bool:
    """Whether a student may begin or resume an attempt at ``now``."""
    return resolve_dynamic_status(exam, now) == DynamicStatus.ACTIVE
