"""Guarded exam lifecycle transitions.

``TransitionAuthority`` is the only writer of an exam's lifecycle fields. Each
operation reads a fresh snapshot, checks its guards against that snapshot and
then issues a single compare-and-swap keyed on the snapshot's status and
version, so either every field changes or none does.
"""
import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from examhub.config import settings
from examhub.core.clock import Clock
from examhub.core.errors import (
    ConflictError,
    ExamNotFound,
    GuardViolation,
    InvalidTransition,
    ScheduleConflict,
    ValidationError,
)
from examhub.models import (
    CONTROLLABLE_STATUSES,
    DELETABLE_STATUSES,
    ExamAction,
    ExamStatus,
)
from examhub.schemas.exam import ExamRecord, Operator
from examhub.services.exam_store import ExamRecordStore, TransitionEntry

logger = logging.getLogger(__name__)


def _describe(statuses: Iterable[ExamStatus]) -> str:
    return ", ".join(sorted(s.value for s in statuses))


class TransitionAuthority:
    """Validates and applies exam lifecycle transitions."""

    def __init__(self, store: ExamRecordStore, clock: Clock, schedule_conflict_check: bool | None = None):
        self.store = store
        self.clock = clock
        self.schedule_conflict_check = (
            settings.schedule_conflict_check if schedule_conflict_check is None else schedule_conflict_check
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _replayed(
        self, exam_id: int, operator: Operator, action: ExamAction, request_id: str | None
    ) -> bool:
        """Whether this request id was already applied to the exam."""
        if request_id is None:
            return False
        applied = await self.store.find_transition(exam_id, request_id)
        if applied is None:
            return False
        if operator.school_id is not None and applied.school_id != operator.school_id:
            # Someone else's request id; the exam is not visible to this operator
            raise ExamNotFound(exam_id)
        if applied.action != action:
            raise ValidationError(
                f"Request id {request_id} was already used for {applied.action.value}",
                field="request_id",
                exam_id=exam_id,
            )
        logger.info(
            "Transition already applied, returning current state",
            extra={"exam_id": exam_id, "action": action.value, "request_id": request_id, "operator": operator.user_id},
        )
        return True

    async def _snapshot(self, exam_id: int, operator: Operator, expected_version: int | None) -> ExamRecord:
        exam = await self.store.get(exam_id, operator.school_id)
        if expected_version is not None and exam.version != expected_version:
            raise InvalidTransition(
                f"Exam {exam_id} is at version {exam.version}, not {expected_version}",
                exam_id,
            )
        return exam

    @staticmethod
    def _require_status(exam: ExamRecord, action: ExamAction, allowed: Iterable[ExamStatus]) -> None:
        allowed = frozenset(allowed)
        if exam.status not in allowed:
            raise InvalidTransition(
                f"Cannot {action.value} exam {exam.id}: status is {exam.status.value}, "
                f"expected {_describe(allowed)}",
                exam.id,
            )

    async def _swap(
        self,
        exam: ExamRecord,
        action: ExamAction,
        operator: Operator,
        changes: dict[str, Any],
        request_id: str | None,
        now: datetime,
        details: dict[str, Any] | None = None,
    ) -> ExamRecord:
        entry = TransitionEntry(
            action=action,
            performed_by=operator.user_id,
            school_id=exam.school_id,
            request_id=request_id,
            details=details or {},
        )
        try:
            updated = await self.store.compare_and_swap(exam.id, exam.status, exam.version, changes, entry, now)
        except ConflictError as e:
            if await self._replayed(exam.id, operator, action, request_id):
                return await self.store.get(exam.id, operator.school_id)
            raise InvalidTransition(f"Exam {exam.id} was changed by another request", exam.id) from e

        logger.info(
            "Exam transition applied",
            extra={
                "exam_id": exam.id,
                "action": action.value,
                "from_status": exam.status.value,
                "to_status": updated.status.value,
                "operator": operator.user_id,
            },
        )
        return updated

    async def _check_schedule(self, exam: ExamRecord) -> None:
        overlapping = await self.store.find_overlapping(exam)
        if overlapping:
            raise ScheduleConflict(
                f"Exam {exam.id} overlaps {len(overlapping)} scheduled exam(s) of the same class",
                exam.id,
                [
                    {
                        "id": other.id,
                        "title": other.title,
                        "start_time": other.start_time.isoformat(),
                        "end_time": other.end_time.isoformat(),
                    }
                    for other in overlapping
                ],
            )

    # -------------------------------------------------------------------------
    # Approval workflow
    # -------------------------------------------------------------------------

    async def submit_for_approval(
        self,
        exam_id: int,
        author: Operator,
        request_id: str | None = None,
        expected_version: int | None = None,
    ) -> ExamRecord:
        """Send a draft to the school administrators for approval."""
        action = ExamAction.SUBMIT_FOR_APPROVAL
        if await self._replayed(exam_id, author, action, request_id):
            return await self.store.get(exam_id, author.school_id)

        exam = await self._snapshot(exam_id, author, expected_version)
        self._require_status(exam, action, {ExamStatus.DRAFT})
        if exam.end_time <= exam.start_time:
            raise ValidationError("End time must be after start time", field="end_time", exam_id=exam_id)

        return await self._swap(
            exam, action, author, {"status": ExamStatus.PENDING_APPROVAL}, request_id, self.clock.now()
        )

    async def approve(
        self,
        exam_id: int,
        approver: Operator,
        publish_now: bool = False,
        request_id: str | None = None,
        expected_version: int | None = None,
    ) -> ExamRecord:
        """
        Approve a pending exam, optionally publishing it in the same step.

        Args:
            exam_id: Exam to approve
            approver: Administrator approving the exam
            publish_now: Move straight to PUBLISHED instead of APPROVED

        Returns:
            Updated exam snapshot

        Raises:
            InvalidTransition: exam is not pending approval, or changed concurrently
            ScheduleConflict: another approved exam of the same class overlaps the window
        """
        action = ExamAction.APPROVE_AND_PUBLISH if publish_now else ExamAction.APPROVE
        if await self._replayed(exam_id, approver, action, request_id):
            return await self.store.get(exam_id, approver.school_id)

        exam = await self._snapshot(exam_id, approver, expected_version)
        self._require_status(exam, action, {ExamStatus.PENDING_APPROVAL})
        if self.schedule_conflict_check:
            await self._check_schedule(exam)

        now = self.clock.now()
        changes: dict[str, Any] = {
            "status": ExamStatus.PUBLISHED if publish_now else ExamStatus.APPROVED,
            "approver_id": approver.user_id,
            "approved_at": now,
        }
        if publish_now:
            changes["published_at"] = now

        return await self._swap(exam, action, approver, changes, request_id, now, {"publish_now": publish_now})

    async def reject(
        self,
        exam_id: int,
        approver: Operator,
        reason: str | None,
        request_id: str | None = None,
        expected_version: int | None = None,
    ) -> ExamRecord:
        """Reject a pending exam; a non-blank reason is mandatory."""
        action = ExamAction.REJECT
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Rejection reason is required", field="reason", exam_id=exam_id)

        if await self._replayed(exam_id, approver, action, request_id):
            return await self.store.get(exam_id, approver.school_id)

        exam = await self._snapshot(exam_id, approver, expected_version)
        self._require_status(exam, action, {ExamStatus.PENDING_APPROVAL})

        changes = {
            "status": ExamStatus.REJECTED,
            "rejection_reason": reason,
            "approver_id": approver.user_id,
        }
        return await self._swap(exam, action, approver, changes, request_id, self.clock.now(), {"reason": reason})

    async def resubmit(
        self,
        exam_id: int,
        author: Operator,
        request_id: str | None = None,
        expected_version: int | None = None,
    ) -> ExamRecord:
        """Send a rejected exam back for approval after it has been edited."""
        action = ExamAction.RESUBMIT
        if await self._replayed(exam_id, author, action, request_id):
            return await self.store.get(exam_id, author.school_id)

        exam = await self._snapshot(exam_id, author, expected_version)
        self._require_status(exam, action, {ExamStatus.REJECTED})

        changes = {"status": ExamStatus.PENDING_APPROVAL, "rejection_reason": None}
        return await self._swap(
            exam, action, author, changes, request_id, self.clock.now(), {"previous_reason": exam.rejection_reason}
        )

    async def publish(
        self,
        exam_id: int,
        operator: Operator,
        request_id: str | None = None,
        expected_version: int | None = None,
    ) -> ExamRecord:
        """Publish an approved exam."""
        action = ExamAction.PUBLISH
        if await self._replayed(exam_id, operator, action, request_id):
            return await self.store.get(exam_id, operator.school_id)

        exam = await self._snapshot(exam_id, operator, expected_version)
        self._require_status(exam, action, {ExamStatus.APPROVED})

        now = self.clock.now()
        return await self._swap(
            exam, action, operator, {"status": ExamStatus.PUBLISHED, "published_at": now}, request_id, now
        )

    # -------------------------------------------------------------------------
    # Manual control
    # -------------------------------------------------------------------------

    async def enable_manual_control(
        self,
        exam_id: int,
        operator: Operator,
        request_id: str | None = None,
        expected_version: int | None = None,
    ) -> ExamRecord:
        """Hand availability over to the operator; the exam stays closed until made live."""
        action = ExamAction.ENABLE_MANUAL_CONTROL
        if await self._replayed(exam_id, operator, action, request_id):
            return await self.store.get(exam_id, operator.school_id)

        exam = await self._snapshot(exam_id, operator, expected_version)
        self._require_status(exam, action, CONTROLLABLE_STATUSES)

        changes = {"manual_control": True, "is_live": False, "is_completed": False}
        return await self._swap(exam, action, operator, changes, request_id, self.clock.now())

    async def disable_manual_control(
        self,
        exam_id: int,
        operator: Operator,
        request_id: str | None = None,
        expected_version: int | None = None,
    ) -> ExamRecord:
        """Return availability to the schedule."""
        action = ExamAction.DISABLE_MANUAL_CONTROL
        if await self._replayed(exam_id, operator, action, request_id):
            return await self.store.get(exam_id, operator.school_id)

        exam = await self._snapshot(exam_id, operator, expected_version)
        if not exam.manual_control:
            raise InvalidTransition(f"Exam {exam_id} is not under manual control", exam_id)

        return await self._swap(exam, action, operator, {"manual_control": False}, request_id, self.clock.now())

    async def make_live(
        self,
        exam_id: int,
        operator: Operator,
        request_id: str | None = None,
        expected_version: int | None = None,
    ) -> ExamRecord:
        """Open a manually controlled exam to students."""
        action = ExamAction.MAKE_LIVE
        if await self._replayed(exam_id, operator, action, request_id):
            return await self.store.get(exam_id, operator.school_id)

        exam = await self._snapshot(exam_id, operator, expected_version)
        self._require_status(exam, action, CONTROLLABLE_STATUSES)
        if not exam.manual_control:
            raise InvalidTransition(f"Exam {exam_id} is not under manual control", exam_id)
        if exam.is_completed:
            raise InvalidTransition(f"Exam {exam_id} has already been marked completed", exam_id)
        if exam.is_live:
            logger.info("Exam already live", extra={"exam_id": exam_id, "operator": operator.user_id})
            return exam

        return await self._swap(exam, action, operator, {"is_live": True}, request_id, self.clock.now())

    async def mark_completed(
        self,
        exam_id: int,
        operator: Operator,
        request_id: str | None = None,
        expected_version: int | None = None,
    ) -> ExamRecord:
        """Close a live, manually controlled exam."""
        action = ExamAction.MARK_COMPLETED
        if await self._replayed(exam_id, operator, action, request_id):
            return await self.store.get(exam_id, operator.school_id)

        exam = await self._snapshot(exam_id, operator, expected_version)
        if not exam.manual_control:
            raise InvalidTransition(f"Exam {exam_id} is not under manual control", exam_id)
        if not exam.is_live:
            raise InvalidTransition(f"Exam {exam_id} is not live", exam_id)

        changes = {"is_live": False, "is_completed": True}
        return await self._swap(exam, action, operator, changes, request_id, self.clock.now())

    # -------------------------------------------------------------------------
    # Deletion
    # -------------------------------------------------------------------------

    async def delete(
        self,
        exam_id: int,
        operator: Operator,
        request_id: str | None = None,
        expected_version: int | None = None,
    ) -> None:
        """
        Permanently remove an exam.

        Only drafts and rejected exams that no student has attempted can be deleted.
        """
        action = ExamAction.DELETE
        if await self._replayed(exam_id, operator, action, request_id):
            return

        exam = await self._snapshot(exam_id, operator, expected_version)
        if exam.students_attempted > 0:
            raise GuardViolation(
                f"Cannot delete exam {exam_id}: {exam.students_attempted} student(s) have attempted it",
                exam_id,
            )
        if exam.status not in DELETABLE_STATUSES:
            raise GuardViolation(
                f"Cannot delete exam {exam_id} in status {exam.status.value}; "
                f"only {_describe(DELETABLE_STATUSES)} exams can be deleted",
                exam_id,
            )

        entry = TransitionEntry(
            action=action,
            performed_by=operator.user_id,
            school_id=exam.school_id,
            request_id=request_id,
            details={"title": exam.title},
        )
        try:
            await self.store.delete_if(exam.id, exam.status, exam.version, entry, self.clock.now())
        except ConflictError as e:
            if await self._replayed(exam.id, operator, action, request_id):
                return
            raise InvalidTransition(f"Exam {exam_id} was changed by another request", exam_id) from e

        logger.info(
            "Exam deleted",
            extra={"exam_id": exam_id, "from_status": exam.status.value, "operator": operator.user_id},
        )
