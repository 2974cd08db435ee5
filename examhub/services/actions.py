"""Operator-facing actions on exams.

The action surface decides which actions are offered for an exam, collects
the confirmation and rejection reason an action needs, forwards the request to
the transition authority and turns any lifecycle error into a message the
operator can act on. It never writes exam fields itself.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from examhub.core.clock import Clock
from examhub.core.errors import (
    ConflictError,
    ExamLifecycleError,
    ExamNotFound,
    GuardViolation,
    InvalidTransition,
    ScheduleConflict,
    ValidationError,
)
from examhub.models import (
    CONTROLLABLE_STATUSES,
    DELETABLE_STATUSES,
    DynamicStatus,
    ExamAction,
    ExamStatus,
)
from examhub.schemas.exam import ExamRecord, ExamResponse, Operator
from examhub.services.exam_store import ExamRecordStore
from examhub.services.status_resolver import resolve_dynamic_status
from examhub.services.transitions import TransitionAuthority

logger = logging.getLogger(__name__)

STALE_STATE_MESSAGE = "This exam's state changed, please refresh."

SUCCESS_MESSAGES = {
    ExamAction.SUBMIT_FOR_APPROVAL: "Exam submitted for approval",
    ExamAction.RESUBMIT: "Exam resubmitted for approval",
    ExamAction.APPROVE: "Exam approved",
    ExamAction.APPROVE_AND_PUBLISH: "Exam approved and published",
    ExamAction.REJECT: "Exam rejected",
    ExamAction.PUBLISH: "Exam published",
    ExamAction.ENABLE_MANUAL_CONTROL: "Manual control enabled",
    ExamAction.DISABLE_MANUAL_CONTROL: "Manual control disabled",
    ExamAction.MAKE_LIVE: "Exam is now live",
    ExamAction.MARK_COMPLETED: "Exam marked as completed",
    ExamAction.DELETE: "Exam deleted",
}


def available_actions(exam: ExamRecord, now: datetime) -> frozenset[ExamAction]:
    """
    Actions that are legal for the exam as it stands at ``now``.

    Actions that are not legal are left out entirely rather than offered in a
    disabled state.
    """
    actions: set[ExamAction] = set()

    if exam.status == ExamStatus.DRAFT:
        actions.add(ExamAction.SUBMIT_FOR_APPROVAL)
    elif exam.status == ExamStatus.REJECTED:
        actions.add(ExamAction.RESUBMIT)
    elif exam.status == ExamStatus.PENDING_APPROVAL:
        actions.update({ExamAction.APPROVE, ExamAction.APPROVE_AND_PUBLISH, ExamAction.REJECT})
    elif exam.status == ExamStatus.APPROVED:
        actions.add(ExamAction.PUBLISH)

    if exam.status in CONTROLLABLE_STATUSES:
        if not exam.manual_control:
            actions.add(ExamAction.ENABLE_MANUAL_CONTROL)
        else:
            actions.add(ExamAction.DISABLE_MANUAL_CONTROL)
            # Under manual control APPROVED means not yet opened and ACTIVE means live
            dynamic_status = resolve_dynamic_status(exam, now)
            if dynamic_status == DynamicStatus.APPROVED:
                actions.add(ExamAction.MAKE_LIVE)
            elif dynamic_status == DynamicStatus.ACTIVE:
                actions.add(ExamAction.MARK_COMPLETED)

    if exam.status in DELETABLE_STATUSES and exam.students_attempted == 0:
        actions.add(ExamAction.DELETE)

    return frozenset(actions)


def present(exam: ExamRecord, now: datetime) -> ExamResponse:
    """Attach the dynamic status and legal actions resolved at ``now``."""
    return ExamResponse(
        **exam.model_dump(),
        dynamic_status=resolve_dynamic_status(exam, now),
        available_actions=sorted(available_actions(exam, now), key=lambda a: a.value),
    )


def error_kind(error: ExamLifecycleError) -> str:
    """Stable name of an error's category."""
    # Order matters: subclasses first
    if isinstance(error, ScheduleConflict):
        return "schedule_conflict"
    if isinstance(error, ConflictError):
        return "conflict"
    if isinstance(error, InvalidTransition):
        return "invalid_transition"
    if isinstance(error, ValidationError):
        return "validation_error"
    if isinstance(error, GuardViolation):
        return "guard_violation"
    if isinstance(error, ExamNotFound):
        return "not_found"
    return "error"


def user_message(error: ExamLifecycleError) -> str:
    """Message shown to the operator for a failed action."""
    if isinstance(error, InvalidTransition):
        return STALE_STATE_MESSAGE
    return error.message


@dataclass
class ActionResult:
    """Outcome of one requested action; failures carry a user-facing message instead of raising."""

    exam_id: int
    action: ExamAction
    success: bool
    message: str
    exam: ExamResponse | None = None
    error: str | None = None
    field: str | None = None
    conflicts: list[dict[str, Any]] | None = None


class ActionSurface:
    """Maps operator actions 1:1 onto transition authority calls."""

    def __init__(self, authority: TransitionAuthority, store: ExamRecordStore, clock: Clock):
        self.authority = authority
        self.store = store
        self.clock = clock

    async def _dispatch(
        self,
        exam_id: int,
        action: ExamAction,
        operator: Operator,
        reason: str | None,
        request_id: str | None,
        expected_version: int | None,
    ) -> ExamRecord | None:
        authority = self.authority
        kwargs: dict[str, Any] = {"request_id": request_id, "expected_version": expected_version}

        if action == ExamAction.SUBMIT_FOR_APPROVAL:
            return await authority.submit_for_approval(exam_id, operator, **kwargs)
        if action == ExamAction.RESUBMIT:
            return await authority.resubmit(exam_id, operator, **kwargs)
        if action == ExamAction.APPROVE:
            return await authority.approve(exam_id, operator, publish_now=False, **kwargs)
        if action == ExamAction.APPROVE_AND_PUBLISH:
            return await authority.approve(exam_id, operator, publish_now=True, **kwargs)
        if action == ExamAction.REJECT:
            return await authority.reject(exam_id, operator, reason, **kwargs)
        if action == ExamAction.PUBLISH:
            return await authority.publish(exam_id, operator, **kwargs)
        if action == ExamAction.ENABLE_MANUAL_CONTROL:
            return await authority.enable_manual_control(exam_id, operator, **kwargs)
        if action == ExamAction.DISABLE_MANUAL_CONTROL:
            return await authority.disable_manual_control(exam_id, operator, **kwargs)
        if action == ExamAction.MAKE_LIVE:
            return await authority.make_live(exam_id, operator, **kwargs)
        if action == ExamAction.MARK_COMPLETED:
            return await authority.mark_completed(exam_id, operator, **kwargs)
        if action == ExamAction.DELETE:
            await authority.delete(exam_id, operator, **kwargs)
            return None
        raise ValueError(f"Unsupported action: {action}")

    async def perform(
        self,
        exam_id: int,
        action: ExamAction,
        operator: Operator,
        *,
        reason: str | None = None,
        confirmed: bool = False,
        request_id: str | None = None,
        expected_version: int | None = None,
    ) -> ActionResult:
        """
        Perform one action after the operator confirmed it.

        The exam in the result is re-read from the store and resolved against
        the clock at response time.
        """
        try:
            if not confirmed:
                raise ValidationError("Please confirm this action", field="confirmed", exam_id=exam_id)
            if action == ExamAction.REJECT and not (reason or "").strip():
                raise ValidationError("Please provide a reason for rejecting this exam", field="reason", exam_id=exam_id)

            await self._dispatch(exam_id, action, operator, reason, request_id, expected_version)
        except ExamLifecycleError as e:
            logger.warning(
                "Exam action refused",
                extra={"exam_id": exam_id, "action": action.value, "reason_code": error_kind(e), "detail": e.message},
            )
            return ActionResult(
                exam_id=exam_id,
                action=action,
                success=False,
                message=user_message(e),
                error=error_kind(e),
                field=getattr(e, "field", None),
                conflicts=getattr(e, "conflicts", None),
            )

        exam = None
        if action != ExamAction.DELETE:
            exam = present(await self.store.get(exam_id, operator.school_id), self.clock.now())
        return ActionResult(
            exam_id=exam_id,
            action=action,
            success=True,
            message=SUCCESS_MESSAGES[action],
            exam=exam,
        )

    async def toggle_manual_control(
        self,
        exam_id: int,
        operator: Operator,
        *,
        confirmed: bool = False,
        request_id: str | None = None,
        expected_version: int | None = None,
    ) -> ActionResult:
        """Enable or disable manual control depending on the exam's current setting."""
        try:
            exam = await self.store.get(exam_id, operator.school_id)
        except ExamNotFound as e:
            return ActionResult(
                exam_id=exam_id,
                action=ExamAction.ENABLE_MANUAL_CONTROL,
                success=False,
                message=user_message(e),
                error=error_kind(e),
            )

        action = ExamAction.DISABLE_MANUAL_CONTROL if exam.manual_control else ExamAction.ENABLE_MANUAL_CONTROL
        return await self.perform(
            exam_id,
            action,
            operator,
            confirmed=confirmed,
            request_id=request_id,
            expected_version=expected_version,
        )

    async def perform_bulk(
        self,
        exam_ids: list[int],
        action: ExamAction,
        operator: Operator,
        *,
        reason: str | None = None,
        confirmed: bool = False,
    ) -> list[ActionResult]:
        """Apply the same action to each exam independently."""
        results = []
        for exam_id in dict.fromkeys(exam_ids):
            results.append(await self.perform(exam_id, action, operator, reason=reason, confirmed=confirmed))
        return results
