from fastapi import APIRouter, HTTPException, Query, status

from examhub.core.errors import ExamNotFound
from examhub.dependencies.lifecycle import ActionSurfaceDep, ClockDep, ExamStoreDep, OperatorDep
from examhub.models import DynamicStatus, ExamAction, ExamStatus
from examhub.schemas.exam import (
    ActionRequest,
    ActionResultResponse,
    ApproveRequest,
    BulkActionRequest,
    BulkActionResponse,
    ConfirmedRequest,
    ExamAvailabilityResponse,
    ExamCreate,
    ExamListResponse,
    ExamRecord,
    ExamResponse,
    Operator,
    RejectRequest,
    TransitionRecord,
)
from examhub.services.actions import ActionResult, ActionSurface, present
from examhub.services.exam_store import ExamRecordStore
from examhub.services.status_resolver import resolve_availability, resolve_dynamic_status

router = APIRouter(prefix="/api/v1/exams", tags=["exams"])

STATUS_BY_ERROR = {
    "invalid_transition": status.HTTP_409_CONFLICT,
    "conflict": status.HTTP_409_CONFLICT,
    "schedule_conflict": status.HTTP_409_CONFLICT,
    "guard_violation": status.HTTP_400_BAD_REQUEST,
    "validation_error": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "not_found": status.HTTP_404_NOT_FOUND,
}


def _respond(result: ActionResult) -> ActionResultResponse:
    """Return a successful result, or raise the HTTP error matching a failed one."""
    if not result.success:
        detail: dict = {"message": result.message, "error": result.error}
        if result.field:
            detail["field"] = result.field
        if result.conflicts:
            detail["conflicts"] = result.conflicts
        raise HTTPException(
            status_code=STATUS_BY_ERROR.get(result.error or "", status.HTTP_400_BAD_REQUEST),
            detail=detail,
        )
    return ActionResultResponse(**vars(result))


async def _get_exam(store: ExamRecordStore, exam_id: int, school_id: int | None) -> ExamRecord:
    try:
        return await store.get(exam_id, school_id)
    except ExamNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Exam not found")


@router.post("", response_model=ExamResponse, status_code=status.HTTP_201_CREATED)
async def create_exam(exam: ExamCreate, operator: OperatorDep, store: ExamStoreDep, clock: ClockDep) -> ExamResponse:
    """Create a draft exam."""
    now = clock.now()
    record = await store.create(operator.school_id, exam, now)
    return present(record, now)


@router.get("", response_model=ExamListResponse)
async def list_exams(
    operator: OperatorDep,
    store: ExamStoreDep,
    clock: ClockDep,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    exam_status: ExamStatus | None = Query(None, alias="status"),
    dynamic_status: DynamicStatus | None = Query(None),
) -> ExamListResponse:
    """List the school's exams with their dynamic status, optionally filtered by stored or dynamic status."""
    offset = (page - 1) * page_size
    now = clock.now()

    if dynamic_status is None:
        exams, total = await store.list_exams(operator.school_id, exam_status, offset, page_size)
    else:
        # Dynamic status depends on the clock, so it cannot be filtered in the query
        candidates, _ = await store.list_exams(operator.school_id, exam_status)
        matching = [exam for exam in candidates if resolve_dynamic_status(exam, now) == dynamic_status]
        total = len(matching)
        exams = matching[offset : offset + page_size]

    total_pages = (total + page_size - 1) // page_size if total > 0 else 0

    return ExamListResponse(
        items=[present(exam, now) for exam in exams],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=total_pages,
    )


@router.post("/bulk-action", response_model=BulkActionResponse)
async def bulk_action(request: BulkActionRequest, operator: OperatorDep, surface: ActionSurfaceDep) -> BulkActionResponse:
    """Apply one action to several exams; each exam succeeds or fails on its own."""
    results = await surface.perform_bulk(
        request.exam_ids, request.action, operator, reason=request.reason, confirmed=request.confirmed
    )
    succeeded = sum(1 for result in results if result.success)
    return BulkActionResponse(
        results=[ActionResultResponse(**vars(result)) for result in results],
        succeeded=succeeded,
        failed=len(results) - succeeded,
    )


@router.get("/{exam_id}", response_model=ExamResponse)
async def get_exam(exam_id: int, operator: OperatorDep, store: ExamStoreDep, clock: ClockDep) -> ExamResponse:
    """Get exam details with dynamic status and available actions."""
    exam = await _get_exam(store, exam_id, operator.school_id)
    return present(exam, clock.now())


@router.get("/{exam_id}/availability", response_model=ExamAvailabilityResponse)
async def get_exam_availability(
    exam_id: int, operator: OperatorDep, store: ExamStoreDep, clock: ClockDep
) -> ExamAvailabilityResponse:
    """Whether students may start or resume the exam right now."""
    exam = await _get_exam(store, exam_id, operator.school_id)
    now = clock.now()
    availability = resolve_availability(exam, now)
    return ExamAvailabilityResponse(
        exam_id=exam.id,
        dynamic_status=availability.dynamic_status,
        can_start=availability.can_start,
        is_expired=availability.is_expired,
        time_remaining_seconds=availability.time_remaining_seconds,
        checked_at=now,
    )


@router.get("/{exam_id}/history", response_model=list[TransitionRecord])
async def get_exam_history(exam_id: int, operator: OperatorDep, store: ExamStoreDep) -> list[TransitionRecord]:
    """Transitions applied to the exam, oldest first; still readable after the exam is deleted."""
    history = await store.history(exam_id, operator.school_id)
    if not history:
        # A new draft has no transitions yet; anything else unknown to this school is a 404
        await _get_exam(store, exam_id, operator.school_id)
    return history


@router.post("/{exam_id}/actions", response_model=ActionResultResponse)
async def perform_action(
    exam_id: int, request: ActionRequest, operator: OperatorDep, surface: ActionSurfaceDep
) -> ActionResultResponse:
    """Perform any available action on the exam."""
    result = await surface.perform(
        exam_id,
        request.action,
        operator,
        reason=request.reason,
        confirmed=request.confirmed,
        request_id=request.request_id,
        expected_version=request.expected_version,
    )
    return _respond(result)


async def _perform(
    surface: ActionSurface,
    exam_id: int,
    action: ExamAction,
    operator: Operator,
    request: ConfirmedRequest,
    reason: str | None = None,
) -> ActionResultResponse:
    result = await surface.perform(
        exam_id,
        action,
        operator,
        reason=reason,
        confirmed=request.confirmed,
        request_id=request.request_id,
        expected_version=request.expected_version,
    )
    return _respond(result)


@router.post("/{exam_id}/submit", response_model=ActionResultResponse)
async def submit_exam(
    exam_id: int, request: ConfirmedRequest, operator: OperatorDep, surface: ActionSurfaceDep
) -> ActionResultResponse:
    """Submit a draft exam for approval."""
    return await _perform(surface, exam_id, ExamAction.SUBMIT_FOR_APPROVAL, operator, request)


@router.post("/{exam_id}/resubmit", response_model=ActionResultResponse)
async def resubmit_exam(
    exam_id: int, request: ConfirmedRequest, operator: OperatorDep, surface: ActionSurfaceDep
) -> ActionResultResponse:
    """Resubmit a rejected exam for approval."""
    return await _perform(surface, exam_id, ExamAction.RESUBMIT, operator, request)


@router.post("/{exam_id}/approve", response_model=ActionResultResponse)
async def approve_exam(
    exam_id: int, request: ApproveRequest, operator: OperatorDep, surface: ActionSurfaceDep
) -> ActionResultResponse:
    """Approve a pending exam, optionally publishing it."""
    action = ExamAction.APPROVE_AND_PUBLISH if request.publish_now else ExamAction.APPROVE
    return await _perform(surface, exam_id, action, operator, request)


@router.post("/{exam_id}/reject", response_model=ActionResultResponse)
async def reject_exam(
    exam_id: int, request: RejectRequest, operator: OperatorDep, surface: ActionSurfaceDep
) -> ActionResultResponse:
    """Reject a pending exam with a reason."""
    return await _perform(surface, exam_id, ExamAction.REJECT, operator, request, reason=request.reason)


@router.post("/{exam_id}/publish", response_model=ActionResultResponse)
async def publish_exam(
    exam_id: int, request: ConfirmedRequest, operator: OperatorDep, surface: ActionSurfaceDep
) -> ActionResultResponse:
    """Publish an approved exam."""
    return await _perform(surface, exam_id, ExamAction.PUBLISH, operator, request)


@router.post("/{exam_id}/manual-control", response_model=ActionResultResponse)
async def toggle_manual_control(
    exam_id: int, request: ConfirmedRequest, operator: OperatorDep, surface: ActionSurfaceDep
) -> ActionResultResponse:
    """Enable manual control if it is off, disable it if it is on."""
    result = await surface.toggle_manual_control(
        exam_id,
        operator,
        confirmed=request.confirmed,
        request_id=request.request_id,
        expected_version=request.expected_version,
    )
    return _respond(result)


@router.post("/{exam_id}/make-live", response_model=ActionResultResponse)
async def make_exam_live(
    exam_id: int, request: ConfirmedRequest, operator: OperatorDep, surface: ActionSurfaceDep
) -> ActionResultResponse:
    """Open a manually controlled exam to students."""
    return await _perform(surface, exam_id, ExamAction.MAKE_LIVE, operator, request)


@router.post("/{exam_id}/mark-completed", response_model=ActionResultResponse)
async def mark_exam_completed(
    exam_id: int, request: ConfirmedRequest, operator: OperatorDep, surface: ActionSurfaceDep
) -> ActionResultResponse:
    """Close a live, manually controlled exam."""
    return await _perform(surface, exam_id, ExamAction.MARK_COMPLETED, operator, request)


@router.delete("/{exam_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_exam(
    exam_id: int,
    operator: OperatorDep,
    surface: ActionSurfaceDep,
    confirmed: bool = Query(False),
    request_id: str | None = Query(None, max_length=64),
) -> None:
    """Delete a draft or rejected exam that no student has attempted."""
    result = await surface.perform(exam_id, ExamAction.DELETE, operator, confirmed=confirmed, request_id=request_id)
    _respond(result)
