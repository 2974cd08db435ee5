"""Request-scoped dependencies for the exam lifecycle services."""
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status

from examhub.core.clock import Clock, system_clock
from examhub.schemas.exam import Operator
from examhub.services.actions import ActionSurface
from examhub.services.exam_store import ExamRecordStore, get_exam_store
from examhub.services.transitions import TransitionAuthority


async def get_current_operator(
    x_operator_id: Annotated[str | None, Header()] = None,
    x_school_id: Annotated[int | None, Header()] = None,
) -> Operator:
    """Identity forwarded by the upstream authentication layer."""
    if not x_operator_id or x_school_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Operator identity headers are missing",
        )
    return Operator(user_id=x_operator_id, school_id=x_school_id)


def get_clock() -> Clock:
    return system_clock


ExamStoreDep = Annotated[ExamRecordStore, Depends(get_exam_store)]
ClockDep = Annotated[Clock, Depends(get_clock)]
OperatorDep = Annotated[Operator, Depends(get_current_operator)]


def get_transition_authority(store: ExamStoreDep, clock: ClockDep) -> TransitionAuthority:
    return TransitionAuthority(store, clock)


def get_action_surface(
    authority: Annotated[TransitionAuthority, Depends(get_transition_authority)],
    store: ExamStoreDep,
    clock: ClockDep,
) -> ActionSurface:
    return ActionSurface(authority, store, clock)


ActionSurfaceDep = Annotated[ActionSurface, Depends(get_action_surface)]
