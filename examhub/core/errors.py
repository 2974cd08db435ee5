"""Exam lifecycle error taxonomy."""
from typing import Any


class ExamLifecycleError(Exception):
    """Base class for errors scoped to a single exam's transition attempt."""

    def __init__(self, message: str, exam_id: int | None = None):
        super().__init__(message)
        self.message = message
        self.exam_id = exam_id


class ExamNotFound(ExamLifecycleError):
    """The exam does not exist or belongs to another school."""

    def __init__(self, exam_id: int):
        super().__init__(f"Exam {exam_id} not found", exam_id)


class InvalidTransition(ExamLifecycleError):
    """The transition's precondition on status or flags does not hold."""


class ConflictError(InvalidTransition):
    """A concurrent write changed the exam between read and write."""


class ValidationError(ExamLifecycleError):
    """Caller-supplied data is malformed."""

    def __init__(self, message: str, field: str, exam_id: int | None = None):
        super().__init__(message, exam_id)
        self.field = field


class GuardViolation(ExamLifecycleError):
    """Applying the transition would break a structural invariant."""


class ScheduleConflict(GuardViolation):
    """Approving the exam would overlap another scheduled exam of the same class."""

    def __init__(self, message: str, exam_id: int, conflicts: list[dict[str, Any]]):
        super().__init__(message, exam_id)
        self.conflicts = conflicts
