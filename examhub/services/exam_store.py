"""Exam record store backends.

Every lifecycle write goes through ``compare_and_swap`` or ``delete_if``: the
write only lands if the exam still has the status and version the caller read,
and the matching audit entry is written in the same unit of work.
"""
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from examhub.config import settings
from examhub.core.errors import ConflictError, ExamNotFound
from examhub.dependencies.database import get_sessionmanager
from examhub.models import CONTROLLABLE_STATUSES, Exam, ExamAction, ExamStatus, ExamTransitionLog
from examhub.schemas.exam import ExamCreate, ExamRecord, TransitionRecord

logger = logging.getLogger(__name__)


@dataclass
class TransitionEntry:
    """Audit entry supplied by the transition authority alongside a write."""

    action: ExamAction
    performed_by: str
    school_id: int | None = None
    request_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


class ExamRecordStore(ABC):
    """Abstract base class for exam record stores."""

    @abstractmethod
    async def create(self, school_id: int, data: ExamCreate, now: datetime) -> ExamRecord:
        """Persist a new draft exam."""
        pass

    @abstractmethod
    async def get(self, exam_id: int, school_id: int | None = None) -> ExamRecord:
        """
        Read the current snapshot of an exam.

        Raises ExamNotFound when the exam does not exist or belongs to another school.
        """
        pass

    @abstractmethod
    async def list_exams(
        self,
        school_id: int,
        status: ExamStatus | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> tuple[list[ExamRecord], int]:
        """Return a page of a school's exams and the total count."""
        pass

    @abstractmethod
    async def compare_and_swap(
        self,
        exam_id: int,
        expected_status: ExamStatus,
        expected_version: int,
        changes: dict[str, Any],
        entry: TransitionEntry,
        now: datetime,
    ) -> ExamRecord:
        """
        Apply ``changes`` only if the exam still has ``expected_status`` and ``expected_version``.

        Raises ConflictError when another write got there first.
        """
        pass

    @abstractmethod
    async def delete_if(
        self,
        exam_id: int,
        expected_status: ExamStatus,
        expected_version: int,
        entry: TransitionEntry,
        now: datetime,
    ) -> None:
        """
        Delete the exam only if it is unchanged and no student has attempted it.

        Raises ConflictError otherwise.
        """
        pass

    @abstractmethod
    async def find_transition(self, exam_id: int, request_id: str) -> TransitionRecord | None:
        """Find a transition already applied under the given request id."""
        pass

    @abstractmethod
    async def history(self, exam_id: int, school_id: int | None = None) -> list[TransitionRecord]:
        """Return the transitions applied to an exam, oldest first, including after it was deleted."""
        pass

    @abstractmethod
    async def find_overlapping(self, exam: ExamRecord) -> list[ExamRecord]:
        """Approved or published exams of the same school and class whose window overlaps ``exam``."""
        pass


class SqlExamRecordStore(ExamRecordStore):
    """SQLAlchemy-backed store using conditional UPDATE/DELETE statements."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _load(self, exam_id: int, school_id: int | None = None) -> Exam | None:
        stmt = select(Exam).where(Exam.id == exam_id).execution_options(populate_existing=True)
        if school_id is not None:
            stmt = stmt.where(Exam.school_id == school_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, school_id: int, data: ExamCreate, now: datetime) -> ExamRecord:
        db_exam = Exam(
            school_id=school_id,
            class_id=data.class_id,
            title=data.title,
            status=ExamStatus.DRAFT,
            start_time=data.start_time,
            end_time=data.end_time,
            created_at=now,
            updated_at=now,
        )
        self.session.add(db_exam)
        await self.session.commit()
        await self.session.refresh(db_exam)
        logger.info("Created draft exam", extra={"exam_id": db_exam.id, "school_id": school_id})
        return ExamRecord.model_validate(db_exam)

    async def get(self, exam_id: int, school_id: int | None = None) -> ExamRecord:
        exam = await self._load(exam_id, school_id)
        if not exam:
            raise ExamNotFound(exam_id)
        return ExamRecord.model_validate(exam)

    async def list_exams(
        self,
        school_id: int,
        status: ExamStatus | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> tuple[list[ExamRecord], int]:
        base_stmt = select(Exam).where(Exam.school_id == school_id)
        count_stmt = select(func.count(Exam.id)).where(Exam.school_id == school_id)
        if status is not None:
            base_stmt = base_stmt.where(Exam.status == status)
            count_stmt = count_stmt.where(Exam.status == status)

        count_result = await self.session.execute(count_stmt)
        total = count_result.scalar() or 0

        stmt = base_stmt.order_by(Exam.start_time.desc(), Exam.id.desc()).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return [ExamRecord.model_validate(exam) for exam in result.scalars().all()], total

    async def _commit_entry(self, exam_id: int, from_status: ExamStatus, to_status: ExamStatus | None, entry: TransitionEntry, now: datetime) -> None:
        self.session.add(
            ExamTransitionLog(
                exam_id=exam_id,
                school_id=entry.school_id,
                action=entry.action,
                from_status=from_status,
                to_status=to_status,
                performed_by=entry.performed_by,
                request_id=entry.request_id,
                details=entry.details or None,
                timestamp=now,
            )
        )
        try:
            await self.session.commit()
        except IntegrityError as e:
            # Same request id applied concurrently
            await self.session.rollback()
            raise ConflictError(f"Request {entry.request_id} was already applied to exam {exam_id}", exam_id) from e

    async def compare_and_swap(
        self,
        exam_id: int,
        expected_status: ExamStatus,
        expected_version: int,
        changes: dict[str, Any],
        entry: TransitionEntry,
        now: datetime,
    ) -> ExamRecord:
        stmt = (
            update(Exam)
            .where(
                Exam.id == exam_id,
                Exam.status == expected_status,
                Exam.version == expected_version,
            )
            .values(**changes, version=Exam.version + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            await self.session.rollback()
            raise ConflictError(f"Exam {exam_id} changed since version {expected_version}", exam_id)

        await self._commit_entry(exam_id, expected_status, changes.get("status", expected_status), entry, now)
        return await self.get(exam_id)

    async def delete_if(
        self,
        exam_id: int,
        expected_status: ExamStatus,
        expected_version: int,
        entry: TransitionEntry,
        now: datetime,
    ) -> None:
        stmt = (
            delete(Exam)
            .where(
                Exam.id == exam_id,
                Exam.status == expected_status,
                Exam.version == expected_version,
                Exam.students_attempted == 0,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            await self.session.rollback()
            raise ConflictError(f"Exam {exam_id} changed since version {expected_version}", exam_id)

        await self._commit_entry(exam_id, expected_status, None, entry, now)

    async def find_transition(self, exam_id: int, request_id: str) -> TransitionRecord | None:
        stmt = select(ExamTransitionLog).where(
            ExamTransitionLog.exam_id == exam_id, ExamTransitionLog.request_id == request_id
        )
        result = await self.session.execute(stmt)
        log = result.scalar_one_or_none()
        return TransitionRecord.model_validate(log) if log else None

    async def history(self, exam_id: int, school_id: int | None = None) -> list[TransitionRecord]:
        stmt = (
            select(ExamTransitionLog)
            .where(ExamTransitionLog.exam_id == exam_id)
            .order_by(ExamTransitionLog.timestamp, ExamTransitionLog.id)
        )
        if school_id is not None:
            stmt = stmt.where(ExamTransitionLog.school_id == school_id)
        result = await self.session.execute(stmt)
        return [TransitionRecord.model_validate(log) for log in result.scalars().all()]

    async def find_overlapping(self, exam: ExamRecord) -> list[ExamRecord]:
        class_filter = Exam.class_id.is_(None) if exam.class_id is None else Exam.class_id == exam.class_id
        stmt = (
            select(Exam)
            .where(
                Exam.school_id == exam.school_id,
                class_filter,
                Exam.id != exam.id,
                Exam.status.in_(list(CONTROLLABLE_STATUSES)),
                Exam.start_time <= exam.end_time,
                Exam.end_time >= exam.start_time,
            )
            .order_by(Exam.start_time)
        )
        result = await self.session.execute(stmt)
        return [ExamRecord.model_validate(other) for other in result.scalars().all()]


class InMemoryExamRecordStore(ExamRecordStore):
    """Process-local store; each operation completes without yielding to the event loop."""

    def __init__(self):
        self._exams: dict[int, ExamRecord] = {}
        self._logs: list[TransitionRecord] = []
        self._next_exam_id = 1

    def put(self, exam: ExamRecord) -> ExamRecord:
        """Insert or replace a snapshot as-is."""
        self._exams[exam.id] = exam
        self._next_exam_id = max(self._next_exam_id, exam.id + 1)
        return exam

    async def create(self, school_id: int, data: ExamCreate, now: datetime) -> ExamRecord:
        exam = ExamRecord(
            id=self._next_exam_id,
            school_id=school_id,
            class_id=data.class_id,
            title=data.title,
            status=ExamStatus.DRAFT,
            start_time=data.start_time,
            end_time=data.end_time,
            created_at=now,
            updated_at=now,
        )
        return self.put(exam)

    async def get(self, exam_id: int, school_id: int | None = None) -> ExamRecord:
        exam = self._exams.get(exam_id)
        if exam is None or (school_id is not None and exam.school_id != school_id):
            raise ExamNotFound(exam_id)
        return exam

    async def list_exams(
        self,
        school_id: int,
        status: ExamStatus | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> tuple[list[ExamRecord], int]:
        exams = [
            exam
            for exam in self._exams.values()
            if exam.school_id == school_id and (status is None or exam.status == status)
        ]
        exams.sort(key=lambda e: (e.start_time, e.id), reverse=True)
        end = None if limit is None else offset + limit
        return exams[offset:end], len(exams)

    def _matches(self, exam_id: int, expected_status: ExamStatus, expected_version: int) -> ExamRecord:
        current = self._exams.get(exam_id)
        if current is None or current.status != expected_status or current.version != expected_version:
            raise ConflictError(f"Exam {exam_id} changed since version {expected_version}", exam_id)
        return current

    def _append_entry(self, exam_id: int, from_status: ExamStatus, to_status: ExamStatus | None, entry: TransitionEntry, now: datetime) -> None:
        if entry.request_id is not None and any(
            log.exam_id == exam_id and log.request_id == entry.request_id for log in self._logs
        ):
            raise ConflictError(f"Request {entry.request_id} was already applied to exam {exam_id}", exam_id)
        self._logs.append(
            TransitionRecord(
                id=len(self._logs) + 1,
                exam_id=exam_id,
                school_id=entry.school_id,
                action=entry.action,
                from_status=from_status,
                to_status=to_status,
                performed_by=entry.performed_by,
                request_id=entry.request_id,
                details=entry.details or None,
                timestamp=now,
            )
        )

    async def compare_and_swap(
        self,
        exam_id: int,
        expected_status: ExamStatus,
        expected_version: int,
        changes: dict[str, Any],
        entry: TransitionEntry,
        now: datetime,
    ) -> ExamRecord:
        current = self._matches(exam_id, expected_status, expected_version)
        self._append_entry(exam_id, expected_status, changes.get("status", expected_status), entry, now)
        updated = current.model_copy(update={**changes, "version": current.version + 1, "updated_at": now})
        self._exams[exam_id] = updated
        return updated

    async def delete_if(
        self,
        exam_id: int,
        expected_status: ExamStatus,
        expected_version: int,
        entry: TransitionEntry,
        now: datetime,
    ) -> None:
        current = self._matches(exam_id, expected_status, expected_version)
        if current.students_attempted != 0:
            raise ConflictError(f"Exam {exam_id} has been attempted", exam_id)
        self._append_entry(exam_id, expected_status, None, entry, now)
        del self._exams[exam_id]

    async def find_transition(self, exam_id: int, request_id: str) -> TransitionRecord | None:
        for log in self._logs:
            if log.exam_id == exam_id and log.request_id == request_id:
                return log
        return None

    async def history(self, exam_id: int, school_id: int | None = None) -> list[TransitionRecord]:
        return [
            log
            for log in self._logs
            if log.exam_id == exam_id and (school_id is None or log.school_id == school_id)
        ]

    async def find_overlapping(self, exam: ExamRecord) -> list[ExamRecord]:
        return sorted(
            (
                other
                for other in self._exams.values()
                if other.school_id == exam.school_id
                and other.class_id == exam.class_id
                and other.id != exam.id
                and other.status in CONTROLLABLE_STATUSES
                and other.start_time <= exam.end_time
                and other.end_time >= exam.start_time
            ),
            key=lambda other: other.start_time,
        )


# Global in-memory store, used when EXAM_STORE_BACKEND=memory
memory_store = InMemoryExamRecordStore()


async def get_exam_store() -> AsyncIterator[ExamRecordStore]:
    """Yield the configured exam record store for one request."""
    backend_type = settings.exam_store_backend.lower()
    if backend_type == "memory":
        yield memory_store
    elif backend_type == "sql":
        async with get_sessionmanager().session() as session:
            yield SqlExamRecordStore(session)
    else:
        raise ValueError(f"Unsupported exam store backend: {backend_type}")
