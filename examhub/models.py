"""Database models and lifecycle enums."""
import enum
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from examhub.dependencies.database import Base


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------


class ExamStatus(enum.Enum):
    """Persisted lifecycle stage of an exam."""

    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PUBLISHED = "PUBLISHED"
    CANCELLED = "CANCELLED"


class DynamicStatus(enum.Enum):
    """Effective stage of an exam, recomputed on every read."""

    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    APPROVED = "APPROVED"
    SCHEDULED = "SCHEDULED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class ExamAction(enum.Enum):
    """Operations an operator can request on an exam."""

    SUBMIT_FOR_APPROVAL = "SUBMIT_FOR_APPROVAL"
    RESUBMIT = "RESUBMIT"
    APPROVE = "APPROVE"
    APPROVE_AND_PUBLISH = "APPROVE_AND_PUBLISH"
    REJECT = "REJECT"
    PUBLISH = "PUBLISH"
    ENABLE_MANUAL_CONTROL = "ENABLE_MANUAL_CONTROL"
    DISABLE_MANUAL_CONTROL = "DISABLE_MANUAL_CONTROL"
    MAKE_LIVE = "MAKE_LIVE"
    MARK_COMPLETED = "MARK_COMPLETED"
    DELETE = "DELETE"


# Stages before approval: schedule and manual control are irrelevant
PRE_APPROVAL_STATUSES = frozenset(
    {ExamStatus.DRAFT, ExamStatus.PENDING_APPROVAL, ExamStatus.REJECTED, ExamStatus.CANCELLED}
)
# Stages in which the operator may take manual control
CONTROLLABLE_STATUSES = frozenset({ExamStatus.APPROVED, ExamStatus.PUBLISHED})
# Stages from which an exam may be deleted
DELETABLE_STATUSES = frozenset({ExamStatus.DRAFT, ExamStatus.REJECTED})


def _enum_column(enum_class: type[enum.Enum], name: str) -> Enum:
    return Enum(enum_class, name=name, create_constraint=False, values_callable=lambda x: [e.value for e in x])


# -----------------------------------------------------------------------------
# Exams
# -----------------------------------------------------------------------------


class Exam(Base):
    __tablename__ = "exams"
    id = Column(Integer, primary_key=True)
    school_id = Column(Integer, nullable=False, index=True)
    class_id = Column(Integer, nullable=True, index=True)  # None = all classes
    title = Column(String(255), nullable=False)
    status = Column(_enum_column(ExamStatus, "exam_status"), default=ExamStatus.DRAFT, nullable=False, index=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    manual_control = Column(Boolean, default=False, nullable=False)
    is_live = Column(Boolean, default=False, nullable=False)
    is_completed = Column(Boolean, default=False, nullable=False)
    rejection_reason = Column(Text, nullable=True)
    students_attempted = Column(Integer, default=0, nullable=False)  # owned by the attempt subsystem
    approver_id = Column(String(64), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    published_at = Column(DateTime, nullable=True)
    version = Column(Integer, default=1, nullable=False)  # bumped on every lifecycle write
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class ExamTransitionLog(Base):
    """Audit trail of applied lifecycle transitions."""

    __tablename__ = "exam_transition_logs"
    id = Column(Integer, primary_key=True)
    # Not a foreign key: the trail outlives deleted exams
    exam_id = Column(Integer, nullable=False, index=True)
    school_id = Column(Integer, nullable=True, index=True)
    action = Column(_enum_column(ExamAction, "exam_action"), nullable=False, index=True)
    from_status = Column(_enum_column(ExamStatus, "exam_status"), nullable=False)
    to_status = Column(_enum_column(ExamStatus, "exam_status"), nullable=True)  # None after deletion
    performed_by = Column(String(64), nullable=False)
    request_id = Column(String(64), nullable=True)
    details = Column(JSON, nullable=True)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    __table_args__ = (UniqueConstraint("exam_id", "request_id", name="uq_exam_transition_request"),)
