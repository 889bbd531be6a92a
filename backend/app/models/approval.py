import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, TimestampMixin, UUIDMixin, utcnow


class ApprovalCategory(str, enum.Enum):
    expense = "expense"
    project = "project"
    budget = "budget"
    user_invitation = "user_invitation"
    department_change = "department_change"
    company_settings = "company_settings"


class ApprovalStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    cancelled = "cancelled"


TERMINAL_STATUSES = frozenset(
    s.value for s in (ApprovalStatus.approved, ApprovalStatus.rejected, ApprovalStatus.cancelled)
)


class StepStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    skipped = "skipped"


class Priority(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"
    urgent = "urgent"


class SubjectType(str, enum.Enum):
    expense = "expense"
    revenue = "revenue"
    project = "project"
    department = "department"
    employee = "employee"
    company = "company"


class WorkflowMode(str, enum.Enum):
    single_approval = "single_approval"
    multi_level = "multi_level"
    department_head = "department_head"
    finance_team = "finance_team"
    management = "management"


class Role(str, enum.Enum):
    """Role tokens shared by step routing and principals."""

    employee = "employee"
    accountant = "accountant"
    supervisor = "supervisor"
    manager = "manager"
    admin = "admin"
    department_head = "department_head"
    finance_team = "finance_team"


class Currency(str, enum.Enum):
    EGP = "EGP"
    USD = "USD"
    EUR = "EUR"
    SAR = "SAR"
    AED = "AED"
    KWD = "KWD"
    QAR = "QAR"
    BHD = "BHD"
    OMR = "OMR"
    JOD = "JOD"
    LBP = "LBP"


def _status_check(column: str, values: type[enum.Enum], name: str) -> CheckConstraint:
    allowed = ", ".join(f"'{v.value}'" for v in values)
    return CheckConstraint(f"{column} IN ({allowed})", name=name)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ApprovalRequest(Base, UUIDMixin, TimestampMixin):
    """One multi-step approval process gating an external business entity."""

    __tablename__ = "approval_requests"

    category: Mapped[str] = mapped_column(String(50), nullable=False)
    overall_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ApprovalStatus.pending.value, index=True
    )
    priority: Mapped[str] = mapped_column(
        String(10), nullable=False, default=Priority.medium.value
    )

    # Subject envelope: the snapshot is frozen at request time
    subject_type: Mapped[str] = mapped_column(String(50), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject_snapshot: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    department: Mapped[str | None] = mapped_column(String(100), nullable=True)
    requested_by: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    request_reason: Mapped[str] = mapped_column(String(500), nullable=False)
    workflow_mode: Mapped[str] = mapped_column(
        String(50), nullable=False, default=WorkflowMode.single_approval.value
    )

    amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default=Currency.EGP.value)
    approval_limit: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=0)
    # Per-step decision window; each step gets its deadline when it becomes current
    step_deadline_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    steps: Mapped[list["ApprovalStep"]] = relationship(
        "ApprovalStep",
        back_populates="approval",
        order_by="ApprovalStep.sequence_number",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        Index("ix_approval_requests_subject", "subject_type", "subject_id"),
        Index("ix_approval_requests_tenant_status", "tenant_id", "overall_status"),
        # At most one open request per subject
        Index(
            "uq_approval_requests_pending_subject",
            "subject_type",
            "subject_id",
            unique=True,
            postgresql_where=text("overall_status = 'pending'"),
            sqlite_where=text("overall_status = 'pending'"),
        ),
        _status_check("overall_status", ApprovalStatus, "ck_approval_requests_status"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.overall_status in TERMINAL_STATUSES

    def step(self, sequence_number: int) -> "ApprovalStep | None":
        return {s.sequence_number: s for s in self.steps}.get(sequence_number)

    @property
    def current_step(self) -> "ApprovalStep | None":
        """Lowest-numbered pending step; None once the request is terminal."""
        if self.overall_status != ApprovalStatus.pending:
            return None
        for s in self.steps:
            if s.status == StepStatus.pending:
                return s
        return None

    @property
    def current_step_number(self) -> int | None:
        current = self.current_step
        return current.sequence_number if current else None

    @property
    def progress_percentage(self) -> int:
        if not self.steps:
            return 0
        decided = sum(1 for s in self.steps if s.status != StepStatus.pending)
        return round(decided * 100 / len(self.steps))

    @property
    def is_overdue(self) -> bool:
        current = self.current_step
        if current is None or current.deadline is None:
            return False
        return utcnow() > _as_utc(current.deadline)


class ApprovalStep(Base, UUIDMixin, TimestampMixin):
    """A single ordered decision point inside an ApprovalRequest."""

    __tablename__ = "approval_steps"

    approval_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("approval_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    approver_role: Mapped[str] = mapped_column(String(50), nullable=False)
    approver_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True, index=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=StepStatus.pending.value
    )
    comments: Mapped[str | None] = mapped_column(String(500), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    approval: Mapped["ApprovalRequest"] = relationship("ApprovalRequest", back_populates="steps")

    __table_args__ = (
        UniqueConstraint("approval_id", "sequence_number", name="uq_approval_steps_sequence"),
        _status_check("status", StepStatus, "ck_approval_steps_status"),
    )
