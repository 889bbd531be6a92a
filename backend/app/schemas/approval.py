"""Pydantic schemas for approval workflow API endpoints."""
import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from app.models.approval import (
    ApprovalCategory,
    ApprovalStatus,
    Currency,
    Priority,
    Role,
    StepStatus,
    SubjectType,
    WorkflowMode,
)

# Snapshots are flat maps of primitives; nested payloads are rejected
SnapshotValue = str | int | float | bool | None
SubjectSnapshot = dict[str, SnapshotValue]


# ─── Principal ───

class Principal(BaseModel):
    """Minimal acting identity: who is calling and under which role."""
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID
    role: Role
    tenant_id: uuid.UUID | None = None


# ─── Creation bodies ───

class ExpenseApprovalCreate(BaseModel):
    subject: SubjectSnapshot
    tenant_id: uuid.UUID | None = None
    workflow_mode: WorkflowMode | None = None
    priority: Priority = Priority.medium


class ProjectApprovalCreate(BaseModel):
    subject: SubjectSnapshot
    tenant_id: uuid.UUID | None = None
    priority: Priority = Priority.medium


class BudgetApprovalCreate(BaseModel):
    subject: SubjectSnapshot
    department: str = Field(..., min_length=1, max_length=100)
    tenant_id: uuid.UUID | None = None
    priority: Priority = Priority.medium


# ─── Decision request body ───

class ApprovalDecisionRequest(BaseModel):
    comments: str | None = Field(None, max_length=500)
    # Optional guard: the step the caller believes is current
    step: int | None = Field(None, ge=1)


# ─── Output ───

class ApprovalStepOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    sequence_number: int
    approver_role: Role
    approver_id: uuid.UUID | None
    status: StepStatus
    comments: str | None
    decided_at: datetime | None
    deadline: datetime | None


class ApprovalRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    category: ApprovalCategory
    overall_status: ApprovalStatus
    priority: Priority
    subject_type: SubjectType
    subject_id: str
    subject_snapshot: SubjectSnapshot
    tenant_id: uuid.UUID
    department: str | None
    requested_by: uuid.UUID
    request_reason: str
    workflow_mode: WorkflowMode
    amount: Decimal | None
    currency: Currency
    approval_limit: Decimal
    steps: list[ApprovalStepOut]
    version: int
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None

    # Derived read-model fields
    current_step_number: int | None
    progress_percentage: int
    is_overdue: bool


class ApprovalListResponse(BaseModel):
    items: list[ApprovalRequestOut]
    total: int


class ApprovalPageResponse(BaseModel):
    items: list[ApprovalRequestOut]
    total: int
    page: int
    pages: int


# ─── Outbound completion signal ───

class CompletionSignal(BaseModel):
    """Emitted once per request when it reaches a terminal status."""
    request_id: uuid.UUID
    subject_type: SubjectType
    subject_id: str
    overall_status: ApprovalStatus
