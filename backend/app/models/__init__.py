from app.models.approval import (
    ApprovalCategory,
    ApprovalRequest,
    ApprovalStatus,
    ApprovalStep,
    Currency,
    Priority,
    Role,
    StepStatus,
    SubjectType,
    WorkflowMode,
)
from app.models.audit import AuditLog

__all__ = [
    "ApprovalRequest", "ApprovalStep",
    "ApprovalCategory", "ApprovalStatus", "StepStatus", "Priority",
    "SubjectType", "WorkflowMode", "Role", "Currency",
    "AuditLog",
]
