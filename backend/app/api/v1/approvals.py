"""Approval workflow API endpoints (JWT required).

  GET  /approvals/pending                 — approvals awaiting the caller's decision
  GET  /approvals/tenant/{tenant_id}      — paginated tenant listing
  GET  /approvals/{approval_id}           — detail
  POST /approvals/expense|project|budget  — open an approval for a subject
  POST /approvals/{approval_id}/approve|reject|skip|cancel

Domain errors raised by the service are mapped to HTTP responses in app.main.
"""
import logging
import math
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.deps import get_current_principal
from app.core.exceptions import ApprovalValidationError, ForbiddenError
from app.core.limiter import limiter
from app.db.session import get_session
from app.models.approval import ApprovalCategory, ApprovalStatus
from app.schemas.approval import (
    ApprovalDecisionRequest,
    ApprovalListResponse,
    ApprovalPageResponse,
    ApprovalRequestOut,
    BudgetApprovalCreate,
    ExpenseApprovalCreate,
    Principal,
    ProjectApprovalCreate,
)
from app.services import approval as approval_svc

logger = logging.getLogger(__name__)

router = APIRouter()

DbSession = Annotated[Session, Depends(get_session)]
CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]


# ─── Tenant scoping helpers ───

def _ensure_tenant(principal: Principal, tenant_id: uuid.UUID) -> None:
    if principal.tenant_id is not None and principal.tenant_id != tenant_id:
        raise ForbiddenError("Approval belongs to another tenant.")


def _resolve_tenant(principal: Principal, tenant_id: uuid.UUID | None) -> uuid.UUID:
    resolved = tenant_id or principal.tenant_id
    if resolved is None:
        raise ApprovalValidationError("tenant_id is required.")
    _ensure_tenant(principal, resolved)
    return resolved


# ─── Queries ───

@router.get(
    "/pending",
    response_model=ApprovalListResponse,
    summary="List approvals whose current step the caller may decide",
)
def list_pending(db: DbSession, principal: CurrentPrincipal):
    approvals = approval_svc.list_pending_for_principal(db, principal)
    items = [ApprovalRequestOut.model_validate(a) for a in approvals]
    return ApprovalListResponse(items=items, total=len(items))


@router.get(
    "/tenant/{tenant_id}",
    response_model=ApprovalPageResponse,
    summary="List a tenant's approvals, newest first",
)
def list_tenant_approvals(
    tenant_id: uuid.UUID,
    db: DbSession,
    principal: CurrentPrincipal,
    status_filter: Annotated[ApprovalStatus | None, Query(alias="status")] = None,
    category: ApprovalCategory | None = None,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=approval_svc.MAX_PAGE_SIZE)] = 10,
):
    _ensure_tenant(principal, tenant_id)
    approvals, total = approval_svc.list_for_tenant(
        db, tenant_id, status=status_filter, category=category, page=page, limit=limit
    )
    return ApprovalPageResponse(
        items=[ApprovalRequestOut.model_validate(a) for a in approvals],
        total=total,
        page=page,
        pages=math.ceil(total / limit),
    )


@router.get(
    "/{approval_id}",
    response_model=ApprovalRequestOut,
    summary="Get approval detail with its steps",
)
def get_approval(approval_id: uuid.UUID, db: DbSession, principal: CurrentPrincipal):
    approval = approval_svc.get_approval(db, approval_id)
    _ensure_tenant(principal, approval.tenant_id)
    return ApprovalRequestOut.model_validate(approval)


# ─── Creation ───

@router.post(
    "/expense",
    response_model=ApprovalRequestOut,
    status_code=status.HTTP_201_CREATED,
    summary="Open an expense approval",
)
@limiter.limit(settings.APPROVAL_CREATE_RATE_LIMIT)
def create_expense_approval(
    request: Request,
    body: ExpenseApprovalCreate,
    db: DbSession,
    principal: CurrentPrincipal,
):
    approval = approval_svc.create_expense_approval(
        db,
        body.subject,
        tenant_id=_resolve_tenant(principal, body.tenant_id),
        requested_by=principal.id,
        workflow_mode=body.workflow_mode,
        priority=body.priority,
    )
    return ApprovalRequestOut.model_validate(approval)


@router.post(
    "/project",
    response_model=ApprovalRequestOut,
    status_code=status.HTTP_201_CREATED,
    summary="Open a project approval",
)
@limiter.limit(settings.APPROVAL_CREATE_RATE_LIMIT)
def create_project_approval(
    request: Request,
    body: ProjectApprovalCreate,
    db: DbSession,
    principal: CurrentPrincipal,
):
    approval = approval_svc.create_project_approval(
        db,
        body.subject,
        tenant_id=_resolve_tenant(principal, body.tenant_id),
        requested_by=principal.id,
        priority=body.priority,
    )
    return ApprovalRequestOut.model_validate(approval)


@router.post(
    "/budget",
    response_model=ApprovalRequestOut,
    status_code=status.HTTP_201_CREATED,
    summary="Open a department budget-change approval",
)
@limiter.limit(settings.APPROVAL_CREATE_RATE_LIMIT)
def create_budget_approval(
    request: Request,
    body: BudgetApprovalCreate,
    db: DbSession,
    principal: CurrentPrincipal,
):
    approval = approval_svc.create_budget_approval(
        db,
        body.subject,
        tenant_id=_resolve_tenant(principal, body.tenant_id),
        requested_by=principal.id,
        department=body.department,
        priority=body.priority,
    )
    return ApprovalRequestOut.model_validate(approval)


# ─── Decisions ───

def _guarded(db: Session, approval_id: uuid.UUID, principal: Principal) -> None:
    # Cross-tenant callers must not learn whether it is their turn
    _ensure_tenant(principal, approval_svc.get_approval(db, approval_id).tenant_id)


@router.post(
    "/{approval_id}/approve",
    response_model=ApprovalRequestOut,
    summary="Approve the current step",
)
def approve_step(
    approval_id: uuid.UUID,
    body: ApprovalDecisionRequest,
    db: DbSession,
    principal: CurrentPrincipal,
):
    _guarded(db, approval_id, principal)
    approval = approval_svc.approve(
        db, approval_id, principal, comments=body.comments, step_number=body.step
    )
    return ApprovalRequestOut.model_validate(approval)


@router.post(
    "/{approval_id}/reject",
    response_model=ApprovalRequestOut,
    summary="Reject the current step (comments required)",
)
def reject_step(
    approval_id: uuid.UUID,
    body: ApprovalDecisionRequest,
    db: DbSession,
    principal: CurrentPrincipal,
):
    _guarded(db, approval_id, principal)
    approval = approval_svc.reject(
        db, approval_id, principal, comments=body.comments, step_number=body.step
    )
    return ApprovalRequestOut.model_validate(approval)


@router.post(
    "/{approval_id}/skip",
    response_model=ApprovalRequestOut,
    summary="Skip the current step",
)
def skip_step(
    approval_id: uuid.UUID,
    body: ApprovalDecisionRequest,
    db: DbSession,
    principal: CurrentPrincipal,
):
    _guarded(db, approval_id, principal)
    approval = approval_svc.skip(
        db, approval_id, principal, comments=body.comments, step_number=body.step
    )
    return ApprovalRequestOut.model_validate(approval)


@router.post(
    "/{approval_id}/cancel",
    response_model=ApprovalRequestOut,
    summary="Cancel a pending approval (requester, admin or manager)",
)
def cancel_approval(approval_id: uuid.UUID, db: DbSession, principal: CurrentPrincipal):
    _guarded(db, approval_id, principal)
    approval = approval_svc.cancel(db, approval_id, principal)
    return ApprovalRequestOut.model_validate(approval)
