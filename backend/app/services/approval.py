"""Approval workflow service: request factories, step state machine, queries.

All functions accept a sync SQLAlchemy Session — safe to call from API
handlers and Celery tasks alike.

Every step mutation goes through ``_decide``: load → resolve current step →
authorize → mutate → re-aggregate → commit. ``ApprovalRequest.version`` is
an optimistic-lock counter, so when two callers race on the same request
exactly one commit wins and the other gets InvalidStateError.
"""
import logging
import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import settings
from app.core.exceptions import (
    ApprovalValidationError,
    DuplicateApprovalError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    StorageError,
)
from app.db.base import utcnow
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
from app.rules.workflow_selector import WorkflowPolicy, select_steps, step_deadline
from app.schemas.approval import Principal
from app.services import audit as audit_svc
from app.services import notifications

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 500
MAX_DEPARTMENT_LENGTH = 100
MAX_PAGE_SIZE = 100

# Amounts are stored as Numeric(18, 2)
AMOUNT_QUANTUM = Decimal("0.01")
MAX_AMOUNT = Decimal("1e16")

# Roles allowed to cancel someone else's request
CANCEL_OVERRIDE_ROLES = frozenset({Role.admin.value, Role.manager.value})


# ─── Storage guard ───

@contextmanager
def _storage(db: Session) -> Iterator[None]:
    """Translate store failures into domain errors, rolling back first."""
    try:
        yield
    except StaleDataError as exc:
        db.rollback()
        raise InvalidStateError(
            "Approval was changed by another request before this decision was saved; "
            "reload it and retry."
        ) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Approval store failure: %s", exc)
        raise StorageError("Approval store is unavailable.") from exc


def _load(db: Session, request_id: uuid.UUID) -> ApprovalRequest:
    approval = db.execute(
        select(ApprovalRequest).where(ApprovalRequest.id == request_id)
    ).scalars().first()
    if approval is None:
        raise NotFoundError(request_id)
    return approval


# ─── Input normalisation ───

def _coerce(enum_cls, value, label: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ApprovalValidationError(f"Invalid {label} '{value}'. Expected one of: {allowed}.")


def _freeze_snapshot(snapshot: Any) -> dict:
    """Copy the subject snapshot, keeping only flat primitive values."""
    if not isinstance(snapshot, Mapping):
        raise ApprovalValidationError("Subject snapshot must be a mapping of fields.")

    frozen: dict = {}
    for key, value in snapshot.items():
        if isinstance(value, (Mapping, list, tuple, set)):
            raise ApprovalValidationError(
                f"Subject snapshot field '{key}' must be a primitive value."
            )
        if value is not None and not isinstance(value, (str, int, float, bool)):
            value = str(value)  # Decimal, UUID, datetime
        frozen[str(key)] = value
    return frozen


def _parse_amount(value: Any, field: str, required: bool) -> Decimal | None:
    if value is None or value == "":
        if required:
            raise ApprovalValidationError(
                f"Amount is required: subject snapshot has no '{field}'."
            )
        return None
    if isinstance(value, bool):
        raise ApprovalValidationError(f"Subject field '{field}' is not a valid amount.")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ApprovalValidationError(f"Subject field '{field}' is not a valid amount.")
    if not amount.is_finite() or amount < 0:
        raise ApprovalValidationError(f"Subject field '{field}' must be a non-negative amount.")
    # Round before tier selection so the workflow matches the stored value
    if amount < MAX_AMOUNT:
        amount = amount.quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)
    if amount >= MAX_AMOUNT:
        raise ApprovalValidationError(
            f"Subject field '{field}' must be below {MAX_AMOUNT:,.0f}."
        )
    return amount


def _parse_currency(value: Any) -> str:
    code = str(value or settings.DEFAULT_CURRENCY).upper()
    return _coerce(Currency, code, "currency").value


def _optional_text(value: Any, max_length: int, label: str) -> str | None:
    text = str(value).strip() if value is not None else ""
    if len(text) > max_length:
        raise ApprovalValidationError(f"{label} must be at most {max_length} characters.")
    return text or None


def _clean_comments(comments: str | None, required: bool) -> str | None:
    text = (comments or "").strip()
    if required and not text:
        raise ApprovalValidationError("Reason required for rejection: comments must not be empty.")
    if len(text) > MAX_TEXT_LENGTH:
        raise ApprovalValidationError(f"Comments must be at most {MAX_TEXT_LENGTH} characters.")
    return text or None


def _state(approval: ApprovalRequest) -> dict:
    """Compact JSON-able view of the mutable part of a request, for the audit log."""
    return {
        "overall_status": approval.overall_status,
        "version": approval.version,
        "steps": [
            {"step": s.sequence_number, "role": s.approver_role, "status": s.status}
            for s in approval.steps
        ],
    }


# ─── Creation ───

def create_approval(
    db: Session,
    *,
    category: ApprovalCategory | str,
    subject_type: SubjectType | str,
    subject_snapshot: Mapping[str, Any],
    tenant_id: uuid.UUID,
    requested_by: uuid.UUID,
    request_reason: str,
    workflow_mode: WorkflowMode | str,
    amount: Decimal | None = None,
    currency: str | None = None,
    department: str | None = None,
    priority: Priority | str = Priority.medium,
    approval_limit: Decimal | None = None,
    policy: WorkflowPolicy | None = None,
) -> ApprovalRequest:
    """Persist a new pending ApprovalRequest with steps from the Workflow Selector.

    Raises:
        ApprovalValidationError: missing subject id, reason, or required amount.
        DuplicateApprovalError: a pending request already exists for the subject.
        StorageError: the store failed.
    """
    category = _coerce(ApprovalCategory, category, "category")
    subject_type = _coerce(SubjectType, subject_type, "subject type")
    workflow_mode = _coerce(WorkflowMode, workflow_mode, "workflow mode")
    priority = _coerce(Priority, priority, "priority")
    snapshot = _freeze_snapshot(subject_snapshot)

    subject_id = snapshot.get("id")
    if subject_id is None or str(subject_id).strip() == "":
        raise ApprovalValidationError("Subject snapshot must carry an 'id'.")
    subject_id = str(subject_id)

    reason = (request_reason or "").strip()
    if not reason:
        raise ApprovalValidationError("Request reason is required.")
    if len(reason) > MAX_TEXT_LENGTH:
        raise ApprovalValidationError(
            f"Request reason must be at most {MAX_TEXT_LENGTH} characters."
        )

    if category in (ApprovalCategory.expense, ApprovalCategory.budget) and amount is None:
        raise ApprovalValidationError(f"Amount is required for {category.value} approvals.")
    amount = _parse_amount(amount, "amount", required=False)
    if approval_limit is not None:
        approval_limit = _parse_amount(approval_limit, "approval_limit", required=False)

    currency = _parse_currency(currency)
    department = _optional_text(department, MAX_DEPARTMENT_LENGTH, "Department")

    with _storage(db):
        existing = find_pending_for_subject(db, subject_type, subject_id)
        if existing is not None:
            raise DuplicateApprovalError(subject_type.value, subject_id, existing.id)

        now = utcnow()
        policy = policy or WorkflowPolicy.from_settings()
        templates = select_steps(category, amount, workflow_mode, policy, now=now)

        approval = ApprovalRequest(
            id=uuid.uuid4(),
            category=category.value,
            overall_status=ApprovalStatus.pending.value,
            priority=priority.value,
            subject_type=subject_type.value,
            subject_id=subject_id,
            subject_snapshot=snapshot,
            tenant_id=tenant_id,
            department=department,
            requested_by=requested_by,
            request_reason=reason,
            workflow_mode=workflow_mode.value,
            amount=amount,
            currency=currency,
            approval_limit=approval_limit if approval_limit is not None else Decimal("0"),
            step_deadline_hours=policy.step_deadline_hours or None,
            created_at=now,
            updated_at=now,
            steps=[
                ApprovalStep(
                    sequence_number=t.sequence_number,
                    approver_role=t.approver_role.value,
                    approver_id=t.approver_id,
                    status=StepStatus.pending.value,
                    deadline=t.deadline,
                )
                for t in templates
            ],
        )
        db.add(approval)

        audit_svc.log(
            db=db,
            action="approval.created",
            entity_type="approval_request",
            entity_id=approval.id,
            actor_id=requested_by,
            tenant_id=tenant_id,
            after={
                "category": category.value,
                "subject": f"{subject_type.value}/{subject_id}",
                "workflow_mode": workflow_mode.value,
                "amount": amount,
                "roles": [t.approver_role.value for t in templates],
            },
        )

        try:
            db.commit()
        except IntegrityError as exc:
            # Lost the race against a concurrent create for the same subject
            db.rollback()
            raise DuplicateApprovalError(subject_type.value, subject_id) from exc

    logger.info(
        "Approval created: id=%s category=%s subject=%s/%s steps=%d requested_by=%s",
        approval.id, category.value, subject_type.value, subject_id,
        len(templates), requested_by,
    )
    return approval


def create_expense_approval(
    db: Session,
    subject_snapshot: Mapping[str, Any],
    tenant_id: uuid.UUID,
    requested_by: uuid.UUID,
    workflow_mode: WorkflowMode | str | None = None,
    priority: Priority | str = Priority.medium,
) -> ApprovalRequest:
    """Open an expense approval; depth follows the amount under multi_level."""
    snapshot = _freeze_snapshot(subject_snapshot)
    amount = _parse_amount(snapshot.get("amount"), "amount", required=True)
    description = _optional_text(snapshot.get("description"), MAX_TEXT_LENGTH, "Expense description")

    return create_approval(
        db,
        category=ApprovalCategory.expense,
        subject_type=SubjectType.expense,
        subject_snapshot=snapshot,
        tenant_id=tenant_id,
        requested_by=requested_by,
        request_reason=description or "Expense approval request",
        workflow_mode=workflow_mode or WorkflowMode.single_approval,
        amount=amount,
        currency=snapshot.get("currency"),
        department=snapshot.get("department"),
        priority=priority,
        approval_limit=amount,
    )


def create_project_approval(
    db: Session,
    subject_snapshot: Mapping[str, Any],
    tenant_id: uuid.UUID,
    requested_by: uuid.UUID,
    priority: Priority | str = Priority.medium,
) -> ApprovalRequest:
    """Open a project approval: always supervisor then manager."""
    snapshot = _freeze_snapshot(subject_snapshot)
    amount = _parse_amount(snapshot.get("budget_total"), "budget_total", required=False)
    name = snapshot.get("name") or snapshot.get("id")

    return create_approval(
        db,
        category=ApprovalCategory.project,
        subject_type=SubjectType.project,
        subject_snapshot=snapshot,
        tenant_id=tenant_id,
        requested_by=requested_by,
        request_reason=f"Project creation: {name}",
        workflow_mode=WorkflowMode.multi_level,
        amount=amount if amount is not None else Decimal("0"),
        currency=snapshot.get("budget_currency"),
        department=snapshot.get("department"),
        priority=priority,
    )


def create_budget_approval(
    db: Session,
    subject_snapshot: Mapping[str, Any],
    tenant_id: uuid.UUID,
    requested_by: uuid.UUID,
    department: str,
    priority: Priority | str = Priority.medium,
) -> ApprovalRequest:
    """Open a department budget-change approval: always manager then admin."""
    snapshot = _freeze_snapshot(subject_snapshot)
    amount = _parse_amount(snapshot.get("total"), "total", required=True)
    department = _optional_text(department, MAX_DEPARTMENT_LENGTH, "Department")
    if department is None:
        raise ApprovalValidationError("Department is required for budget approvals.")

    return create_approval(
        db,
        category=ApprovalCategory.budget,
        subject_type=SubjectType.department,
        subject_snapshot=snapshot,
        tenant_id=tenant_id,
        requested_by=requested_by,
        request_reason=f"Budget change for {department}",
        workflow_mode=WorkflowMode.multi_level,
        amount=amount,
        currency=snapshot.get("currency"),
        department=department,
        priority=priority,
    )


# ─── Authorization predicate ───

def can_act(principal: Principal, approval: ApprovalRequest) -> bool:
    """True if the principal may decide the request's current step.

    A step bound to a specific approver accepts that principal; any
    principal holding the step's role is accepted as well.
    """
    step = approval.current_step
    if step is None:
        return False
    if step.approver_id is not None and step.approver_id == principal.id:
        return True
    return step.approver_role == Role(principal.role).value


# ─── Step state machine ───

def _actionable_step(approval: ApprovalRequest, step_number: int | None) -> ApprovalStep:
    """Resolve the current step, refusing terminal requests and out-of-turn steps."""
    if approval.overall_status != ApprovalStatus.pending.value:
        raise InvalidStateError(
            f"No pending approval step found: approval is already {approval.overall_status}."
        )

    current = approval.current_step
    if current is None:
        raise InvalidStateError("No pending approval step found.")

    if step_number is not None and step_number != current.sequence_number:
        target = approval.step(step_number)
        if target is None:
            raise InvalidStateError(f"Approval has no step {step_number}.")
        if target.status != StepStatus.pending.value:
            raise InvalidStateError(f"Step {step_number} was already {target.status}.")
        raise InvalidStateError(
            f"Step {step_number} is not the current step; "
            f"step {current.sequence_number} must be decided first."
        )
    return current


def _aggregate(approval: ApprovalRequest) -> ApprovalStatus:
    statuses = [s.status for s in approval.steps]
    if StepStatus.rejected.value in statuses:
        return ApprovalStatus.rejected
    if all(s in (StepStatus.approved.value, StepStatus.skipped.value) for s in statuses):
        return ApprovalStatus.approved
    return ApprovalStatus.pending


def _start_next_step(approval: ApprovalRequest, now) -> None:
    """Start the decision window of the step that just became current."""
    step = approval.current_step
    if step is None or step.deadline is not None:
        return
    step.deadline = step_deadline(
        WorkflowPolicy(step_deadline_hours=approval.step_deadline_hours), now
    )


def _signal_if_terminal(approval: ApprovalRequest) -> None:
    signal = notifications.build_completion_signal(approval)
    if signal is not None:
        notifications.publish_completion(signal)


def _decide(
    db: Session,
    request_id: uuid.UUID,
    principal: Principal,
    outcome: StepStatus,
    comments: str | None,
    step_number: int | None,
) -> ApprovalRequest:
    comments = _clean_comments(comments, required=outcome is StepStatus.rejected)

    with _storage(db):
        approval = _load(db, request_id)
        step = _actionable_step(approval, step_number)

        if not can_act(principal, approval):
            bound = " or its assigned approver" if step.approver_id else ""
            raise ForbiddenError(
                f"Not your turn: step {step.sequence_number} awaits role "
                f"'{step.approver_role}'{bound}."
            )

        before = _state(approval)
        now = utcnow()

        step.status = outcome.value
        step.comments = comments
        step.decided_at = now

        # Any rejection ends the request; later steps stay pending
        approval.overall_status = _aggregate(approval).value
        if approval.is_terminal:
            approval.completed_at = now
        else:
            _start_next_step(approval, now)
        approval.updated_at = now  # always bumps the version

        audit_svc.log(
            db=db,
            action=f"approval.step_{outcome.value}",
            entity_type="approval_request",
            entity_id=approval.id,
            actor_id=principal.id,
            actor_role=Role(principal.role).value,
            tenant_id=approval.tenant_id,
            before=before,
            after=_state(approval),
            notes=comments,
        )
        db.commit()

    logger.info(
        "Approval decision: id=%s step=%d outcome=%s actor=%s status=%s",
        approval.id, step.sequence_number, outcome.value, principal.id,
        approval.overall_status,
    )
    _signal_if_terminal(approval)
    return approval


def approve(
    db: Session,
    request_id: uuid.UUID,
    principal: Principal,
    comments: str | None = None,
    step_number: int | None = None,
) -> ApprovalRequest:
    """Approve the current step; the request is approved once no step is pending."""
    return _decide(db, request_id, principal, StepStatus.approved, comments, step_number)


def reject(
    db: Session,
    request_id: uuid.UUID,
    principal: Principal,
    comments: str | None,
    step_number: int | None = None,
) -> ApprovalRequest:
    """Reject the current step and with it the whole request. Comments are required."""
    return _decide(db, request_id, principal, StepStatus.rejected, comments, step_number)


def skip(
    db: Session,
    request_id: uuid.UUID,
    principal: Principal,
    comments: str | None = None,
    step_number: int | None = None,
) -> ApprovalRequest:
    """Skip the current step; counts like an approval for completion."""
    return _decide(db, request_id, principal, StepStatus.skipped, comments, step_number)


def cancel(db: Session, request_id: uuid.UUID, principal: Principal) -> ApprovalRequest:
    """Cancel a pending request, freezing its steps as they are.

    Allowed for the original requester and for admin/manager principals.
    """
    with _storage(db):
        approval = _load(db, request_id)
        if approval.overall_status != ApprovalStatus.pending.value:
            raise InvalidStateError(
                f"Approval is already {approval.overall_status}; only pending approvals can be cancelled."
            )

        role = Role(principal.role).value
        if approval.requested_by != principal.id and role not in CANCEL_OVERRIDE_ROLES:
            raise ForbiddenError(
                "Only the requester or an admin/manager may cancel this approval."
            )

        before = _state(approval)
        now = utcnow()
        approval.overall_status = ApprovalStatus.cancelled.value
        approval.completed_at = now
        approval.updated_at = now

        audit_svc.log(
            db=db,
            action="approval.cancelled",
            entity_type="approval_request",
            entity_id=approval.id,
            actor_id=principal.id,
            actor_role=role,
            tenant_id=approval.tenant_id,
            before=before,
            after=_state(approval),
        )
        db.commit()

    logger.info("Approval cancelled: id=%s actor=%s", approval.id, principal.id)
    _signal_if_terminal(approval)
    return approval


# ─── Query surface ───

def get_approval(db: Session, request_id: uuid.UUID) -> ApprovalRequest:
    with _storage(db):
        return _load(db, request_id)


def find_pending_for_subject(
    db: Session, subject_type: SubjectType | str, subject_id: str
) -> ApprovalRequest | None:
    """Return the open request for a subject, if any."""
    subject_type = _coerce(SubjectType, subject_type, "subject type")
    return db.execute(
        select(ApprovalRequest).where(
            ApprovalRequest.subject_type == subject_type.value,
            ApprovalRequest.subject_id == str(subject_id),
            ApprovalRequest.overall_status == ApprovalStatus.pending.value,
        )
    ).scalars().first()


def list_pending_for_principal(db: Session, principal: Principal) -> list[ApprovalRequest]:
    """Return pending requests whose current step the principal may decide.

    The SQL narrows to requests with *some* pending step matching the
    principal; ``can_act`` then keeps only those where it is the current one.
    """
    role = Role(principal.role).value
    matching_step = select(ApprovalStep.id).where(
        ApprovalStep.approval_id == ApprovalRequest.id,
        ApprovalStep.status == StepStatus.pending.value,
        or_(ApprovalStep.approver_role == role, ApprovalStep.approver_id == principal.id),
    )
    stmt = (
        select(ApprovalRequest)
        .where(
            ApprovalRequest.overall_status == ApprovalStatus.pending.value,
            matching_step.exists(),
        )
        .order_by(ApprovalRequest.created_at.desc())
    )
    if principal.tenant_id is not None:
        stmt = stmt.where(ApprovalRequest.tenant_id == principal.tenant_id)

    with _storage(db):
        candidates = db.execute(stmt).scalars().all()
    return [a for a in candidates if can_act(principal, a)]


def list_for_tenant(
    db: Session,
    tenant_id: uuid.UUID,
    status: ApprovalStatus | str | None = None,
    category: ApprovalCategory | str | None = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[ApprovalRequest], int]:
    """Return one page of a tenant's requests (newest first) and the total count."""
    if page < 1:
        raise ApprovalValidationError("Page must be 1 or greater.")
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ApprovalValidationError(f"Limit must be between 1 and {MAX_PAGE_SIZE}.")

    filters = [ApprovalRequest.tenant_id == tenant_id]
    if status is not None:
        filters.append(
            ApprovalRequest.overall_status == _coerce(ApprovalStatus, status, "status").value
        )
    if category is not None:
        filters.append(
            ApprovalRequest.category == _coerce(ApprovalCategory, category, "category").value
        )

    with _storage(db):
        total = db.execute(
            select(func.count(ApprovalRequest.id)).where(*filters)
        ).scalar_one()
        items = db.execute(
            select(ApprovalRequest)
            .where(*filters)
            .order_by(ApprovalRequest.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars().all()
    return list(items), total
