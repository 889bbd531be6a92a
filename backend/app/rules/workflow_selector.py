"""Workflow Selector — deterministic step generation for approval requests.

Given a category, an amount and a workflow mode, returns the ordered list of
step templates a new ApprovalRequest starts with. Pure: no DB access, no
clock reads unless the caller omits ``now`` and a deadline is configured.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from app.models.approval import ApprovalCategory, Role, WorkflowMode


# ─── Role sequences ───

SINGLE_STEP_ROLES: tuple[Role, ...] = (Role.supervisor,)
EXPENSE_TWO_STEP_ROLES: tuple[Role, ...] = (Role.supervisor, Role.manager)
EXPENSE_THREE_STEP_ROLES: tuple[Role, ...] = (Role.supervisor, Role.manager, Role.admin)
PROJECT_ROLES: tuple[Role, ...] = (Role.supervisor, Role.manager)
BUDGET_ROLES: tuple[Role, ...] = (Role.manager, Role.admin)


# ─── Policy and result types ───

@dataclass(frozen=True)
class WorkflowPolicy:
    """Amount thresholds for tiered expense workflows.

    Boundaries are inclusive on the cheaper side: an amount equal to
    ``single_step_limit`` still gets one step.
    """
    single_step_limit: Decimal = Decimal("1000")
    two_step_limit: Decimal = Decimal("5000")
    step_deadline_hours: int | None = None

    @classmethod
    def from_settings(cls) -> "WorkflowPolicy":
        from app.core.config import settings

        return cls(
            single_step_limit=Decimal(str(settings.APPROVAL_SINGLE_STEP_LIMIT)),
            two_step_limit=Decimal(str(settings.APPROVAL_TWO_STEP_LIMIT)),
            step_deadline_hours=settings.APPROVAL_STEP_DEADLINE_HOURS,
        )


@dataclass(frozen=True)
class StepTemplate:
    sequence_number: int
    approver_role: Role
    approver_id: uuid.UUID | None = None
    deadline: datetime | None = None


# ─── Selection ───

def select_roles(
    category: ApprovalCategory | str,
    amount: Decimal | int | float | None,
    workflow_mode: WorkflowMode | str,
    policy: WorkflowPolicy | None = None,
) -> tuple[Role, ...]:
    """Return the approver role sequence for the given request shape."""
    policy = policy or WorkflowPolicy()
    category = ApprovalCategory(category)
    workflow_mode = WorkflowMode(workflow_mode)

    # Category-fixed policies win over the workflow mode
    if category is ApprovalCategory.project:
        return PROJECT_ROLES
    if category is ApprovalCategory.budget:
        return BUDGET_ROLES

    if workflow_mode is WorkflowMode.multi_level and category is ApprovalCategory.expense:
        value = Decimal(str(amount)) if amount is not None else Decimal("0")
        if value <= policy.single_step_limit:
            return SINGLE_STEP_ROLES
        if value <= policy.two_step_limit:
            return EXPENSE_TWO_STEP_ROLES
        return EXPENSE_THREE_STEP_ROLES

    return SINGLE_STEP_ROLES


def step_deadline(policy: WorkflowPolicy, now: datetime | None = None) -> datetime | None:
    """Deadline for a step that becomes current at ``now``, if the policy sets one."""
    if not policy.step_deadline_hours:
        return None
    return (now or datetime.now(timezone.utc)) + timedelta(hours=policy.step_deadline_hours)


def select_steps(
    category: ApprovalCategory | str,
    amount: Decimal | int | float | None,
    workflow_mode: WorkflowMode | str,
    policy: WorkflowPolicy | None = None,
    now: datetime | None = None,
) -> list[StepTemplate]:
    """Build the ordered, 1-based step templates for a new request.

    Only step 1 is current at creation, so only it gets a deadline; later
    steps are given theirs when they become current.
    """
    policy = policy or WorkflowPolicy()
    roles = select_roles(category, amount, workflow_mode, policy)
    first_deadline = step_deadline(policy, now)

    return [
        StepTemplate(
            sequence_number=index,
            approver_role=role,
            deadline=first_deadline if index == 1 else None,
        )
        for index, role in enumerate(roles, start=1)
    ]
