"""HTTP tests for /api/v1/approvals.

The session dependency is overridden with a real SQLite session and the
principal dependency with a fixed identity, so each test exercises the
router, the service and the error mapping together.
"""
import uuid

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from app.core.deps import get_current_principal
from app.core.limiter import limiter
from app.db.session import get_session
from app.main import app
from app.models.approval import Role
from tests.conftest import OTHER_TENANT_ID, TENANT_ID, make_principal


# ─── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture
def acting(session_factory):
    """Override session and principal; ``acting.as_(principal)`` switches callers."""

    class Acting:
        principal = make_principal(Role.employee)

        def as_(self, principal):
            self.principal = principal
            return principal

    state = Acting()

    def override_get_session():
        with session_factory() as session:
            yield session

    async def override_get_current_principal():
        return state.principal

    limiter.reset()
    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_current_principal] = override_get_current_principal
    try:
        yield state
    finally:
        app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


async def _create_expense(client, amount=3000, mode="multi_level", subject_id=None):
    return await client.post(
        "/api/v1/approvals/expense",
        json={
            "subject": {"id": subject_id or str(uuid.uuid4()), "amount": amount, "description": "Laptops"},
            "workflow_mode": mode,
        },
    )


# ─── Creation ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_expense_returns_201_with_steps(acting, client):
    response = await _create_expense(client, amount=8000)

    assert response.status_code == 201
    body = response.json()
    assert body["overall_status"] == "pending"
    assert body["tenant_id"] == str(TENANT_ID)
    assert body["requested_by"] == str(acting.principal.id)
    assert body["request_reason"] == "Laptops"
    assert [s["approver_role"] for s in body["steps"]] == ["supervisor", "manager", "admin"]
    assert body["current_step_number"] == 1
    assert body["progress_percentage"] == 0
    assert body["is_overdue"] is False
    assert body["version"] == 1


@pytest.mark.asyncio
async def test_create_project_and_budget(acting, client):
    project = await client.post(
        "/api/v1/approvals/project",
        json={"subject": {"id": "PRJ-7", "name": "Solar roof", "budget_total": 120000}},
    )
    budget = await client.post(
        "/api/v1/approvals/budget",
        json={"subject": {"id": "DEP-3", "total": 50000}, "department": "Logistics"},
    )

    assert project.status_code == 201
    assert [s["approver_role"] for s in project.json()["steps"]] == ["supervisor", "manager"]
    assert budget.status_code == 201
    assert [s["approver_role"] for s in budget.json()["steps"]] == ["manager", "admin"]
    assert budget.json()["department"] == "Logistics"


@pytest.mark.asyncio
async def test_duplicate_subject_returns_409(acting, client):
    await _create_expense(client, subject_id="EXP-9")
    response = await _create_expense(client, subject_id="EXP-9")

    assert response.status_code == 409
    assert response.json()["code"] == "DUPLICATE_APPROVAL"


@pytest.mark.asyncio
async def test_expense_without_amount_returns_422(acting, client):
    response = await client.post(
        "/api/v1/approvals/expense", json={"subject": {"id": "EXP-10"}}
    )

    assert response.status_code == 422
    assert response.json()["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_oversized_amount_returns_422(acting, client):
    response = await _create_expense(client, amount="1e20")

    assert response.status_code == 422
    assert response.json()["code"] == "VALIDATION_ERROR"
    assert "must be below" in response.json()["detail"]


@pytest.mark.asyncio
async def test_nested_subject_is_rejected_by_schema(acting, client):
    response = await client.post(
        "/api/v1/approvals/expense",
        json={"subject": {"id": "EXP-11", "amount": 5, "lines": [{"sku": "A"}]}},
    )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_create_for_foreign_tenant_is_forbidden(acting, client):
    response = await client.post(
        "/api/v1/approvals/expense",
        json={"subject": {"id": "EXP-12", "amount": 5}, "tenant_id": str(OTHER_TENANT_ID)},
    )

    assert response.status_code == 403
    assert response.json()["code"] == "FORBIDDEN"


@pytest.mark.asyncio
async def test_create_without_any_tenant_returns_422(acting, client):
    acting.as_(make_principal(Role.employee, tenant_id=None))

    response = await _create_expense(client)

    assert response.status_code == 422


# ─── Decisions ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_full_two_step_flow(acting, client):
    approval_id = (await _create_expense(client, amount=3000)).json()["id"]

    acting.as_(make_principal(Role.supervisor))
    response = await client.post(f"/api/v1/approvals/{approval_id}/approve", json={"comments": "ok"})
    assert response.status_code == 200
    assert response.json()["overall_status"] == "pending"
    assert response.json()["current_step_number"] == 2

    acting.as_(make_principal(Role.manager))
    response = await client.post(f"/api/v1/approvals/{approval_id}/approve", json={})
    body = response.json()
    assert response.status_code == 200
    assert body["overall_status"] == "approved"
    assert body["completed_at"] is not None
    assert body["progress_percentage"] == 100


@pytest.mark.asyncio
async def test_wrong_role_returns_403(acting, client):
    approval_id = (await _create_expense(client)).json()["id"]

    acting.as_(make_principal(Role.accountant))
    response = await client.post(f"/api/v1/approvals/{approval_id}/approve", json={})

    assert response.status_code == 403
    assert "Not your turn" in response.json()["detail"]


@pytest.mark.asyncio
async def test_reject_without_comments_returns_422(acting, client):
    approval_id = (await _create_expense(client)).json()["id"]

    acting.as_(make_principal(Role.supervisor))
    response = await client.post(f"/api/v1/approvals/{approval_id}/reject", json={})

    assert response.status_code == 422
    assert "Reason required" in response.json()["detail"]


@pytest.mark.asyncio
async def test_decision_on_terminal_request_returns_409(acting, client):
    approval_id = (await _create_expense(client, amount=100)).json()["id"]

    acting.as_(make_principal(Role.supervisor))
    await client.post(f"/api/v1/approvals/{approval_id}/reject", json={"comments": "No receipt"})
    response = await client.post(f"/api/v1/approvals/{approval_id}/skip", json={})

    assert response.status_code == 409
    assert response.json()["code"] == "INVALID_STATE"


@pytest.mark.asyncio
async def test_out_of_turn_step_returns_409(acting, client):
    approval_id = (await _create_expense(client, amount=3000)).json()["id"]

    acting.as_(make_principal(Role.supervisor))
    response = await client.post(f"/api/v1/approvals/{approval_id}/approve", json={"step": 2})

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_cancel_by_requester(acting, client):
    approval_id = (await _create_expense(client)).json()["id"]

    response = await client.post(f"/api/v1/approvals/{approval_id}/cancel")

    assert response.status_code == 200
    assert response.json()["overall_status"] == "cancelled"


@pytest.mark.asyncio
async def test_cross_tenant_decision_is_forbidden(acting, client):
    approval_id = (await _create_expense(client)).json()["id"]

    acting.as_(make_principal(Role.supervisor, tenant_id=OTHER_TENANT_ID))
    response = await client.post(f"/api/v1/approvals/{approval_id}/approve", json={})

    assert response.status_code == 403


# ─── Queries ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_get_unknown_approval_returns_404(acting, client):
    response = await client.get(f"/api/v1/approvals/{uuid.uuid4()}")

    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_get_foreign_tenant_approval_returns_403(acting, client):
    approval_id = (await _create_expense(client)).json()["id"]

    acting.as_(make_principal(Role.admin, tenant_id=OTHER_TENANT_ID))
    response = await client.get(f"/api/v1/approvals/{approval_id}")

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_pending_list_for_current_approver(acting, client):
    approval_id = (await _create_expense(client, amount=3000)).json()["id"]

    acting.as_(make_principal(Role.supervisor))
    supervisor_view = (await client.get("/api/v1/approvals/pending")).json()

    acting.as_(make_principal(Role.manager))
    manager_view = (await client.get("/api/v1/approvals/pending")).json()

    assert supervisor_view["total"] == 1
    assert supervisor_view["items"][0]["id"] == approval_id
    assert manager_view == {"items": [], "total": 0}


@pytest.mark.asyncio
async def test_tenant_listing_paginates_and_filters(acting, client):
    for _ in range(3):
        await _create_expense(client, amount=100)
    await client.post(
        "/api/v1/approvals/budget",
        json={"subject": {"id": "DEP-1", "total": 900}, "department": "Sales"},
    )

    page = await client.get(f"/api/v1/approvals/tenant/{TENANT_ID}", params={"limit": 2, "page": 2})
    budgets = await client.get(
        f"/api/v1/approvals/tenant/{TENANT_ID}", params={"category": "budget", "status": "pending"}
    )

    assert page.status_code == 200
    assert page.json()["total"] == 4
    assert page.json()["pages"] == 2
    assert len(page.json()["items"]) == 2
    assert budgets.json()["total"] == 1


@pytest.mark.asyncio
async def test_tenant_listing_of_other_tenant_is_forbidden(acting, client):
    response = await client.get(f"/api/v1/approvals/tenant/{OTHER_TENANT_ID}")

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_tenant_listing_rejects_oversized_page(acting, client):
    response = await client.get(f"/api/v1/approvals/tenant/{TENANT_ID}", params={"limit": 500})

    assert response.status_code == 422
