"""Racing decisions on the same request: exactly one commit wins.

Two sessions load the same request before either decides, mirroring two API
workers handling concurrent calls. The loser's UPDATE finds a newer version
and must fail with InvalidStateError instead of silently overwriting.
"""
import uuid

import pytest

from app.core.exceptions import InvalidStateError
from app.models.approval import Role
from app.services import approval as approval_svc
from tests.conftest import TENANT_ID, make_principal


def _open_request(session_factory, requester, amount):
    with session_factory() as db:
        approval = approval_svc.create_expense_approval(
            db,
            {"id": str(uuid.uuid4()), "amount": amount},
            tenant_id=TENANT_ID,
            requested_by=requester.id,
            workflow_mode="multi_level",
        )
        return approval.id


def test_concurrent_approvals_on_same_step(session_factory, requester):
    approval_id = _open_request(session_factory, requester, 3000)
    first = make_principal(Role.supervisor)
    second = make_principal(Role.supervisor)

    with session_factory() as db_a, session_factory() as db_b:
        # Both workers hold version 1; the session identity map is weak, so keep the references
        stale_a = approval_svc.get_approval(db_a, approval_id)
        stale_b = approval_svc.get_approval(db_b, approval_id)
        assert stale_a.version == stale_b.version == 1

        winner = approval_svc.approve(db_a, approval_id, first, comments="first")
        assert winner.current_step_number == 2

        with pytest.raises(InvalidStateError, match="changed by another request"):
            approval_svc.approve(db_b, approval_id, second, comments="second")

    with session_factory() as db:
        final = approval_svc.get_approval(db, approval_id)
        assert [s.status for s in final.steps] == ["approved", "pending"]
        assert final.steps[0].comments == "first"
        assert final.version == 2


def test_cancel_racing_an_approval(session_factory, requester):
    approval_id = _open_request(session_factory, requester, 100)
    supervisor = make_principal(Role.supervisor)

    with session_factory() as db_a, session_factory() as db_b:
        stale = approval_svc.get_approval(db_b, approval_id)
        assert stale.version == 1

        approval_svc.cancel(db_a, approval_id, requester)

        with pytest.raises(InvalidStateError, match="changed by another request"):
            approval_svc.approve(db_b, approval_id, supervisor)

    with session_factory() as db:
        final = approval_svc.get_approval(db, approval_id)
        assert final.overall_status == "cancelled"
        assert [s.status for s in final.steps] == ["pending"]


def test_loser_can_retry_against_fresh_state(session_factory, requester):
    approval_id = _open_request(session_factory, requester, 3000)
    supervisor = make_principal(Role.supervisor)
    manager = make_principal(Role.manager)

    with session_factory() as db_a, session_factory() as db_b:
        stale = approval_svc.get_approval(db_b, approval_id)
        assert stale.version == 1

        approval_svc.approve(db_a, approval_id, supervisor)
        with pytest.raises(InvalidStateError, match="changed by another request"):
            approval_svc.approve(db_b, approval_id, supervisor)

        # The failed session was rolled back, so the reload sees step 2 current
        result = approval_svc.approve(db_b, approval_id, manager)

    assert result.overall_status == "approved"
