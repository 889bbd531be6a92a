"""Audit log helper — append-only writes to audit_logs table."""
import json
import logging
import uuid
from typing import Any

from sqlalchemy.orm import Session

from app.models.audit import AuditLog

logger = logging.getLogger(__name__)


def log(
    db: Session,
    action: str,
    entity_type: str,
    entity_id: uuid.UUID | str | None = None,
    actor_id: uuid.UUID | str | None = None,
    actor_role: str | None = None,
    tenant_id: uuid.UUID | str | None = None,
    before: Any | None = None,
    after: Any | None = None,
    notes: str | None = None,
) -> AuditLog:
    """Stage a single audit log entry in the caller's transaction.

    Args:
        db: Sync SQLAlchemy session. Nothing is committed here; the entry
            lands or rolls back together with the transition it describes.
        action: Dotted verb, e.g. 'approval.created', 'approval.step_approved'.
        entity_type: Domain name of the affected record, e.g. 'approval_request'.
        entity_id: PK of the affected record.
        actor_id: Principal who performed the action (None for system actions).
        actor_role: Role the principal acted under.
        tenant_id: Owning tenant, for tenant-scoped audit queries.
        before: Dict snapshot of state before the action (JSON-serialisable).
        after: Dict snapshot of state after the action.
        notes: Free-text annotation.
    """
    entry = AuditLog(
        actor_id=uuid.UUID(str(actor_id)) if actor_id else None,
        actor_role=actor_role,
        tenant_id=uuid.UUID(str(tenant_id)) if tenant_id else None,
        action=action,
        entity_type=entity_type,
        entity_id=uuid.UUID(str(entity_id)) if entity_id else None,
        before_state=json.dumps(before, default=str) if before is not None else None,
        after_state=json.dumps(after, default=str) if after is not None else None,
        notes=notes,
    )
    db.add(entry)
    logger.debug("Audit: %s %s/%s", action, entity_type, entity_id)
    return entry
