"""Completion signal delivery — log-only unless COMPLETION_SIGNAL_ENABLED.

When an approval reaches a terminal status, the subsystem that owns the
subject (expense, project, budget) needs to apply its own side effect. The
signal is published as a Celery task message; collaborators register a task
under COMPLETION_SIGNAL_TASK to consume it.
"""
import logging

from kombu.exceptions import OperationalError

from app.core.config import settings
from app.schemas.approval import CompletionSignal

logger = logging.getLogger(__name__)


def build_completion_signal(approval) -> CompletionSignal | None:
    """Return the signal for a terminal approval, or None while still pending."""
    if not approval.is_terminal:
        return None
    return CompletionSignal(
        request_id=approval.id,
        subject_type=approval.subject_type,
        subject_id=approval.subject_id,
        overall_status=approval.overall_status,
    )


def publish_completion(signal: CompletionSignal) -> None:
    """Send (or mock-log) the completion signal to the owning subsystem.

    The approval is already committed when this runs. A broker outage is
    logged rather than raised so the caller still sees the committed state;
    collaborators can reconcile by polling GET /approvals/{id}.
    """
    payload = signal.model_dump(mode="json")

    if not settings.COMPLETION_SIGNAL_ENABLED:
        logger.info(
            "Completion signal (not dispatched): request=%s subject=%s/%s status=%s",
            payload["request_id"], payload["subject_type"], payload["subject_id"],
            payload["overall_status"],
        )
        return

    from app.workers.celery_app import celery_app

    try:
        celery_app.send_task(settings.COMPLETION_SIGNAL_TASK, kwargs=payload)
    except OperationalError:
        logger.exception(
            "Completion signal for request %s could not be published to the broker.",
            payload["request_id"],
        )
        return

    logger.info(
        "Completion signal published: request=%s status=%s task=%s",
        payload["request_id"], payload["overall_status"], settings.COMPLETION_SIGNAL_TASK,
    )
