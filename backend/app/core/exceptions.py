"""Approval domain errors.

Every error carries a machine-readable ``code`` so API clients can branch on
the violated rule instead of parsing messages. The HTTP status mapping lives
in ``app.main``; the service layer never imports FastAPI.
"""


class ApprovalError(Exception):
    """Base class for all expected approval outcomes that are not successes."""

    code: str = "APPROVAL_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(ApprovalError):
    code: str = "NOT_FOUND"

    def __init__(self, request_id):
        self.request_id = request_id
        super().__init__(f"Approval {request_id} not found.")


class InvalidStateError(ApprovalError):
    """No actionable step: request is terminal, the step is not current, or a race was lost."""

    code: str = "INVALID_STATE"


class ForbiddenError(ApprovalError):
    code: str = "FORBIDDEN"


class ApprovalValidationError(ApprovalError):
    code: str = "VALIDATION_ERROR"


class DuplicateApprovalError(ApprovalError):
    code: str = "DUPLICATE_APPROVAL"

    def __init__(self, subject_type: str, subject_id: str, existing_id=None):
        self.subject_type = subject_type
        self.subject_id = subject_id
        self.existing_id = existing_id
        super().__init__(
            f"A pending approval already exists for {subject_type} {subject_id}."
        )


class StorageError(ApprovalError):
    """The approval store failed; the caller decides whether to retry."""

    code: str = "STORAGE_ERROR"
