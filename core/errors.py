"""
Shared error types for core services.
"""


class ValidationIssue(ValueError):
    def __init__(
        self,
        message: str,
        field: str = "unknown",
        error_type: str = "invalid",
        error_code: str | None = None,
        data: dict | None = None,
    ):
        super().__init__(message)
        self.field = field
        self.error_type = error_type
        self.error_code = error_code
        self.data = data


class NotFoundIssue(ValidationIssue):
    """Raised when a record addressed by id does not exist."""

    def __init__(self, message: str, field: str = "id", data: dict | None = None):
        super().__init__(message, field=field, error_type="not_found", data=data)


class InvalidStateIssue(ValidationIssue):
    """Raised when an operation is not allowed in the record's current state."""

    def __init__(self, message: str, field: str = "state", data: dict | None = None):
        super().__init__(message, field=field, error_type="invalid_state", data=data)


class UpstreamUnavailable(RuntimeError):
    """Raised when an infrastructure source cannot be queried."""


class ActiveInvestigationError(RuntimeError):
    """Raised when the active-investigation bookkeeping cannot be persisted."""
