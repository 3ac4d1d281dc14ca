"""
shared/exceptions.py
Error taxonomy for the engagement core.
Services raise these; main.py maps them onto HTTP responses.
"""

from fastapi import status


class EngagementError(Exception):
    """Base exception for all engagement-core errors."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "error"

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


class ValidationFailed(EngagementError):
    """Rejected before any write: missing field, past date, bad value."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "validation_error"


class StateConflict(EngagementError):
    """
    The target entity is not in the state the operation expects.
    Callers should re-fetch current state rather than retry.
    """

    status_code = status.HTTP_409_CONFLICT
    code = "state_conflict"

    def __init__(self, detail: str, current_status: str = None):
        self.current_status = current_status
        super().__init__(detail)


class NotFound(EngagementError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class PermissionDenied(EngagementError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"


class StoreError(EngagementError):
    """Network, timeout or permission failure from the entity store."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "store_error"

    def __init__(self, operation: str, original_error: Exception):
        self.operation = operation
        self.original_error = original_error
        super().__init__(f"Store operation '{operation}' failed")
