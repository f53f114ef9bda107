from __future__ import annotations

from typing import Any

from fastapi import HTTPException, status


class WorkflowError(HTTPException):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Workflow error"

    def __init__(self, message: str | None = None, errors: list[dict[str, Any]] | None = None):
        self.message = message or self.default_message
        self.errors = list(errors or [])
        detail: Any = self.message
        if self.errors:
            detail = {"message": self.message, "errors": self.errors}
        super().__init__(status_code=type(self).status_code, detail=detail)


class ValidationError(WorkflowError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Validation error"


class NotFound(WorkflowError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found"


class Forbidden(WorkflowError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "You are not allowed to perform this action"


class Conflict(WorkflowError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Conflict"


class QuotaInsufficient(Conflict):
    default_message = "Leave quota is insufficient"

    def __init__(self, shortages: list[dict[str, Any]]):
        months = ", ".join(item["month"] for item in shortages)
        super().__init__(f"Leave quota is insufficient for {months}", errors=shortages)
        self.shortages = shortages
