"""Error taxonomy for time-entry transitions.

Every error is a ``ValueError`` so callers that already roll back on
``ValueError`` keep doing so. Routers translate them to HTTP responses
through ``status_code`` and ``to_detail()``.

Scope rule: anything outside the caller's company is reported as
``NotFoundError``; ``ForbiddenError`` is only raised once existence inside
the caller's own company has been confirmed.
"""

from typing import Any, Dict


class TimeEntryError(ValueError):
    status_code = 400

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"message": self.message}
        detail.update({k: str(v) if not isinstance(v, (int, bool)) else v for k, v in self.context.items()})
        return detail


class NotFoundError(TimeEntryError):
    status_code = 404


class ConflictError(TimeEntryError):
    status_code = 409


class InvalidStateError(TimeEntryError):
    status_code = 409


class ForbiddenError(TimeEntryError):
    status_code = 403


class ValidationError(TimeEntryError):
    status_code = 422
