"""Typed failures raised by the cash and inventory services.

Every error carries a human readable ``message`` plus a ``details`` dict with
whatever the caller needs to decide between retrying, correcting input or
escalating (current state, required state, computed totals, counts).
"""

from __future__ import annotations

from typing import Any


class ServiceError(Exception):
    kind = 'ERROR'
    status_code = 400

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        return {'message': self.message, 'kind': self.kind, **self.details}


class UnauthenticatedError(ServiceError, PermissionError):
    kind = 'UNAUTHENTICATED'
    status_code = 401


class NotAuthorizedError(ServiceError, PermissionError):
    kind = 'NOT_AUTHORIZED'
    status_code = 403


class ForbiddenOwnershipError(ServiceError, PermissionError):
    kind = 'FORBIDDEN_OWNERSHIP'
    status_code = 403


class ValidationError(ServiceError, ValueError):
    kind = 'VALIDATION'
    status_code = 400


class NotFoundError(ServiceError, LookupError):
    kind = 'NOT_FOUND'
    status_code = 404


class WrongStateError(ServiceError):
    kind = 'WRONG_STATE'
    status_code = 409

    def __init__(self, message: str, *, current: str | None = None, required: list[str] | None = None, **details: Any) -> None:
        super().__init__(message, current=current, required=required or [], **details)
        self.current = current
        self.required = required or []


class AlreadyClosedError(WrongStateError):
    kind = 'ALREADY_CLOSED'


class ConflictError(ServiceError):
    kind = 'CONFLICT'
    status_code = 409


class ConcurrencyConflictError(ConflictError):
    kind = 'CONCURRENT_MODIFICATION'


class InsufficientStockError(ConflictError):
    kind = 'INSUFFICIENT_STOCK'

    def __init__(self, *, part_id: str, needed: int, available: int, **details: Any) -> None:
        super().__init__(
            f'Insufficient stock for part_id={part_id}. Needed {needed}, available {available}.',
            part_id=part_id,
            needed=needed,
            available=available,
            **details,
        )
        self.part_id = part_id
        self.needed = needed
        self.available = available
