"""
Typed dispatch errors.

Each error maps to an HTTP status code. The transport layer catches
``DispatchError`` subtypes and converts them to ``HTTPException`` without
embedding business logic in the route handlers.
"""
from __future__ import annotations


class DispatchError(Exception):
    """Base class for all dispatch domain errors."""

    status_code: int = 500

    def __init__(self, detail: str = "Internal error", *, reason: str | None = None):
        self.detail = detail
        self.reason = reason
        super().__init__(detail)


class ValidationError(DispatchError):
    """Missing or malformed caller input (400). No state was mutated."""

    status_code = 400


class NotFoundError(DispatchError):
    """Referenced job or hero does not exist (404)."""

    status_code = 404


class PreconditionFailedError(DispatchError):
    """Job or hero is not in the state the operation requires (409)."""

    status_code = 409

    ALREADY_ASSIGNED = "already_assigned"
    WORKER_BUSY = "worker_busy"
    INVALID_TRANSITION = "invalid_transition"


class TransientIOError(DispatchError):
    """Store or messaging call failed; the caller may retry (503)."""

    status_code = 503


class PermissionDeniedError(DispatchError):
    """Caller is not a participant allowed to perform the operation (403)."""

    status_code = 403
