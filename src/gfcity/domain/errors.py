"""
Error taxonomy.

Every error carries a stable machine-readable `kind` plus a human message. The
API layer maps `http_status` onto responses; nothing here knows about HTTP
beyond that number.
"""

from __future__ import annotations

from typing import Any


class GfcError(Exception):
    kind = "internal_error"
    http_status = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            out["details"] = {k: str(v) for k, v in self.details.items()}
        return out


class ValidationError(GfcError):
    """Malformed input, rejected before any state is touched."""

    kind = "validation_error"
    http_status = 400


class Unauthorized(GfcError):
    kind = "unauthorized"
    http_status = 401


class NotFound(GfcError):
    kind = "not_found"
    http_status = 404


class InvalidTransition(GfcError):
    """A report state machine guard failed."""

    kind = "invalid_transition"
    http_status = 409

    def __init__(self, current: Any, event: Any, reason: str | None = None):
        current_s = getattr(current, "value", current)
        event_s = getattr(event, "value", event)
        message = f"cannot apply '{event_s}' to a report in status '{current_s}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, current=current_s, event=event_s)
        self.current = current
        self.event = event
        self.reason = reason


class AlreadyAssigned(GfcError):
    """Lost a claim race: another collector took the report first."""

    kind = "already_assigned"
    http_status = 409


class PaymentConflict(GfcError):
    kind = "payment_conflict"
    http_status = 409


class DependencyUnavailable(GfcError):
    """The datastore, a gateway or a lock did not answer in time."""

    kind = "dependency_unavailable"
    http_status = 503
