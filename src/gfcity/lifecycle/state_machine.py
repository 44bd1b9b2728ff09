"""
Report lifecycle state machine.

`transition()` is pure: it validates the (status, event) pair and the event's
guard, then returns an updated copy of the report. Persisting the result, and
doing so atomically against concurrent writers, is the caller's job (see
`Store.compare_and_set_report`).

    (none) --submit--> PENDING_PAYMENT --payment_confirmed--> PAYMENT_CONFIRMED
    PAYMENT_CONFIRMED --claim--> ASSIGNED --start--> IN_PROGRESS --verify--> COMPLETED
    PENDING_PAYMENT | PAYMENT_CONFIRMED --cancel--> CANCELLED
"""

from __future__ import annotations

import hmac
import secrets
from datetime import datetime
from enum import Enum
from typing import Any

from gfcity.core.time import utc_now
from gfcity.domain.errors import InvalidTransition
from gfcity.domain.models import Payment, PaymentStatus, Report, ReportStatus, User, UserRole


class ReportEvent(str, Enum):
    SUBMIT = "submit"
    PAYMENT_CONFIRMED = "payment_confirmed"
    CLAIM = "claim"
    START = "start"
    VERIFY = "verify"
    CANCEL = "cancel"


TRANSITIONS: dict[tuple[ReportStatus | None, ReportEvent], ReportStatus] = {
    (None, ReportEvent.SUBMIT): ReportStatus.PENDING_PAYMENT,
    (ReportStatus.PENDING_PAYMENT, ReportEvent.PAYMENT_CONFIRMED): ReportStatus.PAYMENT_CONFIRMED,
    (ReportStatus.PAYMENT_CONFIRMED, ReportEvent.CLAIM): ReportStatus.ASSIGNED,
    (ReportStatus.ASSIGNED, ReportEvent.START): ReportStatus.IN_PROGRESS,
    (ReportStatus.IN_PROGRESS, ReportEvent.VERIFY): ReportStatus.COMPLETED,
    (ReportStatus.PENDING_PAYMENT, ReportEvent.CANCEL): ReportStatus.CANCELLED,
    (ReportStatus.PAYMENT_CONFIRMED, ReportEvent.CANCEL): ReportStatus.CANCELLED,
}


def target_status(current: ReportStatus | None, event: ReportEvent) -> ReportStatus:
    try:
        return TRANSITIONS[(current, event)]
    except KeyError:
        raise InvalidTransition(current if current is not None else "none", event) from None


def new_verification_code(length: int = 6) -> str:
    """Numeric code the resident shows (or encodes in a QR) for the collector to scan."""
    return "".join(secrets.choice("0123456789") for _ in range(int(length)))


def submit(
    actor: User,
    *,
    location,
    description: str,
    volume: str,
    fee_amount: float,
    currency: str,
    verification_code: str,
    now: datetime | None = None,
    **extra: Any,
) -> Report:
    """Create a report in PENDING_PAYMENT on behalf of a resident."""
    status = target_status(None, ReportEvent.SUBMIT)
    if actor.role != UserRole.RESIDENT:
        raise InvalidTransition("none", ReportEvent.SUBMIT, "only residents can submit reports")
    return Report(
        reporter_id=actor.id,
        location=location,
        description=description,
        volume=volume,
        fee_amount=fee_amount,
        currency=currency,
        verification_code=verification_code,
        status=status,
        reported_at=now or utc_now(),
        **extra,
    )


def _require_assignee(report: Report, event: ReportEvent, actor: User) -> None:
    if report.assigned_collector_id != actor.id:
        raise InvalidTransition(report.status, event, "only the assigned collector can do this")


def transition(
    report: Report,
    event: ReportEvent,
    actor: User | None,
    *,
    payment: Payment | None = None,
    code: str | None = None,
    require_code: bool = False,
    now: datetime | None = None,
) -> Report:
    """Apply `event` to `report` as `actor` and return the updated copy.

    Context by event:
    - `payment_confirmed`: `payment` must be the SUCCESSFUL payment for this report
      (actor may be None; the system applies it).
    - `verify`: `code` is the scanned verification code, if any.

    Raises:
        InvalidTransition: the pair is not in the table or its guard fails.
    """
    if event == ReportEvent.SUBMIT:
        raise InvalidTransition(report.status, event, "report already exists")
    status = target_status(report.status, event)
    now = now or utc_now()

    if event == ReportEvent.PAYMENT_CONFIRMED:
        if payment is None or payment.report_id != report.id:
            raise InvalidTransition(report.status, event, "no payment for this report")
        if payment.status != PaymentStatus.SUCCESSFUL:
            raise InvalidTransition(report.status, event, f"payment is {payment.status.value}")
        return report.model_copy(update={"status": status})

    if actor is None:
        raise InvalidTransition(report.status, event, "an actor is required")

    if event == ReportEvent.CLAIM:
        if actor.role != UserRole.COLLECTOR or not actor.is_active:
            raise InvalidTransition(report.status, event, "only active collectors can claim reports")
        if report.assigned_collector_id is not None:
            raise InvalidTransition(report.status, event, "report is already assigned")
        return report.model_copy(update={"status": status, "assigned_collector_id": actor.id, "assigned_at": now})

    if event == ReportEvent.START:
        _require_assignee(report, event, actor)
        return report.model_copy(update={"status": status, "started_at": now})

    if event == ReportEvent.VERIFY:
        _require_assignee(report, event, actor)
        if code is None:
            if require_code:
                raise InvalidTransition(report.status, event, "a verification code is required")
        elif not hmac.compare_digest(code.strip(), report.verification_code):
            raise InvalidTransition(report.status, event, "verification code does not match")
        return report.model_copy(update={"status": status, "completed_at": now})

    if event == ReportEvent.CANCEL:
        if actor.id != report.reporter_id and actor.role != UserRole.ADMIN:
            raise InvalidTransition(report.status, event, "only the reporter or an admin can cancel")
        return report.model_copy(update={"status": status, "cancelled_at": now})

    raise InvalidTransition(report.status, event)
