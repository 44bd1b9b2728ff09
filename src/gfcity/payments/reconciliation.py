"""
Payment reconciliation.

Applies one gateway notification to our Payment and, when the payment succeeds,
to the Report it pays for. Gateways retry aggressively and may deliver the same
notification several times, concurrently, or out of order, so:

- The Payment row is the source of truth. It is written with a conditional
  update that only acts while the payment is non-terminal; the first terminal
  status wins and every later notification is a no-op.
- The Report status is a projection of the payment. If projecting fails after the
  payment was recorded, it is retried here, again on the next delivery of the same
  notification, and by `repair_projections()`.
- Side effects (SMS) only fire on the call that moved the payment into a terminal
  state, and never undo the state change when they fail.
- An unknown reference is an outcome, not an exception: the webhook still has
  to acknowledge it.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from gfcity.config.settings import ReconciliationSettings
from gfcity.core.locks import KeyedLock
from gfcity.core.time import utc_now
from gfcity.domain.errors import DependencyUnavailable, PaymentConflict
from gfcity.domain.models import (
    ExternalReference,
    Payment,
    PaymentProviderName,
    PaymentStatus,
    ReconciliationOutcome,
    ReconciliationResult,
    ReportStatus,
)
from gfcity.lifecycle.state_machine import ReportEvent, transition
from gfcity.notify.dispatcher import NotificationDispatcher, NotificationKind
from gfcity.storage.port import Store

logger = logging.getLogger(__name__)

StatusMapper = Callable[[PaymentProviderName, str], PaymentStatus]


def format_amount(amount: float) -> str:
    return f"{amount:,.0f}"


class ReconciliationEngine:
    def __init__(
        self,
        store: Store,
        notifier: NotificationDispatcher,
        *,
        status_mapper: StatusMapper,
        settings: ReconciliationSettings,
        locks: KeyedLock | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._store = store
        self._notifier = notifier
        self._status_mapper = status_mapper
        self._settings = settings
        self._locks = locks or KeyedLock(timeout_seconds=settings.lock_timeout_seconds)
        self._sleep = sleep

    def reconcile(
        self,
        reference: ExternalReference,
        gateway_status: str,
        raw_payload: dict[str, Any] | None,
        *,
        transaction_id: str | None = None,
    ) -> ReconciliationResult:
        status = self._status_mapper(reference.provider, gateway_status)
        logger.info("Reconciling %s: gateway status %r -> %s", reference, gateway_status, status.value)

        with self._locks.hold(reference):
            now = utc_now()
            changes: dict[str, Any] = {"status": status, "raw_payload": raw_payload, "updated_at": now}
            if transaction_id:
                changes["provider_transaction_id"] = transaction_id
            if status == PaymentStatus.SUCCESSFUL:
                changes["completed_at"] = now
            elif status.is_terminal:
                changes["failure_reason"] = f"gateway reported '{gateway_status}'"

            try:
                update = self._store.update_payment_if_non_terminal(reference, changes)
            except PaymentConflict as exc:
                return self._reject_second_success(reference, raw_payload, exc)

            if update is None:
                logger.warning("Gateway notification for unknown payment reference %s", reference)
                return ReconciliationResult(
                    outcome=ReconciliationOutcome.NOT_FOUND,
                    reference=reference,
                    message="payment record not found",
                )

            if not update.applied:
                payment = update.before
                report_status = None
                if payment.status == PaymentStatus.SUCCESSFUL:
                    # Re-delivery is also the natural moment to repair a projection that failed earlier.
                    report_status = self._project_payment(payment)
                logger.info(
                    "Duplicate notification for %s ignored (payment already %s, gateway says %s)",
                    reference,
                    payment.status.value,
                    status.value,
                )
                return ReconciliationResult(
                    outcome=ReconciliationOutcome.DUPLICATE,
                    reference=reference,
                    payment_status=payment.status,
                    report_status=report_status or self._report_status(payment),
                    message=f"payment already {payment.status.value}",
                )

            payment = update.after
            if not status.is_terminal:
                return ReconciliationResult(
                    outcome=ReconciliationOutcome.NON_TERMINAL,
                    reference=reference,
                    payment_status=payment.status,
                    report_status=self._report_status(payment),
                    message=f"payment is {payment.status.value}",
                )

            report_status = None
            notified = False
            if status == PaymentStatus.SUCCESSFUL:
                report_status = self._project_payment(payment)
                # No pickup follows on a cancelled report; the refund follow-up is logged instead.
                if report_status != ReportStatus.CANCELLED:
                    notified = self._notify_resident(payment, NotificationKind.PAYMENT_CONFIRMED)
            elif status == PaymentStatus.FAILED:
                notified = self._notify_resident(payment, NotificationKind.PAYMENT_FAILED)

            logger.info("Payment %s for report %s is now %s", payment.id, payment.report_id, status.value)
            return ReconciliationResult(
                outcome=ReconciliationOutcome.APPLIED,
                reference=reference,
                payment_status=payment.status,
                report_status=report_status or self._report_status(payment),
                notified=notified,
                message=f"payment {payment.status.value}",
            )

    def _reject_second_success(
        self,
        reference: ExternalReference,
        raw_payload: dict[str, Any] | None,
        exc: PaymentConflict,
    ) -> ReconciliationResult:
        reason = "duplicate payment: report already paid by another payment"
        update = self._store.update_payment_if_non_terminal(
            reference,
            {"status": PaymentStatus.CANCELLED, "raw_payload": raw_payload, "failure_reason": reason, "updated_at": utc_now()},
        )
        payment = (update.after or update.before) if update else None
        logger.warning(
            "Second successful payment %s for an already-paid report (%s); marked cancelled, needs refund follow-up.",
            reference,
            exc.message,
        )
        return ReconciliationResult(
            outcome=ReconciliationOutcome.CONFLICT,
            reference=reference,
            payment_status=payment.status if payment else None,
            report_status=self._report_status(payment) if payment else None,
            message=reason,
        )

    def _report_status(self, payment: Payment) -> ReportStatus | None:
        report = self._store.get_report(payment.report_id)
        return report.status if report else None

    def _project_payment(self, payment: Payment) -> ReportStatus | None:
        """Move the paid report to PAYMENT_CONFIRMED, retrying on store failures."""
        attempts = int(self._settings.report_retry_attempts)
        delay = float(self._settings.report_retry_delay_seconds)
        for attempt in range(1, attempts + 1):
            try:
                report = self._store.get_report(payment.report_id)
                if report is None:
                    logger.error("Payment %s references missing report %s", payment.id, payment.report_id)
                    return None
                if report.status != ReportStatus.PENDING_PAYMENT:
                    if report.status == ReportStatus.CANCELLED:
                        logger.warning(
                            "Report %s was cancelled before payment %s succeeded; needs refund follow-up.",
                            report.id,
                            payment.id,
                        )
                    return report.status
                updated = transition(report, ReportEvent.PAYMENT_CONFIRMED, None, payment=payment)
                stored = self._store.compare_and_set_report(
                    updated,
                    expected_status=ReportStatus.PENDING_PAYMENT,
                    expected_collector_id=None,
                )
            except DependencyUnavailable as exc:
                logger.warning(
                    "Projecting payment %s onto report %s failed (%s); attempt %s/%s",
                    payment.id,
                    payment.report_id,
                    exc.message,
                    attempt,
                    attempts,
                )
                if attempt < attempts:
                    self._sleep(delay)
                continue
            if stored is not None:
                logger.info("Report %s confirmed by payment %s", stored.id, payment.id)
                return stored.status
            # Lost a race with another writer; re-read and decide again.

        logger.error(
            "Payment %s is successful but report %s is still pending; it will be repaired on redelivery "
            "or by repair_projections().",
            payment.id,
            payment.report_id,
        )
        return ReportStatus.PENDING_PAYMENT

    def repair_projections(self) -> int:
        """Confirm every report whose successful payment was not yet projected. Returns the count fixed."""
        fixed = 0
        for payment in self._store.list_payments(status=PaymentStatus.SUCCESSFUL):
            report = self._store.get_report(payment.report_id)
            if report is None or report.status != ReportStatus.PENDING_PAYMENT:
                continue
            with self._locks.hold(payment.reference):
                if self._project_payment(payment) == ReportStatus.PAYMENT_CONFIRMED:
                    fixed += 1
        if fixed:
            logger.info("Repaired %s report projection(s)", fixed)
        return fixed

    def _notify_resident(self, payment: Payment, kind: NotificationKind) -> bool:
        resident = self._store.get_user(payment.resident_id)
        if resident is None:
            logger.warning("Payment %s has no resident record; skipping %s notification", payment.id, kind.value)
            return False
        self._notifier.notify(
            resident.phone_number,
            kind,
            {"name": resident.full_name, "amount": format_amount(payment.amount), "currency": payment.currency},
        )
        return True
