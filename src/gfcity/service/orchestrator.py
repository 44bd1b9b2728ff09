"""
Service orchestrator.

`GarbageService` is the single entry point used by the API and the CLI. It wires
the state machine, the ranking engine, the payment gateways and the
reconciliation engine onto a `Store`, and owns the boundary policies:

- store and gateway calls that raise `DependencyUnavailable` are retried once
  with backoff, then the error propagates;
- every report write is a compare-and-set against the status the transition was
  computed from, so concurrent callers cannot both win;
- gateway callbacks always produce an `Acknowledgement`, whatever happens inside.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Mapping, TypeVar

from gfcity.config.settings import FeeSettings, Settings
from gfcity.core.geo import haversine_m
from gfcity.core.retry import call_with_retry
from gfcity.core.time import utc_now
from gfcity.domain.errors import (
    AlreadyAssigned,
    GfcError,
    InvalidTransition,
    NotFound,
    PaymentConflict,
    Unauthorized,
    ValidationError,
)
from gfcity.domain.models import (
    ASSIGNED_STATUSES,
    Acknowledgement,
    CollectionEvent,
    ExternalReference,
    Location,
    Payment,
    PaymentInitiation,
    PaymentProviderName,
    PaymentStatus,
    ReconciliationOutcome,
    Report,
    ReportStatus,
    User,
    UserRole,
)
from gfcity.lifecycle.state_machine import ReportEvent, new_verification_code, submit, transition
from gfcity.notify.dispatcher import NotificationDispatcher, NotificationKind
from gfcity.payments.gateways import GatewayRegistry, new_reference
from gfcity.payments.reconciliation import ReconciliationEngine
from gfcity.ranking.nearest import NearestCollectors, find_nearest_collectors, nearby_reports
from gfcity.storage.port import Store

logger = logging.getLogger(__name__)

T = TypeVar("T")


def fee_for(volume: str, fees: FeeSettings) -> float:
    """Collection fee: the fixed default unless the policy prices this volume separately."""
    return float(fees.by_volume.get(volume, fees.default_amount))


class GarbageService:
    def __init__(
        self,
        store: Store,
        gateways: GatewayRegistry,
        notifier: NotificationDispatcher,
        *,
        settings: Settings,
        engine: ReconciliationEngine | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.gateways = gateways
        self.notifier = notifier
        self.settings = settings
        self.engine = engine or ReconciliationEngine(
            store,
            notifier,
            status_mapper=gateways.translate_status,
            settings=settings.reconciliation,
        )
        self._clock = clock

    # ---- helpers ---------------------------------------------------------

    def _retry(self, fn: Callable[[], T], what: str) -> T:
        policy = self.settings.orchestrator
        return call_with_retry(
            fn,
            retries=policy.dependency_retries,
            backoff_seconds=policy.retry_backoff_seconds,
            what=what,
        )

    def get_user(self, user_id: uuid.UUID) -> User:
        user = self._retry(lambda: self.store.get_user(user_id), "user lookup")
        if user is None:
            raise NotFound(f"user {user_id} not found")
        return user

    def get_report(self, report_id: uuid.UUID) -> Report:
        report = self._retry(lambda: self.store.get_report(report_id), "report lookup")
        if report is None:
            raise NotFound(f"report {report_id} not found")
        return report

    def _notify(self, user_id: uuid.UUID | None, kind: NotificationKind, **params: Any) -> None:
        if user_id is None:
            return
        user = self.store.get_user(user_id)
        if user is None:
            return
        self.notifier.notify(user.phone_number, kind, {"name": user.full_name, **params})

    # ---- users -----------------------------------------------------------

    def register_user(
        self,
        *,
        phone_number: str,
        full_name: str,
        role: UserRole,
        email: str | None = None,
        area: str | None = None,
        location: Location | None = None,
    ) -> User:
        if role == UserRole.RESIDENT and location is None:
            raise ValidationError("residents must register with a home location")
        if self.store.get_user_by_phone(phone_number) is not None:
            raise ValidationError("Phone number already registered", phone_number=phone_number)
        now = self._clock()
        user = User(
            phone_number=phone_number,
            full_name=full_name,
            role=role,
            email=email,
            area=area,
            home_location=location if role == UserRole.RESIDENT else None,
            current_location=location if role == UserRole.COLLECTOR else None,
            location_updated_at=now if role == UserRole.COLLECTOR and location is not None else None,
            created_at=now,
        )
        user = self._retry(lambda: self.store.get_user(user.id) or self.store.add_user(user), "user insert")
        logger.info("Registered %s %s", user.role.value, user.id)
        self.notifier.notify(user.phone_number, NotificationKind.WELCOME, {"name": user.full_name, "role": user.role.value})
        return user

    def find_user_by_phone(self, phone_number: str) -> User:
        user = self._retry(lambda: self.store.get_user_by_phone(phone_number), "user lookup")
        if user is None or not user.is_active:
            raise NotFound("User not found")
        return user

    def update_collector_location(self, collector: User, location: Location) -> User:
        if collector.role != UserRole.COLLECTOR:
            raise ValidationError("only collectors report a current location")
        at = self._clock()
        return self._retry(
            lambda: self.store.update_collector_location(collector.id, location, at),
            "collector location update",
        )

    # ---- reports ---------------------------------------------------------

    def submit_report(
        self,
        resident: User,
        location: Location,
        description: str,
        volume: str,
        *,
        address_description: str | None = None,
        garbage_type: str = "mixed",
        photo_url: str | None = None,
    ) -> Report:
        """Create a report awaiting payment; the fee comes from the fee policy."""
        report = submit(
            resident,
            location=location,
            description=description,
            volume=volume,
            fee_amount=fee_for(volume, self.settings.fees),
            currency=self.settings.fees.currency,
            verification_code=new_verification_code(self.settings.verification.code_length),
            now=self._clock(),
            address_description=address_description,
            garbage_type=garbage_type,
            photo_url=photo_url,
        )
        # Inserting is a single store step keyed by the report id, so a retry can't duplicate it.
        stored = self._retry(lambda: self.store.get_report(report.id) or self.store.add_report(report), "report insert")
        logger.info("Report %s submitted by %s (fee %s %s)", stored.id, resident.id, stored.fee_amount, stored.currency)
        return stored

    def reports_for_resident(self, resident: User) -> list[Report]:
        return self._retry(lambda: self.store.list_reports(reporter_id=resident.id), "report listing")

    def assignments_for_collector(self, collector: User) -> list[Report]:
        rows = self._retry(
            lambda: self.store.list_reports(
                collector_id=collector.id,
                statuses=[ReportStatus.ASSIGNED, ReportStatus.IN_PROGRESS],
            ),
            "assignment listing",
        )
        return sorted(rows, key=lambda r: r.assigned_at or r.reported_at)

    def nearby_reports(
        self,
        collector: User,
        *,
        location: Location | None = None,
        radius_m: float | None = None,
    ) -> list[tuple[Report, float | None]]:
        if collector.role != UserRole.COLLECTOR:
            raise ValidationError("only collectors can browse nearby reports")
        origin = location or collector.current_location
        if origin is None:
            raise ValidationError("Latitude and longitude required")
        return self._retry(
            lambda: nearby_reports(self.store, origin, settings=self.settings.ranking, radius_m=radius_m),
            "nearby report query",
        )

    def find_nearest_collectors(self, report_id: uuid.UUID, *, limit: int | None = None) -> NearestCollectors:
        report = self.get_report(report_id)
        return find_nearest_collectors(
            self.store,
            report.location,
            settings=self.settings.ranking,
            limit=limit,
            clock=self._clock,
        )

    def _write_report(self, updated: Report, *, expected: Report) -> Report | None:
        return self._retry(
            lambda: self.store.compare_and_set_report(
                updated,
                expected_status=expected.status,
                expected_collector_id=expected.assigned_collector_id,
            ),
            "report update",
        )

    def claim_report(self, collector: User, report_id: uuid.UUID) -> Report:
        """Give `collector` exclusive ownership of a paid report; exactly one concurrent claim wins."""
        report = self.get_report(report_id)
        if report.status in ASSIGNED_STATUSES:
            if report.assigned_collector_id == collector.id:
                if report.status == ReportStatus.ASSIGNED:
                    return report
                raise InvalidTransition(report.status, ReportEvent.CLAIM, "already claimed by this collector")
            raise AlreadyAssigned("Report is already assigned to another collector", report_id=report_id)

        updated = transition(report, ReportEvent.CLAIM, collector, now=self._clock())
        stored = self._write_report(updated, expected=report)
        if stored is None:
            current = self.get_report(report_id)
            # A retried write may have landed on the first attempt.
            if current.status == ReportStatus.ASSIGNED and current.assigned_collector_id == collector.id:
                return current
            if current.assigned_collector_id is not None:
                raise AlreadyAssigned("Report is already assigned to another collector", report_id=report_id)
            raise InvalidTransition(current.status, ReportEvent.CLAIM)

        logger.info("Report %s claimed by collector %s", report_id, collector.id)
        self._notify(
            stored.reporter_id,
            NotificationKind.REPORT_ASSIGNED,
            collector_name=collector.full_name,
            collector_phone=collector.phone_number,
        )
        return stored

    def start_collection(self, collector: User, report_id: uuid.UUID) -> Report:
        report = self.get_report(report_id)
        updated = transition(report, ReportEvent.START, collector, now=self._clock())
        stored = self._write_report(updated, expected=report)
        if stored is None:
            current = self.get_report(report_id)
            if current.status == ReportStatus.IN_PROGRESS and current.assigned_collector_id == collector.id:
                return current
            raise InvalidTransition(current.status, ReportEvent.START)
        return stored

    def verify_collection(
        self,
        collector: User,
        report_id: uuid.UUID,
        location: Location,
        code: str | None = None,
    ) -> CollectionEvent:
        """Complete a collection from an on-site scan and record the proof.

        A report still in ASSIGNED is started implicitly: collectors scanning on
        arrival skip the separate start step.
        """
        report = self.get_report(report_id)
        now = self._clock()
        working = report
        if report.status == ReportStatus.ASSIGNED:
            working = transition(report, ReportEvent.START, collector, now=now)
        updated = transition(
            working,
            ReportEvent.VERIFY,
            collector,
            code=code,
            require_code=self.settings.verification.require_code,
            now=now,
        )

        distance = haversine_m(report.location, location)
        within = distance <= self.settings.verification.expected_radius_m
        if not within:
            logger.warning(
                "Collection scan for report %s is %.0fm from the reported location (expected <= %.0fm)",
                report_id,
                distance,
                self.settings.verification.expected_radius_m,
            )
        event = CollectionEvent(
            report_id=report.id,
            collector_id=collector.id,
            scan_location=location,
            code_presented=code is not None,
            code_matched=code is not None,
            distance_from_report_m=distance,
            within_expected_radius=within,
            scanned_at=now,
            created_at=now,
        )
        stored = self._retry(
            lambda: self.store.complete_report(
                updated,
                event,
                expected_status=report.status,
                expected_collector_id=collector.id,
            ),
            "collection completion",
        )
        if stored is None:
            existing = self.store.get_collection_event(report_id)
            if existing is not None and existing.collector_id == collector.id:
                return existing
            raise InvalidTransition(self.get_report(report_id).status, ReportEvent.VERIFY)

        logger.info("Report %s collected by %s (%.0fm from report)", report_id, collector.id, distance)
        self._notify(stored.reporter_id, NotificationKind.COLLECTION_COMPLETED)
        return event

    def cancel_report(self, actor: User, report_id: uuid.UUID) -> Report:
        report = self.get_report(report_id)
        updated = transition(report, ReportEvent.CANCEL, actor, now=self._clock())
        stored = self._write_report(updated, expected=report)
        if stored is None:
            current = self.get_report(report_id)
            if current.status == ReportStatus.CANCELLED:
                return current
            raise InvalidTransition(current.status, ReportEvent.CANCEL)
        logger.info("Report %s cancelled by %s", report_id, actor.id)
        return stored

    # ---- payments --------------------------------------------------------

    def initiate_payment(
        self,
        resident: User,
        report_id: uuid.UUID,
        *,
        phone_number: str | None = None,
        provider: PaymentProviderName | str | None = None,
    ) -> PaymentInitiation:
        report = self.get_report(report_id)
        if report.reporter_id != resident.id:
            raise NotFound("Report not found")
        paid = [p for p in self.store.payments_for_report(report.id) if p.status == PaymentStatus.SUCCESSFUL]
        if paid:
            raise PaymentConflict("Report already paid", report_id=report_id)
        if report.status != ReportStatus.PENDING_PAYMENT:
            raise InvalidTransition(report.status, "pay", "report is not awaiting payment")

        gateway = self.gateways.get(provider or self.settings.payments.default_provider)
        payment = Payment(
            report_id=report.id,
            resident_id=resident.id,
            reference=new_reference(gateway.name, prefix=self.settings.payments.reference_prefix),
            amount=report.fee_amount,
            currency=report.currency,
            phone_number=phone_number or resident.phone_number,
            initiated_at=self._clock(),
        )
        # add_payment re-checks "already paid" atomically with the insert.
        payment = self._retry(
            lambda: self.store.get_payment(payment.id) or self.store.add_payment(payment),
            "payment insert",
        )
        try:
            handle = self._retry(lambda: gateway.initiate(payment, resident), f"{gateway.name.value} charge")
        except GfcError as exc:
            self.store.update_payment_if_non_terminal(
                payment.reference,
                {"status": PaymentStatus.FAILED, "failure_reason": f"initiation failed: {exc.message}", "updated_at": self._clock()},
            )
            raise
        logger.info("Payment %s initiated via %s for report %s", payment.reference, gateway.name.value, report.id)
        return PaymentInitiation(payment=payment, handle=handle)

    def payment_status(self, actor: User, provider: PaymentProviderName | str, reference_value: str) -> Payment:
        reference = ExternalReference(provider=PaymentProviderName(provider), value=reference_value)
        payment = self._retry(lambda: self.store.get_payment_by_reference(reference), "payment lookup")
        if payment is None or (payment.resident_id != actor.id and actor.role != UserRole.ADMIN):
            raise NotFound("Payment not found")
        return payment

    def handle_gateway_callback(
        self,
        provider: PaymentProviderName | str,
        payload: Mapping[str, Any],
        headers: Mapping[str, str] | None = None,
    ) -> Acknowledgement:
        """Process a gateway notification and always acknowledge it.

        Only a failed signature check escapes (as `Unauthorized`): such a request
        did not come from the gateway, so there is no retry storm to prevent.
        """
        provider_name = getattr(provider, "value", provider)
        try:
            gateway = self.gateways.get(provider)
            notification = self._retry(
                lambda: gateway.parse_callback(payload, headers or {}),
                f"{gateway.name.value} callback parsing",
            )
            result = self._retry(
                lambda: self.engine.reconcile(
                    notification.reference,
                    notification.raw_status,
                    notification.raw_payload,
                    transaction_id=notification.transaction_id,
                ),
                "payment reconciliation",
            )
        except Unauthorized:
            logger.error("Rejected %s webhook with an invalid signature", provider_name)
            raise
        except GfcError as exc:
            logger.error("Webhook from %s not processed (%s): %s", provider_name, exc.kind, exc.message)
            return Acknowledgement(success=False, message=exc.message)
        except Exception:
            logger.exception("Unexpected error while processing %s webhook", provider_name)
            return Acknowledgement(success=False, message="Error processing webhook")

        return Acknowledgement(
            success=result.outcome != ReconciliationOutcome.NOT_FOUND,
            message=result.message or "Webhook processed successfully",
            outcome=result.outcome,
            payment_status=result.payment_status,
        )

