"""
In-process implementation of the persistence port.

One re-entrant lock guards every table, which makes each public method a single
atomic step: the conditional operations compare and write under the same lock.
Rows are re-validated on every write so model invariants (e.g. assigned
collector iff assigned status) hold for everything stored.

Returned models are shared with the store; callers treat them as values and
write changes back through `model_copy(update=...)` plus a store method.
"""

from __future__ import annotations

import threading
import uuid
from datetime import datetime
from typing import Any, Iterable

from gfcity.core.spatial_index import SpatialGridIndex
from gfcity.domain.errors import NotFound, PaymentConflict, ValidationError
from gfcity.domain.models import (
    CollectionEvent,
    ExternalReference,
    Location,
    Payment,
    PaymentStatus,
    Report,
    ReportStatus,
    User,
    UserRole,
)
from gfcity.storage.port import PaymentUpdate


class InMemoryStore:
    def __init__(self, *, cell_size_m: float = 1000.0, lat0_deg: float = 0.35):
        self._lock = threading.RLock()
        self._users: dict[uuid.UUID, User] = {}
        self._users_by_phone: dict[str, uuid.UUID] = {}
        self._reports: dict[uuid.UUID, Report] = {}
        self._payments: dict[uuid.UUID, Payment] = {}
        self._payments_by_ref: dict[ExternalReference, uuid.UUID] = {}
        self._events: dict[uuid.UUID, CollectionEvent] = {}
        self._collector_index: SpatialGridIndex[uuid.UUID] = SpatialGridIndex(cell_size_m=cell_size_m, lat0_deg=lat0_deg)
        self._report_index: SpatialGridIndex[uuid.UUID] = SpatialGridIndex(cell_size_m=cell_size_m, lat0_deg=lat0_deg)

    # ---- users -----------------------------------------------------------

    def add_user(self, user: User) -> User:
        user = User.model_validate(user.model_dump())
        with self._lock:
            if user.id in self._users:
                raise ValidationError(f"user {user.id} already exists")
            if user.phone_number in self._users_by_phone:
                raise ValidationError("phone number already registered", phone_number=user.phone_number)
            self._users[user.id] = user
            self._users_by_phone[user.phone_number] = user.id
            if user.role == UserRole.COLLECTOR and user.current_location is not None:
                self._collector_index.upsert(user.id, lat=user.current_location.lat, lon=user.current_location.lon)
        return user

    def get_user(self, user_id: uuid.UUID) -> User | None:
        with self._lock:
            return self._users.get(user_id)

    def get_user_by_phone(self, phone_number: str) -> User | None:
        with self._lock:
            user_id = self._users_by_phone.get(phone_number)
            return self._users.get(user_id) if user_id else None

    def update_collector_location(self, user_id: uuid.UUID, location: Location, at: datetime) -> User:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise NotFound(f"user {user_id} not found")
            if user.role != UserRole.COLLECTOR:
                raise ValidationError("only collectors report a current location")
            updated = user.model_copy(update={"current_location": location, "location_updated_at": at})
            self._users[user_id] = updated
            self._collector_index.upsert(user_id, lat=location.lat, lon=location.lon)
            return updated

    def collectors_near(self, location: Location, *, limit: int | None = None) -> list[tuple[User, float]]:
        with self._lock:
            hits = self._collector_index.all_by_distance(lat=location.lat, lon=location.lon)
            out = [(self._users[uid], d) for uid, d in hits if uid in self._users]
        return out if limit is None else out[: max(0, int(limit))]

    # ---- reports ---------------------------------------------------------

    def add_report(self, report: Report) -> Report:
        report = Report.model_validate(report.model_dump())
        with self._lock:
            if report.id in self._reports:
                raise ValidationError(f"report {report.id} already exists")
            if report.reporter_id not in self._users:
                raise NotFound(f"user {report.reporter_id} not found")
            self._reports[report.id] = report
            self._report_index.upsert(report.id, lat=report.location.lat, lon=report.location.lon)
        return report

    def get_report(self, report_id: uuid.UUID) -> Report | None:
        with self._lock:
            return self._reports.get(report_id)

    def list_reports(
        self,
        *,
        reporter_id: uuid.UUID | None = None,
        collector_id: uuid.UUID | None = None,
        statuses: Iterable[ReportStatus] | None = None,
    ) -> list[Report]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            rows = list(self._reports.values())
        out = [
            r
            for r in rows
            if (reporter_id is None or r.reporter_id == reporter_id)
            and (collector_id is None or r.assigned_collector_id == collector_id)
            and (wanted is None or r.status in wanted)
        ]
        out.sort(key=lambda r: r.reported_at, reverse=True)
        return out

    def _matches(self, current: Report, expected_status: ReportStatus, expected_collector_id: uuid.UUID | None) -> bool:
        return current.status == expected_status and current.assigned_collector_id == expected_collector_id

    def compare_and_set_report(
        self,
        updated: Report,
        *,
        expected_status: ReportStatus,
        expected_collector_id: uuid.UUID | None,
    ) -> Report | None:
        """Write `updated` only if the stored row still has the expected status and assignee."""
        updated = Report.model_validate(updated.model_dump())
        with self._lock:
            current = self._reports.get(updated.id)
            if current is None:
                raise NotFound(f"report {updated.id} not found")
            if not self._matches(current, expected_status, expected_collector_id):
                return None
            self._reports[updated.id] = updated
            return updated

    def complete_report(
        self,
        updated: Report,
        event: CollectionEvent,
        *,
        expected_status: ReportStatus,
        expected_collector_id: uuid.UUID,
    ) -> Report | None:
        updated = Report.model_validate(updated.model_dump())
        with self._lock:
            current = self._reports.get(updated.id)
            if current is None:
                raise NotFound(f"report {updated.id} not found")
            if not self._matches(current, expected_status, expected_collector_id):
                return None
            if event.report_id in self._events:
                return None
            self._events[event.report_id] = event
            self._reports[updated.id] = updated
            return updated

    def reports_within(
        self,
        location: Location,
        radius_m: float,
        *,
        statuses: Iterable[ReportStatus],
    ) -> list[tuple[Report, float]]:
        wanted = set(statuses)
        with self._lock:
            hits = self._report_index.query_within(lat=location.lat, lon=location.lon, radius_m=radius_m)
            return [(self._reports[rid], d) for rid, d in hits if self._reports[rid].status in wanted]

    # ---- payments --------------------------------------------------------

    def _successful_payment_for(self, report_id: uuid.UUID) -> Payment | None:
        for p in self._payments.values():
            if p.report_id == report_id and p.status == PaymentStatus.SUCCESSFUL:
                return p
        return None

    def add_payment(self, payment: Payment) -> Payment:
        """Insert a new payment attempt; refuses attempts for an already-paid report."""
        payment = Payment.model_validate(payment.model_dump())
        with self._lock:
            if payment.report_id not in self._reports:
                raise NotFound(f"report {payment.report_id} not found")
            if payment.reference in self._payments_by_ref:
                raise ValidationError(f"payment reference {payment.reference} already used")
            if self._successful_payment_for(payment.report_id) is not None:
                raise PaymentConflict("report already paid", report_id=payment.report_id)
            self._payments[payment.id] = payment
            self._payments_by_ref[payment.reference] = payment.id
        return payment

    def get_payment(self, payment_id: uuid.UUID) -> Payment | None:
        with self._lock:
            return self._payments.get(payment_id)

    def get_payment_by_reference(self, reference: ExternalReference) -> Payment | None:
        with self._lock:
            payment_id = self._payments_by_ref.get(reference)
            return self._payments.get(payment_id) if payment_id else None

    def payments_for_report(self, report_id: uuid.UUID) -> list[Payment]:
        with self._lock:
            rows = [p for p in self._payments.values() if p.report_id == report_id]
        rows.sort(key=lambda p: p.initiated_at)
        return rows

    def list_payments(self, *, status: PaymentStatus | None = None) -> list[Payment]:
        with self._lock:
            rows = list(self._payments.values())
        return [p for p in rows if status is None or p.status == status]

    def update_payment_if_non_terminal(self, reference: ExternalReference, changes: dict[str, Any]) -> PaymentUpdate | None:
        """Apply `changes` unless the payment already reached a terminal status.

        Returns None for an unknown reference. Raises `PaymentConflict` (writing
        nothing) if `changes` would make a second payment for the same report
        SUCCESSFUL.
        """
        with self._lock:
            payment_id = self._payments_by_ref.get(reference)
            if payment_id is None:
                return None
            before = self._payments[payment_id]
            if before.status.is_terminal:
                return PaymentUpdate(before=before, after=None)
            if changes.get("status") == PaymentStatus.SUCCESSFUL:
                other = self._successful_payment_for(before.report_id)
                if other is not None and other.id != before.id:
                    raise PaymentConflict("report already paid by another payment", payment_id=other.id)
            after = Payment.model_validate({**before.model_dump(), **changes})
            self._payments[payment_id] = after
            return PaymentUpdate(before=before, after=after)

    # ---- collection events -----------------------------------------------

    def get_collection_event(self, report_id: uuid.UUID) -> CollectionEvent | None:
        with self._lock:
            return self._events.get(report_id)
