"""
Persistence port.

The service layer only talks to this protocol. Any backing store must make the
conditional operations atomic: they are what close the claim race and the
duplicate-webhook race without explicit locking in the service layer.

Implementations raise `DependencyUnavailable` when the backend times out and
`NotFound` for unknown ids on update operations.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Protocol

from gfcity.domain.models import (
    CollectionEvent,
    ExternalReference,
    Location,
    Payment,
    PaymentStatus,
    Report,
    ReportStatus,
    User,
)


@dataclass(frozen=True)
class PaymentUpdate:
    """Outcome of `update_payment_if_non_terminal`.

    `after` is None when the payment was already terminal and nothing was written.
    """

    before: Payment
    after: Payment | None

    @property
    def applied(self) -> bool:
        return self.after is not None


class Store(Protocol):
    # users
    def add_user(self, user: User) -> User: ...
    def get_user(self, user_id: uuid.UUID) -> User | None: ...
    def get_user_by_phone(self, phone_number: str) -> User | None: ...
    def update_collector_location(self, user_id: uuid.UUID, location: Location, at: datetime) -> User: ...
    def collectors_near(self, location: Location, *, limit: int | None = None) -> list[tuple[User, float]]: ...

    # reports
    def add_report(self, report: Report) -> Report: ...
    def get_report(self, report_id: uuid.UUID) -> Report | None: ...
    def list_reports(
        self,
        *,
        reporter_id: uuid.UUID | None = None,
        collector_id: uuid.UUID | None = None,
        statuses: Iterable[ReportStatus] | None = None,
    ) -> list[Report]: ...
    def compare_and_set_report(
        self,
        updated: Report,
        *,
        expected_status: ReportStatus,
        expected_collector_id: uuid.UUID | None,
    ) -> Report | None: ...
    def complete_report(
        self,
        updated: Report,
        event: CollectionEvent,
        *,
        expected_status: ReportStatus,
        expected_collector_id: uuid.UUID,
    ) -> Report | None: ...
    def reports_within(
        self,
        location: Location,
        radius_m: float,
        *,
        statuses: Iterable[ReportStatus],
    ) -> list[tuple[Report, float]]: ...

    # payments
    def add_payment(self, payment: Payment) -> Payment: ...
    def get_payment(self, payment_id: uuid.UUID) -> Payment | None: ...
    def get_payment_by_reference(self, reference: ExternalReference) -> Payment | None: ...
    def payments_for_report(self, report_id: uuid.UUID) -> list[Payment]: ...
    def list_payments(self, *, status: PaymentStatus | None = None) -> list[Payment]: ...
    def update_payment_if_non_terminal(self, reference: ExternalReference, changes: dict[str, Any]) -> PaymentUpdate | None: ...

    # collection events
    def get_collection_event(self, report_id: uuid.UUID) -> CollectionEvent | None: ...
