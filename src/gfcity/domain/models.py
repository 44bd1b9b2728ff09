"""
Domain models (Pydantic).

These types are the contract between the service layer, the store and the API:
- identities (`User`, `UserRole`)
- the waste report and its lifecycle status (`Report`, `ReportStatus`)
- payments and their provider-tagged references (`Payment`, `ExternalReference`)
- proof of collection (`CollectionEvent`)

Validators here enforce the invariants that must hold for every stored row, so a
bug in a transition cannot persist an inconsistent report.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from gfcity.core.time import utc_now


class Location(BaseModel):
    """A WGS84 point in decimal degrees."""

    model_config = ConfigDict(frozen=True)

    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


class UserRole(str, Enum):
    RESIDENT = "resident"
    COLLECTOR = "collector"
    ADMIN = "admin"


class User(BaseModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    phone_number: str
    full_name: str
    role: UserRole
    email: str | None = None
    area: str | None = None
    home_location: Location | None = None
    current_location: Location | None = None
    location_updated_at: datetime | None = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _role_locations(self) -> "User":
        if self.role == UserRole.RESIDENT:
            if self.home_location is None:
                raise ValueError("a resident needs a home_location")
            if self.current_location is not None:
                raise ValueError("a resident has no current_location")
        return self

    @property
    def is_collector(self) -> bool:
        return self.role == UserRole.COLLECTOR


GarbageType = Literal["mixed", "plastic", "organic", "electronic", "hazardous"]
Volume = Literal["small", "medium", "large"]


class ReportStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    PAYMENT_CONFIRMED = "payment_confirmed"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


ASSIGNED_STATUSES = frozenset({ReportStatus.ASSIGNED, ReportStatus.IN_PROGRESS, ReportStatus.COMPLETED})


class Report(BaseModel):
    """One reported waste pile-up."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    reporter_id: uuid.UUID
    location: Location
    description: str
    address_description: str | None = None
    garbage_type: GarbageType = "mixed"
    volume: Volume
    photo_url: str | None = None
    status: ReportStatus = ReportStatus.PENDING_PAYMENT
    fee_amount: float = Field(..., gt=0)
    currency: str = "UGX"
    verification_code: str
    assigned_collector_id: uuid.UUID | None = None
    reported_at: datetime = Field(default_factory=utc_now)
    assigned_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None

    @model_validator(mode="after")
    def _assignment_matches_status(self) -> "Report":
        assigned = self.assigned_collector_id is not None
        if assigned != (self.status in ASSIGNED_STATUSES):
            raise ValueError(
                f"assigned_collector_id must be set iff status is one of "
                f"{sorted(s.value for s in ASSIGNED_STATUSES)} (status={self.status.value})"
            )
        return self

    def public_dict(self) -> dict[str, Any]:
        """Serializable view without the verification code (it is the resident's secret)."""
        return self.model_dump(mode="json", exclude={"verification_code"})


class PaymentProviderName(str, Enum):
    FLUTTERWAVE = "flutterwave"
    PESAPAL = "pesapal"


class ExternalReference(BaseModel):
    """Our idempotency key at a specific provider.

    The provider tag is part of the identity: the same string issued to two
    providers names two different payments.
    """

    model_config = ConfigDict(frozen=True)

    provider: PaymentProviderName
    value: str = Field(..., min_length=1)

    def __str__(self) -> str:
        return f"{self.provider.value}:{self.value}"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESSFUL = "successful"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PAYMENT_STATUSES


TERMINAL_PAYMENT_STATUSES = frozenset({PaymentStatus.SUCCESSFUL, PaymentStatus.FAILED, PaymentStatus.CANCELLED})


class Payment(BaseModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    report_id: uuid.UUID
    resident_id: uuid.UUID
    reference: ExternalReference
    provider_transaction_id: str | None = None
    amount: float = Field(..., gt=0)
    currency: str = "UGX"
    phone_number: str | None = None
    method: str = "mobile_money"
    status: PaymentStatus = PaymentStatus.PENDING
    raw_payload: dict[str, Any] | None = None
    failure_reason: str | None = None
    initiated_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utc_now)


class CollectionEvent(BaseModel):
    """Immutable proof that a report was collected."""

    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    report_id: uuid.UUID
    collector_id: uuid.UUID
    scan_location: Location
    code_presented: bool
    code_matched: bool
    distance_from_report_m: float = Field(..., ge=0)
    within_expected_radius: bool
    scanned_at: datetime = Field(default_factory=utc_now)
    created_at: datetime = Field(default_factory=utc_now)


class RankedCollector(BaseModel):
    collector: User
    distance_m: float = Field(..., ge=0)


class ReconciliationOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    NON_TERMINAL = "non_terminal"


class ReconciliationResult(BaseModel):
    outcome: ReconciliationOutcome
    reference: ExternalReference
    payment_status: PaymentStatus | None = None
    report_status: ReportStatus | None = None
    notified: bool = False
    message: str = ""


class ProviderHandle(BaseModel):
    """What a gateway returns when a charge is started."""

    reference: ExternalReference
    redirect_url: str | None = None
    provider_tracking_id: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class PaymentInitiation(BaseModel):
    payment: Payment
    handle: ProviderHandle


class Acknowledgement(BaseModel):
    """Always returned to a gateway callback; `success` reflects internal processing only."""

    success: bool
    message: str
    outcome: ReconciliationOutcome | None = None
    payment_status: PaymentStatus | None = None
