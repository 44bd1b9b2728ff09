"""
Request bodies accepted by the HTTP API.

Boundary validation lives here: phone numbers must match the configured
pattern and descriptions are length-capped before they reach the service.
"""

from __future__ import annotations

import re

from pydantic import BaseModel, Field, field_validator

from gfcity.config.settings import get_settings
from gfcity.domain.models import GarbageType, Location, PaymentProviderName, UserRole, Volume


def _check_phone(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    if not re.fullmatch(get_settings().validation.phone_pattern, value):
        raise ValueError("Invalid Uganda phone number format (+256XXXXXXXXX)")
    return value


class LatLon(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)

    def to_location(self) -> Location:
        return Location(lat=self.latitude, lon=self.longitude)


class RegisterRequest(BaseModel):
    phone_number: str
    full_name: str = Field(..., min_length=2, max_length=100)
    role: UserRole = UserRole.RESIDENT
    email: str | None = None
    area: str | None = None
    location: LatLon | None = None

    _phone = field_validator("phone_number")(_check_phone)


class LoginRequest(BaseModel):
    phone_number: str

    _phone = field_validator("phone_number")(_check_phone)


class CreateReportRequest(LatLon):
    description: str = Field(..., min_length=1)
    address_description: str | None = None
    garbage_type: GarbageType = "mixed"
    volume: Volume = "medium"
    photo_url: str | None = None

    @field_validator("description")
    @classmethod
    def _description_length(cls, value: str) -> str:
        limit = get_settings().validation.description_max_length
        if len(value) > limit:
            raise ValueError(f"Description must be less than {limit} characters")
        return value


class VerifyCollectionRequest(LatLon):
    code: str | None = None


class InitiatePaymentRequest(BaseModel):
    report_id: str
    phone_number: str | None = None
    provider: PaymentProviderName | None = None

    _phone = field_validator("phone_number")(_check_phone)
