"""
API routes.

Endpoints (caller identified by the `X-User-Id` header unless noted):
- POST  `/api/auth/register`, `/api/auth/login`: no caller required.
- POST  `/api/reports`: resident submits a report (awaits payment).
- GET   `/api/reports/mine`, `/api/reports/nearby`, `/api/reports/{id}`.
- GET   `/api/reports/{id}/nearest-collectors`: ranked candidate collectors.
- POST  `/api/reports/{id}/claim|start|verify|cancel`: lifecycle steps.
- PATCH `/api/collectors/location`, GET `/api/collectors/assignments`.
- POST  `/api/payments/initiate`, GET `/api/payments/{provider}/{reference}`.
"""

from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, Query

from gfcity.api import deps
from gfcity.api.deps import current_user, require_role
from gfcity.api.schemas import (
    CreateReportRequest,
    InitiatePaymentRequest,
    LatLon,
    LoginRequest,
    RegisterRequest,
    VerifyCollectionRequest,
)
from gfcity.config.settings import get_settings
from gfcity.domain.errors import NotFound, ValidationError
from gfcity.domain.models import Location, Report, ReportStatus, User, UserRole

router = APIRouter()


def _ok(data: Any, message: str | None = None) -> dict:
    body: dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    return body


def _parse_id(value: str, what: str = "report") -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        raise ValidationError(f"invalid {what} id '{value}'") from None


def _user_view(user: User) -> dict:
    return user.model_dump(mode="json")


def _can_view(user: User, report: Report) -> bool:
    if user.role == UserRole.ADMIN or report.reporter_id == user.id:
        return True
    if user.role != UserRole.COLLECTOR:
        return False
    return report.assigned_collector_id == user.id or report.status == ReportStatus.PAYMENT_CONFIRMED


@router.get("/api/health")
def get_health() -> dict:
    return {"status": "OK"}


# ---- auth ------------------------------------------------------------------


@router.post("/api/auth/register", status_code=201)
def post_register(body: RegisterRequest) -> dict:
    service = deps.get_service()
    user = service.register_user(
        phone_number=body.phone_number,
        full_name=body.full_name.strip(),
        role=body.role,
        email=body.email,
        area=body.area,
        location=body.location.to_location() if body.location else None,
    )
    return _ok({"user": _user_view(user)}, "User registered successfully")


@router.post("/api/auth/login")
def post_login(body: LoginRequest) -> dict:
    user = deps.get_service().find_user_by_phone(body.phone_number)
    return _ok({"user": _user_view(user)}, "Login successful")


# ---- reports ---------------------------------------------------------------


@router.post("/api/reports", status_code=201)
def post_report(body: CreateReportRequest, user: User = Depends(current_user)) -> dict:
    require_role(user, UserRole.RESIDENT)
    report = deps.get_service().submit_report(
        user,
        body.to_location(),
        body.description.strip(),
        body.volume,
        address_description=body.address_description,
        garbage_type=body.garbage_type,
        photo_url=body.photo_url,
    )
    # The resident shows this code to the collector on site.
    data = {**report.public_dict(), "verification_code": report.verification_code}
    return _ok({"report": data, "payment_amount": report.fee_amount, "currency": report.currency},
               "Report created successfully")


@router.get("/api/reports/mine")
def get_my_reports(user: User = Depends(current_user)) -> dict:
    require_role(user, UserRole.RESIDENT)
    reports = deps.get_service().reports_for_resident(user)
    return _ok({"reports": [{**r.public_dict(), "verification_code": r.verification_code} for r in reports]})


@router.get("/api/reports/nearby")
def get_nearby_reports(
    latitude: float | None = Query(default=None, ge=-90, le=90),
    longitude: float | None = Query(default=None, ge=-180, le=180),
    radius: float | None = Query(default=None, gt=0),
    user: User = Depends(current_user),
) -> dict:
    require_role(user, UserRole.COLLECTOR)
    location = None
    if latitude is not None and longitude is not None:
        location = Location(lat=latitude, lon=longitude)
    if radius is not None:
        radius = min(radius, get_settings().ranking.max_radius_m)
    rows = deps.get_service().nearby_reports(user, location=location, radius_m=radius)
    reports = []
    for report, distance in rows:
        item = report.public_dict()
        item["distance_m"] = round(distance, 1) if distance is not None else None
        reports.append(item)
    return _ok({"reports": reports, "degraded": any(d is None for _, d in rows)})


@router.get("/api/reports/{report_id}")
def get_report(report_id: str, user: User = Depends(current_user)) -> dict:
    report = deps.get_service().get_report(_parse_id(report_id))
    if not _can_view(user, report):
        raise NotFound("Report not found")
    data = report.public_dict()
    if report.reporter_id == user.id:
        data["verification_code"] = report.verification_code
    return _ok({"report": data})


@router.get("/api/reports/{report_id}/nearest-collectors")
def get_nearest_collectors(
    report_id: str,
    limit: int | None = Query(default=None, ge=1, le=50),
    user: User = Depends(current_user),
) -> dict:
    service = deps.get_service()
    report = service.get_report(_parse_id(report_id))
    if not _can_view(user, report):
        raise NotFound("Report not found")
    ranked = service.find_nearest_collectors(report.id, limit=limit)
    collectors = [
        {
            "id": str(rc.collector.id),
            "full_name": rc.collector.full_name,
            "phone_number": rc.collector.phone_number,
            "distance_m": round(rc.distance_m, 1),
        }
        for rc in ranked
    ]
    return _ok({"collectors": collectors})


@router.post("/api/reports/{report_id}/claim")
def post_claim(report_id: str, user: User = Depends(current_user)) -> dict:
    require_role(user, UserRole.COLLECTOR)
    report = deps.get_service().claim_report(user, _parse_id(report_id))
    return _ok({"report": report.public_dict()}, "Report claimed successfully")


@router.post("/api/reports/{report_id}/start")
def post_start(report_id: str, user: User = Depends(current_user)) -> dict:
    require_role(user, UserRole.COLLECTOR)
    report = deps.get_service().start_collection(user, _parse_id(report_id))
    return _ok({"report": report.public_dict()}, "Collection started")


@router.post("/api/reports/{report_id}/verify")
def post_verify(report_id: str, body: VerifyCollectionRequest, user: User = Depends(current_user)) -> dict:
    require_role(user, UserRole.COLLECTOR)
    event = deps.get_service().verify_collection(user, _parse_id(report_id), body.to_location(), body.code)
    return _ok({"collection": event.model_dump(mode="json")}, "Collection verified successfully")


@router.post("/api/reports/{report_id}/cancel")
def post_cancel(report_id: str, user: User = Depends(current_user)) -> dict:
    report = deps.get_service().cancel_report(user, _parse_id(report_id))
    return _ok({"report": report.public_dict()}, "Report cancelled")


# ---- collectors ------------------------------------------------------------


@router.patch("/api/collectors/location")
def patch_collector_location(body: LatLon, user: User = Depends(current_user)) -> dict:
    require_role(user, UserRole.COLLECTOR)
    updated = deps.get_service().update_collector_location(user, body.to_location())
    return _ok({"user": _user_view(updated)}, "Location updated successfully")


@router.get("/api/collectors/assignments")
def get_assignments(user: User = Depends(current_user)) -> dict:
    require_role(user, UserRole.COLLECTOR)
    reports = deps.get_service().assignments_for_collector(user)
    return _ok({"reports": [r.public_dict() for r in reports]})


# ---- payments --------------------------------------------------------------


@router.post("/api/payments/initiate")
def post_initiate_payment(body: InitiatePaymentRequest, user: User = Depends(current_user)) -> dict:
    require_role(user, UserRole.RESIDENT)
    initiation = deps.get_service().initiate_payment(
        user,
        _parse_id(body.report_id),
        phone_number=body.phone_number,
        provider=body.provider,
    )
    payment = initiation.payment
    return _ok(
        {
            "payment_id": str(payment.id),
            "provider": payment.reference.provider.value,
            "reference": payment.reference.value,
            "amount": payment.amount,
            "currency": payment.currency,
            "redirect_url": initiation.handle.redirect_url,
            "order_tracking_id": initiation.handle.provider_tracking_id,
        },
        "Payment initiated",
    )


@router.get("/api/payments/{provider}/{reference}")
def get_payment_status(provider: str, reference: str, user: User = Depends(current_user)) -> dict:
    try:
        payment = deps.get_service().payment_status(user, provider, reference)
    except ValueError:
        raise ValidationError(f"unknown payment provider '{provider}'") from None
    return _ok(
        {
            "payment": payment.model_dump(mode="json", exclude={"raw_payload"}),
            "reference": str(payment.reference),
        }
    )
