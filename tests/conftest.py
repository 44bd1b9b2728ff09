from __future__ import annotations

import pytest

from gfcity.config.settings import Settings, get_settings
from gfcity.domain.models import Location, Payment, PaymentProviderName, Report, User, UserRole
from gfcity.notify.dispatcher import build_dispatcher
from gfcity.payments.gateways import build_gateways, new_reference
from gfcity.service.orchestrator import GarbageService
from gfcity.storage.memory import InMemoryStore

KAMPALA_REPORT = Location(lat=0.3476, lon=32.6169)
KAMPALA_COLLECTOR = Location(lat=0.3163, lon=32.5822)
FW_HASH = "test-hash"


class RecordingSender:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def send(self, contact: str, message: str) -> None:
        self.sent.append((contact, message))


def make_settings(**sections) -> Settings:
    """Offline, deterministic settings: inline notifications, no retry sleeps, test credentials."""
    base = get_settings()
    flutterwave = base.payments.flutterwave.model_copy(update={"secret_key": "test-key", "secret_hash": FW_HASH})
    pesapal = base.payments.pesapal.model_copy(update={"consumer_key": "ck", "consumer_secret": "cs"})
    update = {
        "payments": base.payments.model_copy(update={"flutterwave": flutterwave, "pesapal": pesapal}),
        "notifications": base.notifications.model_copy(update={"max_workers": 0, "enabled": True}),
        "orchestrator": base.orchestrator.model_copy(update={"retry_backoff_seconds": 0.0}),
        "reconciliation": base.reconciliation.model_copy(update={"report_retry_delay_seconds": 0.0}),
    }
    update.update(sections)
    return base.model_copy(update=update)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def store(settings) -> InMemoryStore:
    return InMemoryStore(cell_size_m=settings.ranking.index_cell_size_m, lat0_deg=settings.ranking.index_lat0_deg)


@pytest.fixture
def service(settings, store, sender) -> GarbageService:
    return GarbageService(
        store,
        build_gateways(settings),
        build_dispatcher(settings, sender=sender),
        settings=settings,
    )


@pytest.fixture
def resident(service, sender) -> User:
    user = service.register_user(
        phone_number="+256700123456",
        full_name="John Mukasa",
        role=UserRole.RESIDENT,
        location=KAMPALA_REPORT,
    )
    sender.sent.clear()
    return user


@pytest.fixture
def collector(service, sender) -> User:
    user = service.register_user(
        phone_number="+256700654321",
        full_name="Sarah Nakato",
        role=UserRole.COLLECTOR,
        location=KAMPALA_COLLECTOR,
    )
    sender.sent.clear()
    return user


@pytest.fixture
def pending_payment(service, store):
    """Record a PENDING payment for a report, as if the charge had been started."""

    def _make(report: Report, resident: User) -> Payment:
        return store.add_payment(
            Payment(
                report_id=report.id,
                resident_id=resident.id,
                reference=new_reference(PaymentProviderName.FLUTTERWAVE),
                amount=report.fee_amount,
                currency=report.currency,
                phone_number=resident.phone_number,
            )
        )

    return _make


@pytest.fixture
def flutterwave_callback(service):
    def _send(reference_value: str, status: str = "successful", *, tx_id: int = 101):
        payload = {"event": "charge.completed", "data": {"id": tx_id, "tx_ref": reference_value, "status": status}}
        return service.handle_gateway_callback(PaymentProviderName.FLUTTERWAVE, payload, {"verif-hash": FW_HASH})

    return _send


@pytest.fixture
def paid_report(service, resident, pending_payment, flutterwave_callback, sender) -> Report:
    report = service.submit_report(resident, KAMPALA_REPORT, "Overflowing skip", "medium")
    payment = pending_payment(report, resident)
    flutterwave_callback(payment.reference.value)
    sender.sent.clear()
    return service.get_report(report.id)
