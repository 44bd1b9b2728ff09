import pytest

from gfcity.domain.errors import InvalidTransition
from gfcity.domain.models import (
    ExternalReference,
    Location,
    Payment,
    PaymentProviderName,
    PaymentStatus,
    ReportStatus,
    User,
    UserRole,
)
from gfcity.lifecycle.state_machine import ReportEvent, TRANSITIONS, new_verification_code, submit, transition

HOME = Location(lat=0.3476, lon=32.6169)


def _resident(**kw) -> User:
    return User(phone_number="+256700123456", full_name="John Mukasa", role=UserRole.RESIDENT, home_location=HOME, **kw)


def _collector(**kw) -> User:
    return User(phone_number="+256700654321", full_name="Sarah Nakato", role=UserRole.COLLECTOR, **kw)


def _report(resident: User):
    return submit(
        resident,
        location=HOME,
        description="Overflowing skip",
        volume="medium",
        fee_amount=5000,
        currency="UGX",
        verification_code="123456",
    )


def _payment(report, status=PaymentStatus.SUCCESSFUL) -> Payment:
    return Payment(
        report_id=report.id,
        resident_id=report.reporter_id,
        reference=ExternalReference(provider=PaymentProviderName.FLUTTERWAVE, value="GFC-1-abcd"),
        amount=report.fee_amount,
        status=status,
    )


def test_submit_creates_pending_payment_report_for_residents_only():
    resident = _resident()
    report = _report(resident)
    assert report.status == ReportStatus.PENDING_PAYMENT
    assert report.assigned_collector_id is None

    with pytest.raises(InvalidTransition):
        _report(_collector())


def test_full_happy_path_and_input_is_never_mutated():
    resident, collector = _resident(), _collector()
    report = _report(resident)

    confirmed = transition(report, ReportEvent.PAYMENT_CONFIRMED, None, payment=_payment(report))
    assert report.status == ReportStatus.PENDING_PAYMENT
    assert confirmed.status == ReportStatus.PAYMENT_CONFIRMED

    assigned = transition(confirmed, ReportEvent.CLAIM, collector)
    assert assigned.status == ReportStatus.ASSIGNED
    assert assigned.assigned_collector_id == collector.id
    assert assigned.assigned_at is not None
    assert confirmed.assigned_collector_id is None

    started = transition(assigned, ReportEvent.START, collector)
    done = transition(started, ReportEvent.VERIFY, collector, code="123456")
    assert done.status == ReportStatus.COMPLETED
    assert done.completed_at is not None


def test_payment_confirmation_requires_a_successful_payment_for_this_report():
    resident = _resident()
    report = _report(resident)

    with pytest.raises(InvalidTransition, match="no payment"):
        transition(report, ReportEvent.PAYMENT_CONFIRMED, None)
    with pytest.raises(InvalidTransition, match="payment is pending"):
        transition(report, ReportEvent.PAYMENT_CONFIRMED, None, payment=_payment(report, PaymentStatus.PENDING))

    other = _report(resident)
    with pytest.raises(InvalidTransition):
        transition(report, ReportEvent.PAYMENT_CONFIRMED, None, payment=_payment(other))


def test_claim_is_rejected_before_payment():
    resident, collector = _resident(), _collector()
    with pytest.raises(InvalidTransition) as exc_info:
        transition(_report(resident), ReportEvent.CLAIM, collector)
    assert exc_info.value.current == ReportStatus.PENDING_PAYMENT
    assert exc_info.value.event == ReportEvent.CLAIM


def test_claim_requires_an_active_collector():
    resident = _resident()
    report = _report(resident)
    confirmed = transition(report, ReportEvent.PAYMENT_CONFIRMED, None, payment=_payment(report))

    with pytest.raises(InvalidTransition, match="active collectors"):
        transition(confirmed, ReportEvent.CLAIM, resident)
    with pytest.raises(InvalidTransition, match="active collectors"):
        transition(confirmed, ReportEvent.CLAIM, _collector(is_active=False))


def test_only_the_assigned_collector_can_start_and_verify():
    resident, collector, other = _resident(), _collector(), _collector()
    report = _report(resident)
    confirmed = transition(report, ReportEvent.PAYMENT_CONFIRMED, None, payment=_payment(report))
    assigned = transition(confirmed, ReportEvent.CLAIM, collector)

    with pytest.raises(InvalidTransition, match="assigned collector"):
        transition(assigned, ReportEvent.START, other)
    started = transition(assigned, ReportEvent.START, collector)
    with pytest.raises(InvalidTransition, match="assigned collector"):
        transition(started, ReportEvent.VERIFY, other)


def test_verify_checks_a_presented_code_and_can_require_one():
    resident, collector = _resident(), _collector()
    report = _report(resident)
    confirmed = transition(report, ReportEvent.PAYMENT_CONFIRMED, None, payment=_payment(report))
    started = transition(transition(confirmed, ReportEvent.CLAIM, collector), ReportEvent.START, collector)

    with pytest.raises(InvalidTransition, match="does not match"):
        transition(started, ReportEvent.VERIFY, collector, code="000000")
    with pytest.raises(InvalidTransition, match="required"):
        transition(started, ReportEvent.VERIFY, collector, require_code=True)
    assert transition(started, ReportEvent.VERIFY, collector).status == ReportStatus.COMPLETED


def test_cancel_by_reporter_or_admin_only_and_cancelled_is_terminal():
    resident = _resident()
    admin = User(phone_number="+256709999000", full_name="Admin", role=UserRole.ADMIN)
    report = _report(resident)

    with pytest.raises(InvalidTransition, match="reporter or an admin"):
        transition(report, ReportEvent.CANCEL, _collector())

    cancelled = transition(report, ReportEvent.CANCEL, resident)
    assert cancelled.status == ReportStatus.CANCELLED
    assert transition(report, ReportEvent.CANCEL, admin).status == ReportStatus.CANCELLED

    for event in ReportEvent:
        if event == ReportEvent.SUBMIT:
            continue
        with pytest.raises(InvalidTransition):
            transition(cancelled, event, resident, payment=_payment(report))


def test_transition_table_has_no_exit_from_terminal_states():
    sources = {src for src, _ in TRANSITIONS}
    assert ReportStatus.COMPLETED not in sources
    assert ReportStatus.CANCELLED not in sources


def test_verification_codes_are_numeric_with_requested_length():
    code = new_verification_code(8)
    assert len(code) == 8
    assert code.isdigit()
