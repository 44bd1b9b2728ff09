import threading

from gfcity.domain.errors import AlreadyAssigned, InvalidTransition
from gfcity.domain.models import Location, ReportStatus, UserRole


def test_concurrent_claims_have_exactly_one_winner(service, paid_report):
    collectors = [
        service.register_user(
            phone_number=f"+2567001000{i:02d}",
            full_name=f"Collector {i}",
            role=UserRole.COLLECTOR,
            location=Location(lat=0.33, lon=32.60),
        )
        for i in range(8)
    ]
    barrier = threading.Barrier(len(collectors))
    winners, losers, other = [], [], []

    def claim(collector):
        barrier.wait()
        try:
            winners.append(service.claim_report(collector, paid_report.id))
        except AlreadyAssigned:
            losers.append(collector)
        except Exception as exc:
            other.append(exc)

    threads = [threading.Thread(target=claim, args=(c,)) for c in collectors]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert other == []
    assert len(winners) == 1
    assert len(losers) == len(collectors) - 1

    stored = service.get_report(paid_report.id)
    assert stored.status == ReportStatus.ASSIGNED
    assert stored.assigned_collector_id == winners[0].assigned_collector_id


def test_claim_after_assignment_reports_already_assigned(service, paid_report, collector):
    other = service.register_user(
        phone_number="+256701111222",
        full_name="Peter Okello",
        role=UserRole.COLLECTOR,
        location=Location(lat=0.3321, lon=32.6111),
    )
    service.claim_report(collector, paid_report.id)

    try:
        service.claim_report(other, paid_report.id)
    except AlreadyAssigned as exc:
        assert exc.http_status == 409
    else:
        raise AssertionError("second claim should fail")

    # Re-claiming your own assignment is harmless.
    assert service.claim_report(collector, paid_report.id).assigned_collector_id == collector.id


def test_reclaiming_a_started_collection_is_an_invalid_transition(service, paid_report, collector):
    service.claim_report(collector, paid_report.id)
    service.start_collection(collector, paid_report.id)

    try:
        service.claim_report(collector, paid_report.id)
    except InvalidTransition as exc:
        assert "already claimed by this collector" in exc.message
    else:
        raise AssertionError("claiming an in-progress report should fail")
