import uuid
from datetime import datetime, timedelta, timezone

import pytest

from gfcity.config.settings import get_settings
from gfcity.domain.errors import DependencyUnavailable
from gfcity.domain.models import Location, User, UserRole
from gfcity.ranking.nearest import find_nearest_collectors, nearby_reports, rank_collectors
from gfcity.storage.memory import InMemoryStore

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
ORIGIN = Location(lat=0.3476, lon=32.6169)


def _collector(phone: str, lat: float, lon: float, *, seen: datetime = NOW, active: bool = True, uid=None) -> User:
    return User(
        id=uid or uuid.uuid4(),
        phone_number=phone,
        full_name=f"Collector {phone[-3:]}",
        role=UserRole.COLLECTOR,
        current_location=Location(lat=lat, lon=lon),
        location_updated_at=seen,
        is_active=active,
    )


def _ranking(limit=None, store=None):
    return find_nearest_collectors(store, ORIGIN, settings=get_settings().ranking, limit=limit, clock=lambda: NOW)


def test_nearest_first_and_limited():
    store = InMemoryStore()
    far = store.add_user(_collector("+256700000001", 0.3163, 32.5822))
    near = store.add_user(_collector("+256700000002", 0.3480, 32.6170))
    mid = store.add_user(_collector("+256700000003", 0.3321, 32.6111))

    ranked = list(_ranking(limit=2, store=store))
    assert [rc.collector.id for rc in ranked] == [near.id, mid.id]
    assert ranked[0].distance_m < ranked[1].distance_m
    assert far.id not in {rc.collector.id for rc in ranked}


def test_ranking_is_deterministic_and_ties_break_by_id():
    store = InMemoryStore()
    ids = sorted([uuid.uuid4(), uuid.uuid4()], key=str)
    store.add_user(_collector("+256700000002", 0.3500, 32.6169, uid=ids[1]))
    store.add_user(_collector("+256700000001", 0.3500, 32.6169, uid=ids[0]))

    first = [rc.collector.id for rc in _ranking(store=store)]
    second = [rc.collector.id for rc in _ranking(store=store)]
    assert first == second == ids


def test_stale_inactive_and_non_collectors_are_excluded():
    store = InMemoryStore()
    fresh = store.add_user(_collector("+256700000001", 0.3480, 32.6170))
    store.add_user(_collector("+256700000002", 0.3478, 32.6170, seen=NOW - timedelta(minutes=16)))
    store.add_user(_collector("+256700000003", 0.3477, 32.6170, active=False))
    store.add_user(User(phone_number="+256700000004", full_name="R", role=UserRole.RESIDENT, home_location=ORIGIN))

    assert [rc.collector.id for rc in _ranking(store=store)] == [fresh.id]


def test_empty_when_no_collectors_or_non_positive_limit():
    store = InMemoryStore()
    assert list(_ranking(store=store)) == []
    store.add_user(_collector("+256700000001", 0.3480, 32.6170))
    assert list(_ranking(limit=0, store=store)) == []


def test_each_iteration_sees_fresh_positions():
    store = InMemoryStore()
    a = store.add_user(_collector("+256700000001", 0.3480, 32.6170))
    b = store.add_user(_collector("+256700000002", 0.3600, 32.6170))
    ranking = _ranking(store=store)
    assert [rc.collector.id for rc in ranking][0] == a.id

    store.update_collector_location(b.id, Location(lat=0.3476, lon=32.6169), NOW)
    assert [rc.collector.id for rc in ranking][0] == b.id


def test_rank_collectors_without_staleness_window_keeps_unstamped_positions():
    c = _collector("+256700000001", 0.35, 32.61).model_copy(update={"location_updated_at": None})
    assert rank_collectors([c], ORIGIN, limit=5, now=NOW, stale_after=None)
    assert rank_collectors([c], ORIGIN, limit=5, now=NOW, stale_after=timedelta(minutes=15)) == []


class _BrokenGeoStore(InMemoryStore):
    def reports_within(self, *args, **kwargs):
        raise DependencyUnavailable("geo index offline")


def test_nearby_reports_geo_failure_fails_by_default_and_degrades_when_configured(paid_report, store):
    broken = _BrokenGeoStore()
    broken._reports = store._reports

    ranking = get_settings().ranking
    with pytest.raises(DependencyUnavailable):
        nearby_reports(broken, ORIGIN, settings=ranking)

    degraded = ranking.model_copy(update={"geo_fallback": "degraded"})
    rows = nearby_reports(broken, ORIGIN, settings=degraded)
    assert rows == [(paid_report, None)]


def test_nearby_reports_only_lists_confirmed_reports_in_radius(paid_report, store):
    ranking = get_settings().ranking
    rows = nearby_reports(store, Location(lat=0.3163, lon=32.5822), settings=ranking, radius_m=6000)
    assert [r.id for r, _ in rows] == [paid_report.id]
    assert nearby_reports(store, Location(lat=0.3163, lon=32.5822), settings=ranking, radius_m=1000) == []


def test_caller_radius_is_clamped_to_max_radius(paid_report, store):
    ranking = get_settings().ranking
    # About 110 km east of the report, beyond the 50 km cap.
    far_away = Location(lat=0.3476, lon=33.6069)
    assert nearby_reports(store, far_away, settings=ranking, radius_m=20_000_000) == []

    wide = ranking.model_copy(update={"max_radius_m": 200_000})
    assert [r.id for r, _ in nearby_reports(store, far_away, settings=wide, radius_m=20_000_000)] == [paid_report.id]
