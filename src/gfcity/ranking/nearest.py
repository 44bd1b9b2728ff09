"""
Collector ranking.

`find_nearest_collectors()` answers "who should pick this up?" for a report
location: active collectors with a fresh position, nearest first. Positions move
continuously, so nothing is cached: every iteration of the returned sequence asks
the store again.

`nearby_reports()` is the collector-side view: paid, unassigned reports around
the collector's position.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterator

from gfcity.config.settings import RankingSettings
from gfcity.core.geo import haversine_m
from gfcity.core.time import utc_now
from gfcity.domain.errors import DependencyUnavailable
from gfcity.domain.models import Location, RankedCollector, Report, ReportStatus, User
from gfcity.storage.port import Store

logger = logging.getLogger(__name__)


def is_rankable(user: User, *, now: datetime, stale_after: timedelta | None) -> bool:
    """True if `user` is an active collector with a position newer than `stale_after`."""
    if not user.is_collector or not user.is_active or user.current_location is None:
        return False
    if stale_after is None:
        return True
    if user.location_updated_at is None:
        return False
    return now - user.location_updated_at <= stale_after


def rank_collectors(
    candidates: list[User],
    origin: Location,
    *,
    limit: int,
    now: datetime,
    stale_after: timedelta | None,
) -> list[RankedCollector]:
    """Filter, measure and order `candidates`; ties on distance break by collector id."""
    if limit <= 0:
        return []
    scored = [
        (haversine_m(origin, u.current_location), u)
        for u in candidates
        if is_rankable(u, now=now, stale_after=stale_after)
    ]
    scored.sort(key=lambda du: (du[0], str(du[1].id)))
    return [RankedCollector(collector=u, distance_m=d) for d, u in scored[:limit]]


@dataclass(frozen=True)
class NearestCollectors:
    """Lazy, restartable ranking; each `iter()` re-reads collector positions."""

    store: Store
    origin: Location
    limit: int
    stale_after: timedelta | None
    clock: Callable[[], datetime] = utc_now

    def __iter__(self) -> Iterator[RankedCollector]:
        candidates = [u for u, _ in self.store.collectors_near(self.origin)]
        yield from rank_collectors(
            candidates,
            self.origin,
            limit=self.limit,
            now=self.clock(),
            stale_after=self.stale_after,
        )


def find_nearest_collectors(
    store: Store,
    report_location: Location,
    *,
    settings: RankingSettings,
    limit: int | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> NearestCollectors:
    stale_s = int(settings.stale_after_seconds)
    return NearestCollectors(
        store=store,
        origin=report_location,
        limit=int(settings.limit_default if limit is None else limit),
        # 0 disables the staleness filter.
        stale_after=timedelta(seconds=stale_s) if stale_s > 0 else None,
        clock=clock,
    )


def nearby_reports(
    store: Store,
    collector_location: Location,
    *,
    settings: RankingSettings,
    radius_m: float | None = None,
    limit: int | None = None,
) -> list[tuple[Report, float | None]]:
    """Paid, unassigned reports near a collector, nearest first.

    With `geo_fallback: degraded`, a failing geospatial query returns the most recent
    paid reports with no distance (None) instead of raising.
    """
    radius = float(settings.nearby_radius_m if radius_m is None else radius_m)
    radius = min(radius, float(settings.max_radius_m))
    cap = int(settings.nearby_limit if limit is None else limit)
    try:
        hits = store.reports_within(collector_location, radius, statuses=[ReportStatus.PAYMENT_CONFIRMED])
    except DependencyUnavailable as exc:
        if settings.geo_fallback != "degraded":
            raise
        logger.warning("Geospatial report query failed (%s); serving unfiltered confirmed reports.", exc.message)
        rows = store.list_reports(statuses=[ReportStatus.PAYMENT_CONFIRMED])
        return [(r, None) for r in rows[:cap]]
    return [(r, d) for r, d in hits[:cap]]
