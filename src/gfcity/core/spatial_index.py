"""
Lightweight spatial indexing (grid bucket) for lat/lon points.

The in-memory store keeps one index per entity kind so radius queries over
reports and collectors don't scan every row. Unlike a read-only catalog index,
entries move (collectors report new positions every few seconds), so the index
supports upsert and removal by key.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Generic, Hashable, Iterator, TypeVar

from gfcity.core.geo import GeoPoint, haversine_m

K = TypeVar("K", bound=Hashable)


def _to_xy_m(lat: float, lon: float, *, lat0_deg: float) -> tuple[float, float]:
    # Equirectangular projection around a reference latitude (good enough for city-scale indexing).
    lat0 = math.radians(float(lat0_deg))
    x = float(lon) * 111_320.0 * math.cos(lat0)
    y = float(lat) * 110_540.0
    return x, y


@dataclass(frozen=True)
class _Entry(Generic[K]):
    key: K
    lat: float
    lon: float
    x_m: float
    y_m: float


class SpatialGridIndex(Generic[K]):
    def __init__(self, *, cell_size_m: float = 1000.0, lat0_deg: float = 0.35):
        if float(cell_size_m) <= 0:
            raise ValueError("cell_size_m must be > 0")
        self._cell_size_m = float(cell_size_m)
        self._lat0_deg = float(lat0_deg)
        self._cells: dict[tuple[int, int], dict[K, _Entry[K]]] = {}
        self._by_key: dict[K, tuple[int, int]] = {}

    def __len__(self) -> int:
        return len(self._by_key)

    def _cell_key_xy(self, x_m: float, y_m: float) -> tuple[int, int]:
        return (int(math.floor(x_m / self._cell_size_m)), int(math.floor(y_m / self._cell_size_m)))

    def upsert(self, key: K, *, lat: float, lon: float) -> None:
        self.remove(key)
        x_m, y_m = _to_xy_m(lat, lon, lat0_deg=self._lat0_deg)
        cell = self._cell_key_xy(x_m, y_m)
        self._cells.setdefault(cell, {})[key] = _Entry(key=key, lat=float(lat), lon=float(lon), x_m=x_m, y_m=y_m)
        self._by_key[key] = cell

    def remove(self, key: K) -> None:
        cell = self._by_key.pop(key, None)
        if cell is None:
            return
        bucket = self._cells.get(cell)
        if bucket is not None:
            bucket.pop(key, None)
            if not bucket:
                del self._cells[cell]

    def _buckets_around(self, cx: int, cy: int, steps: int) -> Iterator[dict[K, _Entry[K]]]:
        span = 2 * steps + 1
        if span * span >= len(self._cells):
            # Wide radius: the square covers more cells than are occupied.
            yield from list(self._cells.values())
            return
        for dx in range(-steps, steps + 1):
            for dy in range(-steps, steps + 1):
                bucket = self._cells.get((cx + dx, cy + dy))
                if bucket:
                    yield bucket

    def query_within(self, *, lat: float, lon: float, radius_m: float) -> list[tuple[K, float]]:
        """Return `(key, distance_m)` pairs within `radius_m`, nearest first."""
        r = float(radius_m)
        if r <= 0:
            return []
        x0, y0 = _to_xy_m(float(lat), float(lon), lat0_deg=self._lat0_deg)
        cx, cy = self._cell_key_xy(x0, y0)
        steps = int(math.ceil(r / self._cell_size_m))

        origin = GeoPoint(lat=float(lat), lon=float(lon))
        out: list[tuple[K, float]] = []
        for bucket in self._buckets_around(cx, cy, steps):
            for e in bucket.values():
                # Cheap bounding circle filter in projected space.
                if (e.x_m - x0) ** 2 + (e.y_m - y0) ** 2 > (r * 1.15) ** 2:
                    continue
                d = haversine_m(origin, GeoPoint(lat=e.lat, lon=e.lon))
                if d <= r:
                    out.append((e.key, d))
        out.sort(key=lambda kd: (kd[1], str(kd[0])))
        return out

    def all_by_distance(self, *, lat: float, lon: float) -> list[tuple[K, float]]:
        """Every indexed key with its distance, nearest first (unbounded radius)."""
        origin = GeoPoint(lat=float(lat), lon=float(lon))
        out = [
            (e.key, haversine_m(origin, GeoPoint(lat=e.lat, lon=e.lon)))
            for bucket in self._cells.values()
            for e in bucket.values()
        ]
        out.sort(key=lambda kd: (kd[1], str(kd[0])))
        return out
