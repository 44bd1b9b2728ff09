import math

from gfcity.core.geo import EARTH_RADIUS_M, GeoPoint, haversine_m
from gfcity.domain.models import Location


def test_haversine_zero_for_same_point():
    p = GeoPoint(lat=0.3476, lon=32.6169)
    assert haversine_m(p, p) == 0.0


def test_haversine_one_degree_of_longitude_on_equator():
    d = haversine_m(GeoPoint(0.0, 0.0), GeoPoint(0.0, 1.0))
    assert math.isclose(d, EARTH_RADIUS_M * math.pi / 180, rel_tol=1e-9)


def test_haversine_is_symmetric_and_accepts_locations():
    a = Location(lat=0.3476, lon=32.6169)
    b = Location(lat=0.3163, lon=32.5822)
    assert haversine_m(a, b) == haversine_m(b, a)
    # Kampala Central to Kawempe is a little over 5 km.
    assert 5000 < haversine_m(a, b) < 5500


def test_haversine_antipodal_points_do_not_fail():
    d = haversine_m(GeoPoint(0.0, 0.0), GeoPoint(0.0, 180.0))
    assert math.isclose(d, EARTH_RADIUS_M * math.pi, rel_tol=1e-9)
